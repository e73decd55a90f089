from __future__ import annotations

import pytest

from flowdesk.core.errors import InvalidInput, NotFound

MANUAL = {"kind": "predicate", "operator": "manual"}


def _submit_single(approvals, approver: str = "u1") -> str:
    workflow = approvals.admin.create_workflow(
        "org-1",
        "wf",
        "expense",
        [{"step_order": 1, "step_type": "single", "approver_type": "user", "approver_ref": approver}],
    )
    approvals.admin.create_rule("org-1", "expense", "all", MANUAL, workflow.id)
    return approvals.service.submit_for_approval("org-1", "requester", "expense", "e-1", {"amount": 1}).request_id


def test_delegate_moves_authority_to_delegate(approvals) -> None:
    request_id = _submit_single(approvals)

    step = approvals.service.delegate(request_id, "u1", "u2", comments="on leave")

    assert step.delegated_to == "u2"
    assert step.delegated_by == "u1"
    assert step.delegation_hops == 1
    assert step.status == "pending"
    with pytest.raises(NotFound):
        approvals.service.approve(request_id, "u1")

    assert [item.id for item in approvals.service.list_pending_for_user("org-1", "u2")] == [step.id]
    assert approvals.service.list_pending_for_user("org-1", "u1") == []

    result = approvals.service.approve(request_id, "u2")
    assert result.request_status == "approved"
    assert len(approvals.bus.events("approval.delegated")) == 1


def test_redelegation_is_capped(approvals) -> None:
    request_id = _submit_single(approvals)

    approvals.service.delegate(request_id, "u1", "u2")
    second = approvals.service.delegate(request_id, "u2", "u3")
    assert second.delegation_hops == 2

    with pytest.raises(InvalidInput):
        approvals.service.delegate(request_id, "u3", "u4")
    assert approvals.service.get_request(request_id).steps[0].delegated_to == "u3"


def test_delegate_validation(approvals) -> None:
    request_id = _submit_single(approvals)

    with pytest.raises(InvalidInput):
        approvals.service.delegate(request_id, "u1", "u1")
    with pytest.raises(InvalidInput):
        approvals.service.delegate(request_id, "u1", "outsider")
    with pytest.raises(NotFound):
        approvals.service.delegate(request_id, "u5", "u2")
