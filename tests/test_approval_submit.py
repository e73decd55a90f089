from __future__ import annotations

import pytest

from flowdesk.core.errors import InsufficientPermissions, InvalidInput, NotFound

MANUAL = {"kind": "predicate", "operator": "manual"}


def test_submit_without_matching_rule_creates_no_request(approvals) -> None:
    with pytest.raises(NotFound):
        approvals.service.submit_for_approval("org-1", "requester", "expense", "e-1", {"amount": 10})

    assert approvals.store.snapshot().find("requests") == []


def test_submit_rejects_empty_input(approvals) -> None:
    with pytest.raises(InvalidInput):
        approvals.service.submit_for_approval("org-1", "requester", "expense", "e-1", {})
    with pytest.raises(InvalidInput):
        approvals.service.submit_for_approval("org-1", "requester", "", "e-1", {"amount": 1})


def test_submit_with_zero_step_workflow_is_invalid(approvals) -> None:
    workflow = approvals.admin.create_workflow("org-1", "empty", "expense", [])
    approvals.admin.create_rule("org-1", "expense", "all", MANUAL, workflow.id)

    with pytest.raises(InvalidInput):
        approvals.service.submit_for_approval("org-1", "requester", "expense", "e-1", {"amount": 10})
    assert approvals.store.snapshot().find("requests") == []


def test_submit_without_resolvable_approvers_is_invalid(approvals) -> None:
    workflow = approvals.admin.create_workflow(
        "org-1",
        "nobody",
        "expense",
        [{"step_order": 1, "approver_type": "role", "approver_ref": "cfo"}],
    )
    approvals.admin.create_rule("org-1", "expense", "all", MANUAL, workflow.id)

    with pytest.raises(InvalidInput):
        approvals.service.submit_for_approval("org-1", "requester", "expense", "e-1", {"amount": 10})
    assert approvals.store.snapshot().find("requests") == []


def test_submit_requires_membership(approvals) -> None:
    with pytest.raises(InsufficientPermissions):
        approvals.service.submit_for_approval("org-1", "stranger", "expense", "e-1", {"amount": 10})


def test_submit_creates_pending_request_and_steps(approvals) -> None:
    workflow = approvals.admin.create_workflow(
        "org-1",
        "pair",
        "expense",
        [{"step_order": 1, "step_type": "parallel", "approver_type": "role", "approver_ref": "member"}],
    )
    approvals.admin.create_rule("org-1", "expense", "all", MANUAL, workflow.id)

    result = approvals.service.submit_for_approval("org-1", "requester", "expense", "e-1", {"amount": 10})

    assert result.status == "pending"
    assert result.workflow_id == workflow.id
    assert result.approver_count == 6
    assert "6 approvers" in result.message

    detail = approvals.service.get_request(result.request_id)
    assert detail.request.requested_by == "requester"
    assert detail.request.current_step_order == 1
    assert {step.status for step in detail.steps} == {"pending"}
    assert len(approvals.bus.events("approval.submitted")) == 1
    assert len(approvals.bus.events("approval.step_assigned")) == 6
