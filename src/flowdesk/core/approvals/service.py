from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

from flowdesk.core.directory.membership import MembershipDirectory
from flowdesk.core.env import env_int
from flowdesk.core.errors import FlowdeskError, InsufficientPermissions, InvalidInput, NotFound, OperationFailed
from flowdesk.core.logging.context import log_context
from flowdesk.core.notifications import EventPublisher, NullEventPublisher
from flowdesk.core.store import StateStore, UnitOfWork, now_iso

from .rules import ApprovalRulesEngine, quorum_met
from .schemas import (
    ActionResult,
    ApprovalRequest,
    ApprovalStep,
    RequestDetail,
    SubmitResult,
    WorkflowStepDefinition,
)

REQUESTS = "requests"
STEPS = "steps"

T = TypeVar("T")


class ApprovalService:
    def __init__(
        self,
        store: StateStore,
        directory: MembershipDirectory,
        rules_engine: ApprovalRulesEngine | None = None,
        publisher: EventPublisher | None = None,
        max_delegation_hops: int | None = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.rules_engine = rules_engine or ApprovalRulesEngine(store, directory)
        self.publisher = publisher or NullEventPublisher()
        self.max_delegation_hops = (
            max_delegation_hops
            if max_delegation_hops is not None
            else env_int("FLOWDESK_APPROVAL_MAX_DELEGATION_HOPS", 3)
        )
        self.logger = logging.getLogger("flowdesk.approvals")

    def _guarded(self, operation: str, fn: Callable[[], T], **ids: Any) -> T:
        try:
            return fn()
        except FlowdeskError:
            raise
        except Exception as exc:
            self.logger.exception(
                "approval_operation_failed",
                extra={"extra_fields": {"operation": operation, **ids}},
            )
            raise OperationFailed(f"approval {operation} failed") from exc

    def _require_member(self, organization_id: str, user_id: str) -> None:
        if self.directory.get_membership(organization_id, user_id) is None:
            raise InsufficientPermissions(f"user {user_id} is not a member of organization {organization_id}")

    def _load_pending_request(self, uow: UnitOfWork, request_id: str) -> ApprovalRequest:
        row = uow.get(REQUESTS, request_id)
        if row is None:
            raise NotFound(f"approval request {request_id} not found")
        request = ApprovalRequest.model_validate(row)
        if request.status != "pending":
            raise InvalidInput(f"approval request already {request.status}")
        return request

    def _steps_at(self, uow: UnitOfWork, request_id: str, step_order: int) -> list[ApprovalStep]:
        rows = uow.find(STEPS, request_id=request_id, step_order=step_order)
        return [ApprovalStep.model_validate(row) for row in rows]

    def _actionable_step(self, uow: UnitOfWork, request: ApprovalRequest, user_id: str) -> ApprovalStep:
        for step in self._steps_at(uow, request.id, request.current_step_order):
            if step.status == "pending" and step.holder == user_id:
                return step
        raise NotFound(f"no pending approval step for user {user_id} on request {request.id}")

    def _assign(
        self,
        uow: UnitOfWork,
        request: ApprovalRequest,
        step_def: WorkflowStepDefinition,
    ) -> list[ApprovalStep]:
        approvers = self.rules_engine.get_required_approvers(step_def, request.organization_id)
        steps = [ApprovalStep(request_id=request.id, step_order=step_def.step_order, approver_id=user) for user in approvers]
        for step in steps:
            uow.insert(STEPS, step.model_dump(mode="json"))
        return steps

    def _skip_pending(self, uow: UnitOfWork, request_id: str, step_order: int | None = None) -> int:
        filters: dict[str, Any] = {"request_id": request_id, "status": "pending"}
        if step_order is not None:
            filters["step_order"] = step_order
        rows = uow.find(STEPS, **filters)
        for row in rows:
            uow.update(STEPS, row["id"], status="skipped")
        return len(rows)

    def _finish(self, uow: UnitOfWork, request: ApprovalRequest, status: str) -> ApprovalRequest:
        row = uow.update(
            REQUESTS,
            request.id,
            status=status,
            completed_at_iso=now_iso(),
            version=request.version + 1,
        )
        return ApprovalRequest.model_validate(row)

    def _publish_assigned(self, request: ApprovalRequest, steps: list[ApprovalStep]) -> None:
        for step in steps:
            self.publisher.publish(
                "approval.step_assigned",
                {
                    "request_id": request.id,
                    "step_id": step.id,
                    "step_order": step.step_order,
                    "approver_id": step.approver_id,
                    "entity_type": request.entity_type,
                    "entity_id": request.entity_id,
                },
                organization_id=request.organization_id,
            )

    def _publish_completed(self, request: ApprovalRequest) -> None:
        self.logger.info(
            "approval_completed",
            extra={"extra_fields": {"request_id": request.id, "status": request.status}},
        )
        self.publisher.publish(
            "approval.completed",
            {
                "request_id": request.id,
                "status": request.status,
                "workflow_id": request.workflow_id,
                "entity_type": request.entity_type,
                "entity_id": request.entity_id,
                "requested_by": request.requested_by,
                "completed_at_iso": request.completed_at_iso,
            },
            organization_id=request.organization_id,
        )

    def submit_for_approval(
        self,
        organization_id: str,
        user_id: str,
        entity_type: str,
        entity_id: str,
        entity_data: dict[str, Any],
    ) -> SubmitResult:
        if not entity_type or not entity_id:
            raise InvalidInput("entity_type and entity_id are required")
        if not entity_data:
            raise InvalidInput("entity_data must not be empty")

        def run() -> SubmitResult:
            self._require_member(organization_id, user_id)
            data = {**entity_data, "entity_type": entity_type, "entity_id": entity_id}
            with self.store.transaction() as uow:
                workflow_id = self.rules_engine.find_matching_workflow(organization_id, data, uow=uow)
                if workflow_id is None:
                    raise NotFound(f"no approval workflow matches {entity_type} {entity_id}")

                request = ApprovalRequest(
                    organization_id=organization_id,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    entity_data=dict(entity_data),
                    requested_by=user_id,
                    workflow_id=workflow_id,
                )
                uow.insert(REQUESTS, request.model_dump(mode="json"))

                steps = self.rules_engine.get_workflow_steps(workflow_id, uow=uow)
                if not steps:
                    raise InvalidInput(f"workflow {workflow_id} has no steps")
                assigned = self._assign(uow, request, steps[0])

            with log_context(organization_id=organization_id, request_id=request.id):
                self.logger.info(
                    "approval_submitted",
                    extra={"extra_fields": {"workflow_id": workflow_id, "approvers": len(assigned)}},
                )
            self.publisher.publish(
                "approval.submitted",
                {
                    "request_id": request.id,
                    "workflow_id": workflow_id,
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                    "requested_by": user_id,
                },
                organization_id=organization_id,
            )
            self._publish_assigned(request, assigned)
            noun = "approver" if len(assigned) == 1 else "approvers"
            return SubmitResult(
                request_id=request.id,
                workflow_id=workflow_id,
                status=request.status,
                approver_count=len(assigned),
                message=f"Submitted for approval to {len(assigned)} {noun}",
            )

        return self._guarded("submit", run, organization_id=organization_id, entity_id=entity_id)

    def approve(self, request_id: str, user_id: str, comments: str | None = None) -> ActionResult:
        def run() -> ActionResult:
            assigned: list[ApprovalStep] = []
            with self.store.transaction() as uow:
                request = self._load_pending_request(uow, request_id)
                step = self._actionable_step(uow, request, user_id)
                self._require_member(request.organization_id, user_id)

                uow.update(STEPS, step.id, status="approved", comments=comments, action_at_iso=now_iso())
                current_order = request.current_step_order
                step_def = self.rules_engine.get_step(request.workflow_id, current_order, uow=uow)
                if step_def is None:
                    raise NotFound(f"workflow {request.workflow_id} has no step {current_order}")

                statuses = [item.status for item in self._steps_at(uow, request.id, current_order)]
                if not quorum_met(step_def, statuses):
                    result = ActionResult(
                        request_id=request.id,
                        request_status="pending",
                        step_order=current_order,
                        message=f"Approval recorded; step {current_order} awaits more approvals",
                    )
                    completed = None
                else:
                    self._skip_pending(uow, request.id, current_order)
                    next_def = self.rules_engine.get_step(request.workflow_id, current_order + 1, uow=uow)
                    if next_def is not None:
                        uow.update(
                            REQUESTS,
                            request.id,
                            current_step_order=next_def.step_order,
                            version=request.version + 1,
                        )
                        assigned = self._assign(uow, request, next_def)
                        completed = None
                        result = ActionResult(
                            request_id=request.id,
                            request_status="pending",
                            step_order=current_order,
                            next_step_order=next_def.step_order,
                            message=f"Step {current_order} approved; moved to step {next_def.step_order}",
                        )
                    else:
                        completed = self._finish(uow, request, "approved")
                        result = ActionResult(
                            request_id=request.id,
                            request_status="approved",
                            step_order=current_order,
                            completed=True,
                            message="Request approved",
                        )

            with log_context(organization_id=request.organization_id, request_id=request.id):
                self.logger.info(
                    "approval_step_approved",
                    extra={"extra_fields": {"step_id": step.id, "step_order": current_order, "user_id": user_id}},
                )
            if assigned:
                self._publish_assigned(request, assigned)
            if completed is not None:
                self._publish_completed(completed)
            return result

        return self._guarded("approve", run, request_id=request_id, user_id=user_id)

    def reject(self, request_id: str, user_id: str, comments: str | None = None) -> ActionResult:
        def run() -> ActionResult:
            with self.store.transaction() as uow:
                request = self._load_pending_request(uow, request_id)
                step = self._actionable_step(uow, request, user_id)
                self._require_member(request.organization_id, user_id)

                uow.update(STEPS, step.id, status="rejected", comments=comments, action_at_iso=now_iso())
                self._skip_pending(uow, request.id)
                completed = self._finish(uow, request, "rejected")

            with log_context(organization_id=request.organization_id, request_id=request.id):
                self.logger.info(
                    "approval_step_rejected",
                    extra={"extra_fields": {"step_id": step.id, "step_order": step.step_order, "user_id": user_id}},
                )
            self._publish_completed(completed)
            return ActionResult(
                request_id=request.id,
                request_status="rejected",
                step_order=step.step_order,
                completed=True,
                message="Request rejected",
            )

        return self._guarded("reject", run, request_id=request_id, user_id=user_id)

    def delegate(
        self,
        request_id: str,
        user_id: str,
        delegate_to_user_id: str,
        comments: str | None = None,
    ) -> ApprovalStep:
        if not delegate_to_user_id:
            raise InvalidInput("delegate_to_user_id is required")

        def run() -> ApprovalStep:
            with self.store.transaction() as uow:
                request = self._load_pending_request(uow, request_id)
                siblings = self._steps_at(uow, request.id, request.current_step_order)
                step = next(
                    (
                        item
                        for item in siblings
                        if item.status == "pending" and user_id in {item.holder, item.approver_id}
                    ),
                    None,
                )
                if step is None:
                    raise NotFound(f"no pending approval step for user {user_id} on request {request.id}")
                self._require_member(request.organization_id, user_id)

                if delegate_to_user_id in {user_id, step.holder}:
                    raise InvalidInput("cannot delegate a step to its current holder")
                if any(item.holder == delegate_to_user_id and item.status == "pending" for item in siblings):
                    raise InvalidInput(f"user {delegate_to_user_id} already holds a step at this stage")
                if self.directory.get_membership(request.organization_id, delegate_to_user_id) is None:
                    raise InvalidInput(f"user {delegate_to_user_id} is not a member of the organization")
                hops = step.delegation_hops + 1
                if hops > self.max_delegation_hops:
                    raise InvalidInput(f"delegation limit of {self.max_delegation_hops} reached")

                row = uow.update(
                    STEPS,
                    step.id,
                    delegated_to=delegate_to_user_id,
                    delegated_by=user_id,
                    delegation_hops=hops,
                    comments=comments,
                )
                updated = ApprovalStep.model_validate(row)

            with log_context(organization_id=request.organization_id, request_id=request.id):
                self.logger.info(
                    "approval_step_delegated",
                    extra={"extra_fields": {"step_id": step.id, "from": user_id, "to": delegate_to_user_id, "hops": hops}},
                )
            self.publisher.publish(
                "approval.delegated",
                {
                    "request_id": request.id,
                    "step_id": step.id,
                    "delegated_by": user_id,
                    "delegated_to": delegate_to_user_id,
                    "delegation_hops": hops,
                },
                organization_id=request.organization_id,
            )
            return updated

        return self._guarded("delegate", run, request_id=request_id, user_id=user_id)

    def cancel(self, request_id: str, user_id: str) -> ApprovalRequest:
        def run() -> ApprovalRequest:
            with self.store.transaction() as uow:
                request = self._load_pending_request(uow, request_id)
                if request.requested_by != user_id:
                    raise InsufficientPermissions("only the requester can cancel an approval request")
                self._skip_pending(uow, request.id)
                completed = self._finish(uow, request, "cancelled")
            self._publish_completed(completed)
            return completed

        return self._guarded("cancel", run, request_id=request_id, user_id=user_id)

    def get_request(self, request_id: str) -> RequestDetail:
        view = self.store.snapshot()
        row = view.get(REQUESTS, request_id)
        if row is None:
            raise NotFound(f"approval request {request_id} not found")
        steps = [ApprovalStep.model_validate(item) for item in view.find(STEPS, request_id=request_id)]
        steps.sort(key=lambda item: (item.step_order, item.created_at_iso))
        return RequestDetail(request=ApprovalRequest.model_validate(row), steps=steps)

    def list_pending_for_user(self, organization_id: str, user_id: str) -> list[ApprovalStep]:
        view = self.store.snapshot()
        requests = {
            row["id"]: row
            for row in view.find(REQUESTS, organization_id=organization_id, status="pending")
        }
        steps = [
            ApprovalStep.model_validate(row)
            for row in view.find(STEPS, status="pending")
            if row["request_id"] in requests
            and row["step_order"] == requests[row["request_id"]]["current_step_order"]
        ]
        return sorted((step for step in steps if step.holder == user_id), key=lambda step: step.created_at_iso)

    def list_completed(self, status: str = "approved", organization_id: str | None = None) -> list[ApprovalRequest]:
        filters: dict[str, Any] = {"status": status}
        if organization_id is not None:
            filters["organization_id"] = organization_id
        rows = self.store.snapshot().find(REQUESTS, **filters)
        requests = [ApprovalRequest.model_validate(row) for row in rows]
        return sorted(requests, key=lambda request: request.completed_at_iso or request.submitted_at_iso)
