from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from flowdesk.core.directory.membership import MembershipDirectory
from flowdesk.core.errors import InvalidInput, NotFound
from flowdesk.core.store import StateStore, UnitOfWork

from .conditions import evaluate, safe_parse_conditions
from .schemas import ApprovalRule, ApprovalWorkflow, WorkflowStepDefinition

WORKFLOWS = "workflows"
RULES = "rules"


class ApprovalRulesEngine:
    """Selects the workflow for an entity and resolves who approves each step."""

    def __init__(self, store: StateStore, directory: MembershipDirectory) -> None:
        self.store = store
        self.directory = directory
        self.logger = logging.getLogger("flowdesk.rules")

    def _uow(self, uow: UnitOfWork | None) -> UnitOfWork:
        return uow if uow is not None else self.store.snapshot()

    def active_rules(self, organization_id: str, entity_type: str, uow: UnitOfWork | None = None) -> list[ApprovalRule]:
        rows = self._uow(uow).find(RULES, organization_id=organization_id, entity_type=entity_type, is_active=True)
        rules = [ApprovalRule.model_validate(row) for row in rows]
        return sorted(rules, key=lambda rule: (rule.priority, rule.created_at_iso))

    def find_matching_workflow(
        self,
        organization_id: str,
        entity_data: Mapping[str, Any],
        uow: UnitOfWork | None = None,
    ) -> str | None:
        if not entity_data:
            raise InvalidInput("entity data is required")
        entity_type = entity_data.get("entity_type")
        if not entity_type:
            raise InvalidInput("entity data must carry entity_type")

        view = self._uow(uow)
        for rule in self.active_rules(organization_id, str(entity_type), uow=view):
            workflow = view.get(WORKFLOWS, rule.workflow_id)
            if workflow is None or not workflow.get("is_active"):
                continue
            tree = safe_parse_conditions(rule.conditions, rule_id=rule.id)
            if tree is None:
                continue
            if evaluate(tree, entity_data):
                self.logger.info(
                    "rule_matched",
                    extra={"extra_fields": {"rule_id": rule.id, "workflow_id": rule.workflow_id, "priority": rule.priority}},
                )
                return rule.workflow_id

        self.logger.info(
            "rule_no_match",
            extra={"extra_fields": {"organization_id": organization_id, "entity_type": entity_type}},
        )
        return None

    def get_workflow(self, workflow_id: str, uow: UnitOfWork | None = None) -> ApprovalWorkflow:
        row = self._uow(uow).get(WORKFLOWS, workflow_id)
        if row is None:
            raise NotFound(f"workflow {workflow_id} not found")
        return ApprovalWorkflow.model_validate(row)

    def get_workflow_steps(self, workflow_id: str, uow: UnitOfWork | None = None) -> list[WorkflowStepDefinition]:
        workflow = self.get_workflow(workflow_id, uow=uow)
        return sorted(workflow.steps, key=lambda step: step.step_order)

    def get_step(self, workflow_id: str, step_order: int, uow: UnitOfWork | None = None) -> WorkflowStepDefinition | None:
        for step in self.get_workflow_steps(workflow_id, uow=uow):
            if step.step_order == step_order:
                return step
        return None

    def get_required_approvers(self, step: WorkflowStepDefinition, organization_id: str) -> list[str]:
        if step.approver_type == "user":
            candidates: Iterable[str] = [step.approver_ref]
        elif step.approver_type == "role":
            candidates = self.directory.users_with_role(organization_id, step.approver_ref)
        else:
            candidates = self.directory.users_in_team(organization_id, step.approver_ref)

        approvers = list(dict.fromkeys(user for user in candidates if user))
        if not approvers:
            raise InvalidInput(
                f"no approvers found for step {step.step_order} ({step.approver_type}:{step.approver_ref})"
            )
        if len(approvers) < step.min_approvals:
            raise InvalidInput(
                f"step {step.step_order} needs {step.min_approvals} approvals but only {len(approvers)} approvers resolved"
            )
        return approvers


def quorum_met(step: WorkflowStepDefinition, statuses: list[str]) -> bool:
    approved = sum(1 for status in statuses if status == "approved")
    if step.step_type == "single":
        return approved >= 1
    if step.step_type == "parallel":
        return bool(statuses) and approved == len(statuses)
    return approved >= step.min_approvals


class WorkflowAdmin:
    """Create and revise workflows and the rules that point at them."""

    def __init__(self, store: StateStore) -> None:
        self.store = store
        self.logger = logging.getLogger("flowdesk.rules")

    def create_workflow(
        self,
        organization_id: str,
        name: str,
        entity_type: str,
        steps: list[WorkflowStepDefinition | dict[str, Any]],
    ) -> ApprovalWorkflow:
        workflow = self._build(organization_id=organization_id, name=name, entity_type=entity_type, steps=steps)
        with self.store.transaction() as uow:
            uow.insert(WORKFLOWS, workflow.model_dump(mode="json"))
        self.logger.info("workflow_created", extra={"extra_fields": {"workflow_id": workflow.id, "steps": len(workflow.steps)}})
        return workflow

    def revise_workflow(self, workflow_id: str, steps: list[WorkflowStepDefinition | dict[str, Any]]) -> ApprovalWorkflow:
        with self.store.transaction() as uow:
            row = uow.get(WORKFLOWS, workflow_id)
            if row is None:
                raise NotFound(f"workflow {workflow_id} not found")
            current = ApprovalWorkflow.model_validate(row)
            revised = self._build(
                organization_id=current.organization_id,
                name=current.name,
                entity_type=current.entity_type,
                steps=steps,
                version=current.version + 1,
                previous_version_id=current.id,
            )
            uow.insert(WORKFLOWS, revised.model_dump(mode="json"))
            uow.update(WORKFLOWS, current.id, is_active=False)
            for rule in uow.find(RULES, workflow_id=current.id):
                uow.update(RULES, rule["id"], workflow_id=revised.id)
        self.logger.info(
            "workflow_revised",
            extra={"extra_fields": {"workflow_id": revised.id, "previous_version_id": workflow_id, "version": revised.version}},
        )
        return revised

    def deactivate_workflow(self, workflow_id: str) -> None:
        with self.store.transaction() as uow:
            uow.update(WORKFLOWS, workflow_id, is_active=False)

    def create_rule(
        self,
        organization_id: str,
        entity_type: str,
        name: str,
        conditions: dict[str, Any],
        workflow_id: str,
        priority: int = 100,
    ) -> ApprovalRule:
        if safe_parse_conditions(conditions) is None:
            raise InvalidInput("rule conditions are not a valid condition tree")
        rule = ApprovalRule(
            organization_id=organization_id,
            entity_type=entity_type,
            name=name,
            priority=priority,
            conditions=conditions,
            workflow_id=workflow_id,
        )
        with self.store.transaction() as uow:
            workflow = uow.get(WORKFLOWS, workflow_id)
            if workflow is None or workflow["organization_id"] != organization_id:
                raise NotFound(f"workflow {workflow_id} not found")
            uow.insert(RULES, rule.model_dump(mode="json"))
        return rule

    def deactivate_rule(self, rule_id: str) -> None:
        with self.store.transaction() as uow:
            uow.update(RULES, rule_id, is_active=False)

    @staticmethod
    def _build(**fields: Any) -> ApprovalWorkflow:
        steps = fields.pop("steps")
        try:
            parsed = [
                step if isinstance(step, WorkflowStepDefinition) else WorkflowStepDefinition.model_validate(step)
                for step in steps
            ]
            return ApprovalWorkflow(steps=parsed, **fields)
        except ValueError as exc:
            raise InvalidInput(str(exc)) from exc
