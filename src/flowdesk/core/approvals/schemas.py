from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from flowdesk.core.store import new_id, now_iso

StepType = Literal["single", "parallel", "any"]
ApproverType = Literal["user", "role", "team"]
RequestStatus = Literal["pending", "approved", "rejected", "cancelled"]
StepStatus = Literal["pending", "approved", "rejected", "skipped"]
ConditionOperator = Literal[
    "equals",
    "not_equals",
    "greater_than",
    "greater_or_equal",
    "less_than",
    "less_or_equal",
    "contains",
    "in",
    "manual",
]

TERMINAL_REQUEST_STATUSES = {"approved", "rejected", "cancelled"}

# camelCase spellings used by API clients.
OPERATOR_ALIASES = {
    "notEquals": "not_equals",
    "greaterThan": "greater_than",
    "greaterOrEqual": "greater_or_equal",
    "lessThan": "less_than",
    "lessOrEqual": "less_or_equal",
}


class ConditionPredicate(BaseModel):
    kind: Literal["predicate"] = "predicate"
    field: str | None = None
    operator: ConditionOperator
    value: Any = None

    @field_validator("operator", mode="before")
    @classmethod
    def _canonical_operator(cls, value: Any) -> Any:
        return OPERATOR_ALIASES.get(value, value) if isinstance(value, str) else value

    @model_validator(mode="after")
    def _field_required(self) -> "ConditionPredicate":
        if self.operator != "manual" and not self.field:
            raise ValueError(f"operator {self.operator} requires a field")
        return self


class ConditionGroup(BaseModel):
    kind: Literal["group"] = "group"
    logic: Literal["AND", "OR"] = "AND"
    conditions: list["ConditionNode"] = Field(default_factory=list)


ConditionNode = Annotated[Union[ConditionPredicate, ConditionGroup], Field(discriminator="kind")]
ConditionGroup.model_rebuild()


class WorkflowStepDefinition(BaseModel):
    id: str = Field(default_factory=new_id)
    step_order: int = Field(ge=1)
    step_type: StepType = "single"
    approver_type: ApproverType = "user"
    approver_ref: str
    min_approvals: int = Field(default=1, ge=1)
    name: str | None = None

    @model_validator(mode="after")
    def _single_needs_one(self) -> "WorkflowStepDefinition":
        if self.step_type == "single" and self.min_approvals != 1:
            raise ValueError("single steps require exactly one approval")
        return self


class ApprovalWorkflow(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    name: str
    entity_type: str
    is_active: bool = True
    version: int = 1
    previous_version_id: str | None = None
    steps: list[WorkflowStepDefinition] = Field(default_factory=list)
    created_at_iso: str = Field(default_factory=now_iso)

    @model_validator(mode="after")
    def _orders_strictly_increasing(self) -> "ApprovalWorkflow":
        orders = [step.step_order for step in self.steps]
        if orders != list(range(1, len(orders) + 1)):
            raise ValueError("step orders must be 1..n, unique and strictly increasing")
        return self


class ApprovalRule(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    entity_type: str
    name: str
    priority: int = 100
    conditions: dict[str, Any]
    workflow_id: str
    is_active: bool = True
    created_at_iso: str = Field(default_factory=now_iso)


class ApprovalRequest(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    entity_type: str
    entity_id: str
    entity_data: dict[str, Any] = Field(default_factory=dict)
    requested_by: str
    workflow_id: str
    current_step_order: int = 1
    status: RequestStatus = "pending"
    submitted_at_iso: str = Field(default_factory=now_iso)
    completed_at_iso: str | None = None
    version: int = 1


class ApprovalStep(BaseModel):
    id: str = Field(default_factory=new_id)
    request_id: str
    step_order: int
    approver_id: str
    delegated_to: str | None = None
    delegated_by: str | None = None
    delegation_hops: int = 0
    status: StepStatus = "pending"
    comments: str | None = None
    action_at_iso: str | None = None
    created_at_iso: str = Field(default_factory=now_iso)

    @property
    def holder(self) -> str:
        return self.delegated_to or self.approver_id


class SubmitResult(BaseModel):
    request_id: str
    workflow_id: str
    status: RequestStatus
    approver_count: int
    message: str


class ActionResult(BaseModel):
    success: bool = True
    request_id: str
    request_status: RequestStatus
    step_order: int
    completed: bool = False
    next_step_order: int | None = None
    message: str


class RequestDetail(BaseModel):
    request: ApprovalRequest
    steps: list[ApprovalStep] = Field(default_factory=list)
