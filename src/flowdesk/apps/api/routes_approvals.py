from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from flowdesk.core.approvals import ApprovalService
from flowdesk.core.approvals.schemas import ActionResult, ApprovalRequest, ApprovalStep, RequestDetail, SubmitResult
from flowdesk.core.errors import NotFound

from .deps import Identity, get_approval_service, get_identity

router = APIRouter()


class SubmitApprovalBody(BaseModel):
    entity_type: str
    entity_id: str
    entity_data: dict[str, Any] = Field(default_factory=dict)


class DecisionBody(BaseModel):
    comments: str | None = None


class DelegateBody(BaseModel):
    delegate_to_user_id: str
    comments: str | None = None


def _ensure_same_org(service: ApprovalService, request_id: str, identity: Identity) -> RequestDetail:
    detail = service.get_request(request_id)
    if detail.request.organization_id != identity.organization_id:
        raise NotFound(f"approval request {request_id} not found")
    return detail


@router.post("", response_model=SubmitResult)
def submit_for_approval(
    body: SubmitApprovalBody,
    identity: Identity = Depends(get_identity),
    service: ApprovalService = Depends(get_approval_service),
) -> SubmitResult:
    return service.submit_for_approval(
        organization_id=identity.organization_id,
        user_id=identity.user_id,
        entity_type=body.entity_type,
        entity_id=body.entity_id,
        entity_data=body.entity_data,
    )


@router.get("/inbox", response_model=list[ApprovalStep])
def inbox(
    identity: Identity = Depends(get_identity),
    service: ApprovalService = Depends(get_approval_service),
) -> list[ApprovalStep]:
    return service.list_pending_for_user(identity.organization_id, identity.user_id)


@router.get("/{request_id}", response_model=RequestDetail)
def get_request(
    request_id: str,
    identity: Identity = Depends(get_identity),
    service: ApprovalService = Depends(get_approval_service),
) -> RequestDetail:
    return _ensure_same_org(service, request_id, identity)


@router.post("/{request_id}/approve", response_model=ActionResult)
def approve(
    request_id: str,
    body: DecisionBody,
    identity: Identity = Depends(get_identity),
    service: ApprovalService = Depends(get_approval_service),
) -> ActionResult:
    _ensure_same_org(service, request_id, identity)
    return service.approve(request_id, identity.user_id, comments=body.comments)


@router.post("/{request_id}/reject", response_model=ActionResult)
def reject(
    request_id: str,
    body: DecisionBody,
    identity: Identity = Depends(get_identity),
    service: ApprovalService = Depends(get_approval_service),
) -> ActionResult:
    _ensure_same_org(service, request_id, identity)
    return service.reject(request_id, identity.user_id, comments=body.comments)


@router.post("/{request_id}/delegate", response_model=ApprovalStep)
def delegate(
    request_id: str,
    body: DelegateBody,
    identity: Identity = Depends(get_identity),
    service: ApprovalService = Depends(get_approval_service),
) -> ApprovalStep:
    _ensure_same_org(service, request_id, identity)
    return service.delegate(request_id, identity.user_id, body.delegate_to_user_id, comments=body.comments)


@router.post("/{request_id}/cancel", response_model=ApprovalRequest)
def cancel(
    request_id: str,
    identity: Identity = Depends(get_identity),
    service: ApprovalService = Depends(get_approval_service),
) -> ApprovalRequest:
    _ensure_same_org(service, request_id, identity)
    return service.cancel(request_id, identity.user_id)
