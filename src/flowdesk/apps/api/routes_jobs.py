from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from flowdesk.core.errors import InvalidInput, NotFound
from flowdesk.core.ledger import JobLedgerEntry, JobLogEntry, JobStats
from flowdesk.core.queue import AddJobResult, QueueManager

from .deps import Identity, get_identity, get_queue_manager

router = APIRouter()


class AddJobBody(BaseModel):
    queue_name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: str = "normal"
    max_retries: int | None = None
    run_at_iso: str | None = None


def _owned_job(manager: QueueManager, job_id: str, identity: Identity) -> JobLedgerEntry:
    entry = manager.get_job(job_id)
    if entry.organization_id != identity.organization_id:
        raise NotFound(f"job {job_id} not found")
    return entry


@router.post("", response_model=AddJobResult)
def add_job(
    body: AddJobBody,
    identity: Identity = Depends(get_identity),
    manager: QueueManager = Depends(get_queue_manager),
) -> AddJobResult:
    run_at = None
    if body.run_at_iso:
        try:
            run_at = datetime.fromisoformat(body.run_at_iso)
        except ValueError as exc:
            raise InvalidInput("run_at_iso must be an ISO datetime") from exc
    return manager.add_job(
        body.queue_name,
        body.payload,
        priority=body.priority,
        organization_id=identity.organization_id,
        max_retries=body.max_retries,
        run_at=run_at,
    )


@router.get("", response_model=list[JobLedgerEntry])
def list_jobs(
    status: list[str] | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    identity: Identity = Depends(get_identity),
    manager: QueueManager = Depends(get_queue_manager),
) -> list[JobLedgerEntry]:
    return manager.ledger.list_by_status(status, organization_id=identity.organization_id, limit=limit)


@router.get("/stats", response_model=JobStats)
def job_stats(
    identity: Identity = Depends(get_identity),
    manager: QueueManager = Depends(get_queue_manager),
) -> JobStats:
    return manager.ledger.stats(organization_id=identity.organization_id)


@router.get("/{job_id}", response_model=JobLedgerEntry)
def get_job(
    job_id: str,
    identity: Identity = Depends(get_identity),
    manager: QueueManager = Depends(get_queue_manager),
) -> JobLedgerEntry:
    return _owned_job(manager, job_id, identity)


@router.get("/{job_id}/logs", response_model=list[JobLogEntry])
def get_job_logs(
    job_id: str,
    level: list[str] | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    identity: Identity = Depends(get_identity),
    manager: QueueManager = Depends(get_queue_manager),
) -> list[JobLogEntry]:
    _owned_job(manager, job_id, identity)
    return manager.ledger.get_logs(job_id, levels=level, limit=limit)


@router.post("/{job_id}/cancel", response_model=JobLedgerEntry)
def cancel_job(
    job_id: str,
    identity: Identity = Depends(get_identity),
    manager: QueueManager = Depends(get_queue_manager),
) -> JobLedgerEntry:
    _owned_job(manager, job_id, identity)
    return manager.cancel(job_id)
