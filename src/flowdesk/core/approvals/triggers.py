from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Iterable

from flowdesk.core.env import env_float
from flowdesk.core.errors import FlowdeskError
from flowdesk.core.notifications import DomainEvent, InMemoryEventBus
from flowdesk.core.queue.manager import AddJobResult, QueueManager
from flowdesk.core.store import parse_iso

if TYPE_CHECKING:
    from .service import ApprovalService


def trigger_ref_for(request_id: str) -> str:
    return f"approval_request:{request_id}"


class ApprovalCompletionTrigger:
    """Enqueues downstream sync work once per approved request."""

    def __init__(
        self,
        queue_manager: QueueManager,
        entity_types: Iterable[str] | None = None,
        queue_name: str = "odoo-sync",
        priority: str = "normal",
    ) -> None:
        self.queue_manager = queue_manager
        self.entity_types = set(entity_types) if entity_types is not None else None
        self.queue_name = queue_name
        self.priority = priority
        self._lock = threading.Lock()
        self.logger = logging.getLogger("flowdesk.approvals")

    def attach(self, bus: InMemoryEventBus) -> None:
        bus.subscribe("approval.completed", self.on_event)

    def on_event(self, event: DomainEvent) -> None:
        self.handle_completion(
            organization_id=event.organization_id,
            request_id=str(event.payload["request_id"]),
            status=str(event.payload.get("status")),
            entity_type=str(event.payload.get("entity_type")),
            entity_id=str(event.payload.get("entity_id")),
        )

    def handle_completion(
        self,
        organization_id: str | None,
        request_id: str,
        status: str,
        entity_type: str,
        entity_id: str,
    ) -> AddJobResult | None:
        if status != "approved":
            return None
        if self.entity_types is not None and entity_type not in self.entity_types:
            return None

        trigger_ref = trigger_ref_for(request_id)
        with self._lock:
            existing = self.queue_manager.ledger.find_by_trigger(trigger_ref)
            if existing:
                self.logger.info(
                    "approval_trigger_duplicate",
                    extra={"extra_fields": {"request_id": request_id, "job_id": existing[0].id}},
                )
                return None

            result = self.queue_manager.add_job(
                self.queue_name,
                {
                    "type": "approval_completed",
                    "organization_id": organization_id,
                    "request_id": request_id,
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                },
                priority=self.priority,
                organization_id=organization_id,
                trigger_ref=trigger_ref,
            )
        self.logger.info(
            "approval_trigger_enqueued",
            extra={"extra_fields": {"request_id": request_id, "job_id": result.ledger_job_id}},
        )
        return result

    def sweep(self, service: "ApprovalService", grace_s: float | None = None, now: datetime | None = None) -> list[str]:
        """Enqueues sync jobs for approved requests whose completion event was lost.

        Requests completed within the grace period are left to the event path.
        Returns the ids of the requests that got a job.
        """
        grace = grace_s if grace_s is not None else env_float("FLOWDESK_RECONCILE_GRACE_S", 60.0)
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=grace)
        recovered: list[str] = []
        for request in service.list_completed("approved"):
            completed_at = parse_iso(request.completed_at_iso)
            if completed_at is not None and completed_at > cutoff:
                continue
            if self.queue_manager.ledger.find_by_trigger(trigger_ref_for(request.id)):
                continue
            try:
                result = self.handle_completion(
                    organization_id=request.organization_id,
                    request_id=request.id,
                    status=request.status,
                    entity_type=request.entity_type,
                    entity_id=request.entity_id,
                )
            except FlowdeskError as exc:
                self.logger.warning(
                    "approval_trigger_sweep_failed",
                    extra={"extra_fields": {"request_id": request.id, "error": str(exc)}},
                )
                continue
            if result is not None:
                recovered.append(request.id)

        if recovered:
            self.logger.warning("approval_triggers_recovered", extra={"extra_fields": {"count": len(recovered)}})
        return recovered
