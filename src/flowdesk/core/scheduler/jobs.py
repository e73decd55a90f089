from __future__ import annotations

from pathlib import Path

from flowdesk.core.logging.context import log_context
from flowdesk.core.store import StateStore, new_id
from flowdesk.core.sync.idempotency import IdempotencyStore


def run_idempotency_cleanup(state_dir: str, job_id: str = "maintenance:idempotency_cleanup") -> int:
    """Scheduler entrypoint; takes only picklable arguments so it can live in the persistent job store."""
    with log_context(correlation_id=new_id(), job_id=job_id):
        store = IdempotencyStore(StateStore(Path(state_dir), "sync.json"))
        return store.cleanup_expired()
