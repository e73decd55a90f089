from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from flowdesk.core.approvals import ApprovalCompletionTrigger, ApprovalRulesEngine, ApprovalService, WorkflowAdmin
from flowdesk.core.directory.membership import StoreMembershipDirectory
from flowdesk.core.env import default_state_dir
from flowdesk.core.infra import BreakerManager
from flowdesk.core.ledger import JobLedger
from flowdesk.core.notifications import InMemoryEventBus
from flowdesk.core.queue import HandlerRegistry, InMemoryBroker, JobWorker, QueueManager
from flowdesk.core.store import StateStore
from flowdesk.core.sync import IdempotencyStore, OperationAuditLog, SyncJobs, SyncOrchestrator
from flowdesk.core.sync.erp_client import ERPClient, erp_client_from_env


@dataclass
class Runtime:
    state_dir: Path
    bus: InMemoryEventBus
    directory: StoreMembershipDirectory
    workflows: WorkflowAdmin
    approvals: ApprovalService
    ledger: JobLedger
    broker: InMemoryBroker
    queue: QueueManager
    registry: HandlerRegistry
    worker: JobWorker
    breakers: BreakerManager
    idempotency: IdempotencyStore
    audit_log: OperationAuditLog
    orchestrator: SyncOrchestrator
    trigger: ApprovalCompletionTrigger


def build_runtime(state_dir: Path | None = None, erp_client: ERPClient | None = None) -> Runtime:
    root = state_dir or default_state_dir()
    bus = InMemoryEventBus()

    approvals_store = StateStore(root, "approvals.json")
    directory = StoreMembershipDirectory(approvals_store)
    rules_engine = ApprovalRulesEngine(approvals_store, directory)
    approvals = ApprovalService(approvals_store, directory, rules_engine=rules_engine, publisher=bus)

    ledger = JobLedger(StateStore(root, "jobs.json"))
    broker = InMemoryBroker()
    queue = QueueManager(ledger, broker)
    registry = HandlerRegistry()
    worker = JobWorker(ledger, broker, registry, publisher=bus)

    sync_store = StateStore(root, "sync.json")
    breakers = BreakerManager(StateStore(root, "breakers.json"), publisher=bus)
    idempotency = IdempotencyStore(sync_store)
    audit_log = OperationAuditLog(sync_store)
    orchestrator = SyncOrchestrator(idempotency, audit_log, breakers)
    SyncJobs(orchestrator, erp_client or erp_client_from_env(), audit_log).register(registry)

    raw_types = os.getenv("FLOWDESK_APPROVAL_SYNC_ENTITY_TYPES", "").strip()
    entity_types = [item.strip() for item in raw_types.split(",") if item.strip()] if raw_types else None
    trigger = ApprovalCompletionTrigger(queue, entity_types=entity_types)
    trigger.attach(bus)

    return Runtime(
        state_dir=root,
        bus=bus,
        directory=directory,
        workflows=WorkflowAdmin(approvals_store),
        approvals=approvals,
        ledger=ledger,
        broker=broker,
        queue=queue,
        registry=registry,
        worker=worker,
        breakers=breakers,
        idempotency=idempotency,
        audit_log=audit_log,
        orchestrator=orchestrator,
        trigger=trigger,
    )
