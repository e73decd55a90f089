from __future__ import annotations

import logging
from dataclasses import dataclass

import pytest

from flowdesk.core.approvals import ApprovalRulesEngine, ApprovalService, WorkflowAdmin
from flowdesk.core.directory.membership import StoreMembershipDirectory
from flowdesk.core.ledger import JobLedger
from flowdesk.core.notifications import InMemoryEventBus
from flowdesk.core.queue import HandlerRegistry, InMemoryBroker, JobWorker, QueueManager
from flowdesk.core.store import StateStore


@pytest.fixture(autouse=True)
def isolate_environment(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FLOWDESK_LOG_TO_FILE", "off")
    monkeypatch.setenv("FLOWDESK_TEST_MODE", "1")
    monkeypatch.setenv("FLOWDESK_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.delenv("FLOWDESK_ERP_URL", raising=False)
    monkeypatch.delenv("FLOWDESK_APPROVAL_SYNC_ENTITY_TYPES", raising=False)


@pytest.fixture(autouse=True)
def restore_flowdesk_logger():
    # API startup calls configure_logging, which detaches "flowdesk" from the root logger.
    logger = logging.getLogger("flowdesk")
    handlers, propagate, level = list(logger.handlers), logger.propagate, logger.level
    yield logger
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers = handlers
    logger.propagate = propagate
    logger.setLevel(level)


@dataclass
class ApprovalsEnv:
    store: StateStore
    directory: StoreMembershipDirectory
    admin: WorkflowAdmin
    engine: ApprovalRulesEngine
    service: ApprovalService
    bus: InMemoryEventBus


@pytest.fixture
def approvals(tmp_path) -> ApprovalsEnv:
    store = StateStore(tmp_path / "state", "approvals.json")
    directory = StoreMembershipDirectory(store)
    engine = ApprovalRulesEngine(store, directory)
    bus = InMemoryEventBus()
    service = ApprovalService(store, directory, rules_engine=engine, publisher=bus, max_delegation_hops=2)
    for user in ("requester", "u1", "u2", "u3", "u4", "u5"):
        directory.add_member("org-1", user, role="member")
    return ApprovalsEnv(
        store=store,
        directory=directory,
        admin=WorkflowAdmin(store),
        engine=engine,
        service=service,
        bus=bus,
    )


@dataclass
class QueueEnv:
    ledger: JobLedger
    broker: InMemoryBroker
    manager: QueueManager
    registry: HandlerRegistry
    worker: JobWorker
    bus: InMemoryEventBus


@pytest.fixture
def queue(tmp_path) -> QueueEnv:
    ledger = JobLedger(StateStore(tmp_path / "state", "jobs.json"))
    broker = InMemoryBroker()
    bus = InMemoryEventBus()
    registry = HandlerRegistry()
    worker = JobWorker(ledger, broker, registry, publisher=bus, concurrency=1, backoff_base_s=0, backoff_max_s=0)
    return QueueEnv(
        ledger=ledger,
        broker=broker,
        manager=QueueManager(ledger, broker, default_max_retries=3),
        registry=registry,
        worker=worker,
        bus=bus,
    )
