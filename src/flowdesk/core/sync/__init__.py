from .audit import OperationAuditEntry, OperationAuditLog
from .erp_client import ERPClient, ERPError, JsonRpcERPClient
from .idempotency import IdempotencyRecord, IdempotencyStore
from .jobs import SyncJobs
from .keys import canonical_json, derive_idempotency_key
from .orchestrator import SyncOrchestrator, is_transient

__all__ = [
    "ERPClient",
    "ERPError",
    "IdempotencyRecord",
    "IdempotencyStore",
    "JsonRpcERPClient",
    "OperationAuditEntry",
    "OperationAuditLog",
    "SyncJobs",
    "SyncOrchestrator",
    "canonical_json",
    "derive_idempotency_key",
    "is_transient",
]
