from .ledger import JobLedger
from .schemas import BROKER_PRIORITY, JobLedgerEntry, JobLogEntry, JobStats

__all__ = ["BROKER_PRIORITY", "JobLedger", "JobLedgerEntry", "JobLogEntry", "JobStats"]
