from __future__ import annotations


class FlowdeskError(RuntimeError):
    """Base error for every failure the core reports to its callers."""

    status_code = 500
    retryable = False


class InvalidInput(FlowdeskError):
    status_code = 400


class InsufficientPermissions(FlowdeskError):
    status_code = 403


class NotFound(FlowdeskError):
    status_code = 404


class OperationFailed(FlowdeskError):
    """Unexpected internal failure; the message is safe to show to callers."""

    status_code = 500
    retryable = True


class RetryableError(FlowdeskError):
    """Transient failure: lock contention, open circuit, external timeout."""

    status_code = 503
    retryable = True


class Conflict(RetryableError):
    status_code = 409


class FatalError(FlowdeskError):
    """Raised when retrying cannot help (exhausted retries, corrupt data, rejected call)."""

    status_code = 500


class CircuitOpenError(RetryableError):
    def __init__(self, integration: str, last_error: str | None = None) -> None:
        self.integration = integration
        self.last_error = last_error
        suffix = f": {last_error}" if last_error else ""
        super().__init__(f"circuit_open:{integration}{suffix}")


class BrokerEnqueueError(RetryableError):
    """The ledger entry exists but the broker did not accept it; reconciliation re-enqueues it."""

    def __init__(self, ledger_job_id: str, message: str) -> None:
        self.ledger_job_id = ledger_job_id
        super().__init__(message)


class JobCancelled(FlowdeskError):
    """Raised by a handler that saw a cooperative cancel request."""

    status_code = 409


NON_RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    InvalidInput,
    InsufficientPermissions,
    NotFound,
    FatalError,
)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, NON_RETRYABLE_ERRORS):
        return False
    if isinstance(exc, FlowdeskError):
        return exc.retryable
    return True