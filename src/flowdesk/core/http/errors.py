from __future__ import annotations

from flowdesk.core.errors import RetryableError


class FlowdeskHTTPError(RetryableError):
    """Failure talking to a remote HTTP endpoint through the shared client."""


class FlowdeskHTTPStatusError(FlowdeskHTTPError):
    """Non-2xx answer; only 429 and 5xx are worth retrying."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.http_status = status_code
        self.retryable = status_code is None or status_code == 429 or status_code >= 500


class FlowdeskHTTPNetworkError(FlowdeskHTTPError):
    """Transport failure that outlived the retry budget."""
