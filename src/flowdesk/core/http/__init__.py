from .client import close_http_client, get_http_client, request_with_retry
from .errors import FlowdeskHTTPError, FlowdeskHTTPNetworkError, FlowdeskHTTPStatusError

__all__ = [
    "close_http_client",
    "get_http_client",
    "request_with_retry",
    "FlowdeskHTTPError",
    "FlowdeskHTTPNetworkError",
    "FlowdeskHTTPStatusError",
]
