from .context import current_correlation_id, get_log_context, log_context
from .setup import configure_logging

__all__ = ["configure_logging", "current_correlation_id", "get_log_context", "log_context"]
