from __future__ import annotations

import json
import logging
import traceback
from datetime import datetime, timezone

from .context import get_log_context
from .redact import redact_mapping, redact_string

_BASE_KEYS = frozenset({"ts_iso_utc", "level", "logger", "msg", "component", "exc_type", "exc_msg", "stack"})


class JSONFormatter(logging.Formatter):
    """One JSON object per line: base keys, then log context, then redacted ``extra_fields``."""

    def __init__(self, component: str | None = None) -> None:
        super().__init__()
        self.component = component

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "ts_iso_utc": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_string(record.getMessage()),
        }
        if self.component:
            payload["component"] = self.component
        payload.update(get_log_context())

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            for key, value in redact_mapping(extra_fields).items():
                if key not in _BASE_KEYS:
                    payload[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            payload["exc_type"] = exc_type.__name__
            payload["exc_msg"] = redact_string(str(exc_value)) if exc_value else ""
            payload["stack"] = redact_string("".join(traceback.format_exception(exc_type, exc_value, exc_tb)))

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)
