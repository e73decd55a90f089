from __future__ import annotations

import re
from typing import Any

# Credential names only; idempotency_key and job ids pass through.
_SECRET_KEY_RE = re.compile(r"(API_?KEY|ACCESS_?KEY|PRIVATE_?KEY|TOKEN|SECRET|PASSWORD|PASSWD|AUTHORIZATION)", re.IGNORECASE)
_SECRET_VALUE_RE = re.compile(r"(?i)(api[_-]?key|token|secret|password)(\s*[=:]\s*)([^\s,;&]+)")
_BEARER_RE = re.compile(r"(?i)(bearer\s+)([^\s]+)")
_MASK = "***"


def redact_string(s: str) -> str:
    redacted = _SECRET_VALUE_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}{_MASK}", s)
    return _BEARER_RE.sub(lambda m: f"{m.group(1)}{_MASK}", redacted)


def redact_mapping(value: Any) -> Any:
    """Copies ``value`` with credential-named entries masked at any depth."""
    if isinstance(value, dict):
        return {
            key: _MASK if _SECRET_KEY_RE.search(str(key)) else redact_mapping(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_mapping(item) for item in value]
    if isinstance(value, str):
        return redact_string(value)
    return value
