from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def derive_idempotency_key(
    operation_type: str,
    model: str | None,
    params: Any,
    organization_id: str | None = None,
) -> str:
    payload = canonical_json(
        {
            "operation": operation_type,
            "model": model,
            "params": params,
            "organization_id": organization_id,
        }
    )
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]
    return f"{operation_type}-{model or 'none'}-{digest}"
