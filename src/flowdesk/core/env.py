from __future__ import annotations

import os
from pathlib import Path


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def is_on(name: str, default: str = "off") -> bool:
    return os.getenv(name, default).strip().casefold() == "on"


def is_test_mode() -> bool:
    return os.getenv("FLOWDESK_TEST_MODE", "").casefold() in {"1", "true", "yes", "on"}


def default_state_dir() -> Path:
    configured = os.getenv("FLOWDESK_STATE_DIR")
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".flowdesk"
