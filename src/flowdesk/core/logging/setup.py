from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from flowdesk.core.env import env_int, is_on

from .json_formatter import JSONFormatter

_ROOT_LOGGER = "flowdesk"
_OWNED_ATTR = "_flowdesk_handler"


def _owned(logger: logging.Logger, kind: str) -> list[logging.Handler]:
    return [handler for handler in logger.handlers if getattr(handler, _OWNED_ATTR, None) == kind]


def _attach(logger: logging.Logger, handler: logging.Handler, kind: str, formatter: logging.Formatter) -> None:
    handler.setFormatter(formatter)
    setattr(handler, _OWNED_ATTR, kind)
    logger.addHandler(handler)


def configure_logging(state_dir: Path, component: str | None = None) -> logging.Logger:
    """Routes every ``flowdesk.*`` logger to JSON lines on stdout and, unless disabled, a rotating file.

    Safe to call more than once; a second call only refreshes level and formatter.
    """
    logger = logging.getLogger(_ROOT_LOGGER)
    level_name = os.getenv("FLOWDESK_LOG_LEVEL", "INFO").strip().upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    logger.propagate = False
    formatter = JSONFormatter(component=component)

    stdout_handlers = _owned(logger, "stdout")
    if stdout_handlers:
        for handler in stdout_handlers:
            handler.setFormatter(formatter)
    else:
        _attach(logger, logging.StreamHandler(stream=sys.stdout), "stdout", formatter)

    if not is_on("FLOWDESK_LOG_TO_FILE", "on"):
        return logger

    log_dir = Path(os.getenv("FLOWDESK_LOG_DIR") or (Path(state_dir) / "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / (f"flowdesk-{component}.log" if component else "flowdesk.log")
    file_handlers = [handler for handler in _owned(logger, "file") if Path(handler.baseFilename) == log_path]
    if file_handlers:
        for handler in file_handlers:
            handler.setFormatter(formatter)
    else:
        _attach(
            logger,
            RotatingFileHandler(
                filename=log_path,
                maxBytes=env_int("FLOWDESK_LOG_MAX_BYTES", 5_000_000),
                backupCount=env_int("FLOWDESK_LOG_BACKUP_COUNT", 5),
                encoding="utf-8",
            ),
            "file",
            formatter,
        )
    return logger
