from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler

import pytest

from flowdesk.core.logging.setup import configure_logging


def _owned(logger: logging.Logger) -> list[logging.Handler]:
    return [handler for handler in logger.handlers if getattr(handler, "_flowdesk_handler", None)]


@pytest.fixture
def flowdesk_logger(restore_flowdesk_logger):
    logger = restore_flowdesk_logger
    logger.handlers = [handler for handler in logger.handlers if handler not in _owned(logger)]
    return logger


def test_configure_logging_is_idempotent(tmp_path, monkeypatch, flowdesk_logger) -> None:
    monkeypatch.setenv("FLOWDESK_LOG_TO_FILE", "off")

    configure_logging(tmp_path)
    first_count = len(_owned(flowdesk_logger))

    configure_logging(tmp_path)
    assert len(_owned(flowdesk_logger)) == first_count == 1
    assert flowdesk_logger.propagate is False


def test_file_handler_writes_json_lines(tmp_path, monkeypatch, flowdesk_logger) -> None:
    monkeypatch.setenv("FLOWDESK_LOG_TO_FILE", "on")
    monkeypatch.setenv("FLOWDESK_LOG_DIR", str(tmp_path / "custom-logs"))
    monkeypatch.setenv("FLOWDESK_LOG_LEVEL", "debug")

    configure_logging(tmp_path / "state")
    configure_logging(tmp_path / "state")

    file_handlers = [h for h in _owned(flowdesk_logger) if isinstance(h, RotatingFileHandler)]
    assert len(file_handlers) == 1
    assert flowdesk_logger.level == logging.DEBUG

    logging.getLogger("flowdesk.queue").info("job_enqueued", extra={"extra_fields": {"queue": "reports"}})
    file_handlers[0].flush()

    lines = (tmp_path / "custom-logs" / "flowdesk.log").read_text(encoding="utf-8").strip().splitlines()
    record = json.loads(lines[-1])
    assert record["msg"] == "job_enqueued"
    assert record["logger"] == "flowdesk.queue"
    assert record["queue"] == "reports"


def test_log_dir_defaults_under_state_dir(tmp_path, monkeypatch, flowdesk_logger) -> None:
    monkeypatch.setenv("FLOWDESK_LOG_TO_FILE", "on")
    monkeypatch.delenv("FLOWDESK_LOG_DIR", raising=False)

    state_dir = tmp_path / "missing-state"
    configure_logging(state_dir)

    assert (state_dir / "logs").exists()
