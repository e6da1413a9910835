"""Unit tests for JSON logging."""

from __future__ import annotations

import io
import json
import logging
import sys
from collections.abc import Iterator
from datetime import UTC, datetime

import pytest

from approval_workflow.engine.logging import JsonFormatter, configure_logging


@pytest.fixture
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def _record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        "approval_workflow.test", logging.INFO, __file__, 1, "Task %s", ("done",), None
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_emits_single_line_json_with_extra() -> None:
    at = datetime(2024, 5, 1, tzinfo=UTC)
    line = JsonFormatter().format(_record(instance_id="i-1", assignees={"bob"}, at=at))

    payload = json.loads(line)
    assert "\n" not in line
    assert payload["level"] == "INFO"
    assert payload["logger"] == "approval_workflow.test"
    assert payload["message"] == "Task done"
    assert payload["extra"] == {"instance_id": "i-1", "assignees": ["bob"], "at": at.isoformat()}


def test_formatter_omits_extra_when_there_is_none() -> None:
    payload = json.loads(JsonFormatter().format(_record()))

    assert "extra" not in payload


def test_formatter_includes_exception() -> None:
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.LogRecord(
            "x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info()
        )

    payload = json.loads(JsonFormatter().format(record))
    assert "RuntimeError: boom" in payload["exception"]


def test_configure_logging_replaces_handlers(restore_root_logger: None) -> None:
    stream = io.StringIO()

    configure_logging("debug", stream=stream)
    configure_logging("debug", stream=stream)
    logging.getLogger("approval_workflow.test").debug("hello", extra={"node_id": "a"})

    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert root.level == logging.DEBUG
    lines = stream.getvalue().strip().splitlines()
    assert len(lines) == 1
    assert json.loads(lines[0])["extra"] == {"node_id": "a"}
