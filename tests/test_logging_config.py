"""Tests for structured logging configuration."""

from __future__ import annotations

import json
import logging

from plan_builder.logging_config import JSONFormatter, log_context, setup_logging


def _record(msg="hello %s", args=("world",), level=logging.INFO, exc_info=None, **extra):
    record = logging.LogRecord(
        name="test", level=level, pathname="test.py",
        lineno=1, msg=msg, args=args, exc_info=exc_info
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_outputs_valid_json():
    parsed = json.loads(JSONFormatter().format(_record()))
    assert parsed["message"] == "hello world"
    assert parsed["level"] == "INFO"
    assert parsed["logger"] == "test"
    assert "timestamp" in parsed
    assert "context" not in parsed


def test_json_formatter_includes_exception():
    try:
        raise ValueError("test error")
    except ValueError:
        import sys
        exc_info = sys.exc_info()
    parsed = json.loads(JSONFormatter().format(_record("fail", (), logging.ERROR, exc_info)))
    assert parsed["exception"]["type"] == "ValueError"
    assert parsed["exception"]["message"] == "test error"


def test_log_context_prefixes_keys():
    assert log_context(plan_id="p1", ops=3) == {"ctx_plan_id": "p1", "ctx_ops": 3}


def test_json_formatter_renders_context():
    record = _record(**log_context(plan_id="p1", weeks=4))
    parsed = json.loads(JSONFormatter().format(record))
    assert parsed["context"] == {"plan_id": "p1", "weeks": 4}


def test_setup_logging_idempotent():
    root = logging.getLogger()
    initial_count = len(root.handlers)
    setup_logging()
    setup_logging()
    # Should not add duplicate handlers
    assert len(root.handlers) <= initial_count + 1
