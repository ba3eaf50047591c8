"""
Tests for logging configuration.
"""
import json
import logging
from datetime import datetime, timedelta

import pytest

from ci_provisioner.logging_config import JsonFormatter, setup_logging


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord(
        name="ci_provisioner.jobs.registry",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Job %s -> %s",
        args=("abc", "RUNNING"),
        exc_info=None,
    )
    record.job_id = "abc"
    record.event_type = "job_transition"

    entry = json.loads(JsonFormatter().format(record))

    assert entry["message"] == "Job abc -> RUNNING"
    assert entry["level"] == "INFO"
    assert entry["logger"] == "ci_provisioner.jobs.registry"
    assert entry["job_id"] == "abc"
    assert entry["event_type"] == "job_transition"
    assert "lineno" not in entry


def test_setup_logging_sets_root_level():
    root = logging.getLogger()
    saved_level, saved_handlers = root.level, list(root.handlers)
    try:
        config = setup_logging("debug", "json")
        assert root.level == logging.DEBUG
        assert config["handlers"]["console"]["formatter"] == "json"
    finally:
        root.handlers = saved_handlers
        root.setLevel(saved_level)


def test_setup_logging_rejects_unknown_format():
    with pytest.raises(ValueError):
        setup_logging("INFO", "xml")


def test_json_timestamp_is_timezone_aware():
    record = logging.LogRecord("ci_provisioner", logging.INFO, __file__, 1, "hello", None, None)

    entry = json.loads(JsonFormatter().format(record))

    assert datetime.fromisoformat(entry["timestamp"]).utcoffset() == timedelta(0)
