"""Tests for structured sync logging."""

import logging

from biolink.sync.logging_config import (
    PerformanceTimer, SyncEventFormatter, get_logger, log_queue_event
)


def test_formatter_appends_structured_fields():
    formatter = SyncEventFormatter(fmt="%(levelname)s %(message)s")
    record = logging.LogRecord("biolink.sync", logging.INFO, __file__, 1, "Synced set", None, None)
    record.key = "profiles:p1"
    record.operation = "set"

    assert formatter.format(record) == "INFO Synced set [key=profiles:p1, operation=set]"


def test_formatter_leaves_plain_records_alone():
    formatter = SyncEventFormatter(fmt="%(message)s")
    record = logging.LogRecord("biolink.sync", logging.INFO, __file__, 1, "hello", None, None)
    assert formatter.format(record) == "hello"


def test_queue_events_log_at_matching_levels(caplog):
    logger = get_logger("biolink.sync.test")
    with caplog.at_level(logging.DEBUG, logger="biolink"):
        log_queue_event(logger, "i1", "set", "dropped", "dropped it", key="profiles:p1")
        log_queue_event(logger, "i2", "set", "requeued", "requeued it")
        log_queue_event(logger, "i3", "set", "enqueued", "queued it")

    levels = {r.getMessage(): r.levelno for r in caplog.records}
    assert levels == {
        "dropped it": logging.ERROR,
        "requeued it": logging.WARNING,
        "queued it": logging.DEBUG,
    }
    assert caplog.records[0].key == "profiles:p1"


def test_performance_timer_records_errors(caplog):
    logger = get_logger("biolink.sync.test")
    with caplog.at_level(logging.DEBUG, logger="biolink"):
        try:
            with PerformanceTimer(logger, "remote.read_one"):
                raise ConnectionError("reset")
        except ConnectionError:
            pass

    record = caplog.records[-1]
    assert "remote.read_one" in record.getMessage()
    assert record.error_type == "ConnectionError"
