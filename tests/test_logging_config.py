import io
import json
import logging

import pytest
import structlog

from sessionguard.logging_config import (
    bind_request_context,
    clear_request_context,
    configure_logging,
)


@pytest.fixture
def stream():
    buffer = io.StringIO()
    configure_logging(
        level="DEBUG",
        pretty=False,
        force=True,
        handler=logging.StreamHandler(buffer),
        cache_loggers=False,
    )
    yield buffer
    clear_request_context()
    structlog.reset_defaults()
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    setattr(structlog, "_sessionguard_configured", False)


def lines(buffer):
    return [json.loads(line) for line in buffer.getvalue().splitlines() if line]


def test_structlog_events_render_as_json(stream):
    structlog.get_logger("sessionguard.test").warning("lockout.locked", email="a@b.c", attempts=5)

    [record] = lines(stream)
    assert record["event"] == "lockout.locked"
    assert record["email"] == "a@b.c"
    assert record["attempts"] == 5
    assert record["level"] == "warning"
    assert record["logger"] == "sessionguard.test"
    assert "timestamp" in record


def test_stdlib_loggers_share_the_format(stream):
    logging.getLogger("third.party").info("plain %s", "message")

    [record] = lines(stream)
    assert record["event"] == "plain message"
    assert record["logger"] == "third.party"


def test_request_context_is_merged(stream):
    bind_request_context(request_id="req-1")
    bind_request_context(user_id="user-1", family_id=None)
    structlog.get_logger("sessionguard.test").info("auth.logout")

    [record] = lines(stream)
    assert record["request_id"] == "req-1"
    assert record["user_id"] == "user-1"
    assert "family_id" not in record

    clear_request_context()
    structlog.get_logger("sessionguard.test").info("auth.logout")
    assert "request_id" not in lines(stream)[-1]


def test_level_filter(stream):
    configure_logging(
        level="WARNING",
        force=True,
        handler=logging.StreamHandler(stream),
        cache_loggers=False,
    )
    structlog.get_logger("sessionguard.test").info("too.quiet")
    structlog.get_logger("sessionguard.test").error("loud.enough")

    assert [r["event"] for r in lines(stream)] == ["loud.enough"]


def test_configure_is_idempotent_without_force(stream):
    root = logging.getLogger()
    handlers = list(root.handlers)

    configure_logging()

    assert root.handlers == handlers


def test_get_logger_uses_the_installed_pipeline(stream):
    from sessionguard.logging_config import get_logger

    get_logger("sessionguard.helper").info("helper.ready", ok=True)

    [record] = lines(stream)
    assert record["logger"] == "sessionguard.helper"
    assert record["ok"] is True
