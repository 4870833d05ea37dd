"""Tests for structured JSON logging."""

import json
import logging

from debugger_relay.log_config import JsonFormatter, RateLimitedLog, get_logger


class RecordingHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


def capture(logger):
    handler = RecordingHandler()
    logger._logger.addHandler(handler)
    logger._logger.setLevel(logging.DEBUG)
    return handler


class TestStructuredLogger:
    def test_event_and_fields_are_rendered_as_json(self):
        log = get_logger("relay", host="localhost", port=8081)
        handler = capture(log)

        log.info("relay.connect", attempt=2)

        payload = json.loads(JsonFormatter().format(handler.records[-1]))
        assert payload["level"] == "info"
        assert payload["logger"] == "relay"
        assert payload["event"] == "relay.connect"
        assert payload["host"] == "localhost"
        assert payload["port"] == 8081
        assert payload["attempt"] == 2

    def test_exceptions_are_attached(self):
        log = get_logger("worker")
        handler = capture(log)

        log.error("worker.start_failed", exc=ValueError("boom"))

        payload = json.loads(JsonFormatter().format(handler.records[-1]))
        assert payload["error_type"] == "ValueError"
        assert payload["error"] == "boom"

    def test_bind_merges_context(self):
        log = get_logger("worker", session_id="abc").bind(pid=42)
        handler = capture(log)

        log.warn("worker.exit")

        assert handler.records[-1].fields == {"session_id": "abc", "pid": 42}
        assert handler.records[-1].levelno == logging.WARNING


class TestRateLimitedLog:
    def test_allows_once_per_window(self, monkeypatch):
        now = [100.0]
        monkeypatch.setattr("debugger_relay.log_config.time.monotonic", lambda: now[0])
        limiter = RateLimitedLog(window_s=10.0)

        assert limiter.allow("relay.disconnect") is True
        assert limiter.allow("relay.disconnect") is False
        assert limiter.allow("relay.connect") is True

        now[0] += 10.0
        assert limiter.allow("relay.disconnect") is True
