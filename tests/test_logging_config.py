"""Tests for logging setup."""

import json
import logging
import sys

import pytest

from kirogate import logging_config
from kirogate.logging_config import JsonFormatter, configure_logging


@pytest.fixture(autouse=True)
def restore_root_logger(monkeypatch):
    for name in ("KIROGATE_LOG_LEVEL", "KIROGATE_LOG_FORMAT", "KIROGATE_LOG_FILE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(logging_config, "_configured", False)
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    for name in ("aiohttp.access", "aiohttp.client"):
        logging.getLogger(name).setLevel(logging.NOTSET)


def _record(msg, *args, **extra):
    record = logging.LogRecord("kirogate.gateway.tracing", logging.INFO, __file__, 1, msg, args, None)
    record.__dict__.update(extra)
    return record


class TestJsonFormatter:
    def test_trace_id_lifted_from_prefix(self):
        line = JsonFormatter().format(_record("[%s] %s model=%s", "00001_143000_1msgs_hi", "/v1/messages", "x"))

        data = json.loads(line)
        assert data["trace_id"] == "00001_143000_1msgs_hi"
        assert data["message"] == "/v1/messages model=x"
        assert data["level"] == "INFO"
        assert data["logger"] == "kirogate.gateway.tracing"

    def test_plain_message(self):
        data = json.loads(JsonFormatter().format(_record("Gateway started")))

        assert "trace_id" not in data
        assert data["message"] == "Gateway started"
        assert "extra" not in data

    def test_extra_fields(self):
        data = json.loads(JsonFormatter().format(_record("done", credential_id="acct-1")))

        assert data["extra"] == {"credential_id": "acct-1"}

    def test_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record("failed")
            record.exc_info = sys.exc_info()

        data = json.loads(JsonFormatter().format(record))

        assert "RuntimeError: boom" in data["exception"]


class TestConfigureLogging:
    def test_json_to_file(self, tmp_path):
        log_file = tmp_path / "gateway.log"

        configure_logging(level="debug", format="json", file_path=str(log_file))
        logging.getLogger("kirogate.test").info("[abc] hello")
        for handler in logging.getLogger().handlers:
            handler.flush()

        data = json.loads(log_file.read_text().splitlines()[-1])
        assert data["trace_id"] == "abc"
        assert data["message"] == "hello"
        assert logging.getLogger().level == logging.DEBUG

    def test_env_fallback(self, monkeypatch):
        monkeypatch.setenv("KIROGATE_LOG_LEVEL", "WARNING")

        configure_logging()

        assert logging.getLogger().level == logging.WARNING
        assert logging.getLogger("aiohttp.access").level == logging.WARNING

    def test_second_call_ignored(self):
        configure_logging(level="ERROR")
        configure_logging(level="DEBUG")

        assert logging.getLogger().level == logging.ERROR

    def test_unknown_level(self):
        with pytest.raises(ValueError, match="Unknown log level: loud"):
            configure_logging(level="loud")

    def test_unknown_format(self, monkeypatch):
        monkeypatch.setenv("KIROGATE_LOG_FORMAT", "xml")

        with pytest.raises(ValueError, match="Unknown log format"):
            configure_logging()
