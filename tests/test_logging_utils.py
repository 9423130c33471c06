from __future__ import annotations

import json
import logging
import sys

from otcsync.logging_context import with_iteration_context, with_logging_context
from otcsync.logging_utils import JsonFormatter, setup_logging


def _record(msg: str = "hello", **kwargs) -> logging.LogRecord:
    return logging.LogRecord(
        name="otcsync.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=kwargs.pop("exc_info", None),
    )


def test_json_formatter_includes_exception_details() -> None:
    formatter = JsonFormatter()

    try:
        raise ValueError("boom")
    except ValueError:
        record = _record("crank failed", exc_info=sys.exc_info())
        rendered = formatter.format(record)

    payload = json.loads(rendered)
    assert payload["message"] == "crank failed"
    assert payload["error_type"] == "ValueError"
    assert payload["error_message"] == "boom"
    assert "ValueError: boom" in payload["traceback"]


def test_json_formatter_merges_extra_fields() -> None:
    record = _record("deal created")
    record.extra = {"address": "DEAL1", "slot": 42}

    payload = json.loads(JsonFormatter().format(record))

    assert payload["address"] == "DEAL1"
    assert payload["slot"] == 42
    assert payload["logger"] == "otcsync.test"
    assert payload["level"] == "INFO"


def test_json_formatter_adds_context_fields_when_set() -> None:
    formatter = JsonFormatter()

    with with_iteration_context("run1-3", run_id="run1"), with_logging_context(signature="sig-9"):
        payload = json.loads(formatter.format(_record()))

    assert payload["run_id"] == "run1"
    assert payload["iteration_id"] == "run1-3"
    assert payload["signature"] == "sig-9"
    assert "address" not in payload


def test_context_is_reset_after_scope() -> None:
    with with_logging_context(address="OFFER1"):
        pass

    payload = json.loads(JsonFormatter().format(_record()))

    assert "address" not in payload


def test_json_formatter_redacts_secrets_in_extras() -> None:
    record = _record("rpc configured")
    record.extra = {
        "rpc_url": "https://rpc.example.com/?api-key=abcdef1234567890",
        "private_key": "supersecretvalue",
    }

    payload = json.loads(JsonFormatter().format(record))

    assert "abcdef1234567890" not in payload["rpc_url"]
    assert payload["private_key"] != "supersecretvalue"


def test_setup_logging_uses_log_level_env(monkeypatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")

    setup_logging()

    assert logging.getLogger().level == logging.DEBUG


def test_setup_logging_defaults_third_party_loggers_for_info() -> None:
    setup_logging("INFO")

    assert logging.getLogger("httpx").level == logging.INFO
    assert logging.getLogger("httpcore").level == logging.WARNING
    assert logging.getLogger("websockets").level == logging.WARNING


def test_setup_logging_debug_enables_third_party_debug() -> None:
    setup_logging("DEBUG")

    assert logging.getLogger("httpx").level == logging.DEBUG
    assert logging.getLogger("websockets").level == logging.DEBUG


def test_setup_logging_respects_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("HTTPX_LOG_LEVEL", "ERROR")
    monkeypatch.setenv("WEBSOCKETS_LOG_LEVEL", "CRITICAL")

    setup_logging("INFO")

    assert logging.getLogger("httpx").level == logging.ERROR
    assert logging.getLogger("websockets").level == logging.CRITICAL


def test_setup_logging_falls_back_to_info_for_unknown_level() -> None:
    setup_logging("LOUD")

    assert logging.getLogger().level == logging.INFO
