"""Tests for slotkeeper.core.logging."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from slotkeeper.core.logging import (
    _NOISE_LOGGERS,
    _account_context,
    account_context,
    add_account_context,
    add_otel_context,
    configure_logging,
    get_account_context,
    redact_secret_fields,
    set_account_context,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset logging and account context between tests."""
    token = _account_context.set(None)
    yield
    _account_context.reset(token)
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    for name in _NOISE_LOGGERS:
        noise = logging.getLogger(name)
        for handler in noise.handlers:
            handler.close()
        noise.handlers.clear()


class TestAccountContext:
    def test_set_and_get(self):
        set_account_context("acct-1")
        assert get_account_context() == "acct-1"

    def test_default_is_none(self):
        assert get_account_context() is None

    def test_context_manager_restores_previous(self):
        set_account_context("outer")
        with account_context("inner"):
            assert get_account_context() == "inner"
        assert get_account_context() == "outer"

    def test_processor_injects_account(self):
        with account_context("acct-9"):
            result = add_account_context(None, "info", {"event": "test"})
        assert result["account"] == "acct-9"


class TestOtelContext:
    def test_zero_ids_without_active_span(self):
        result = add_otel_context(None, "info", {"event": "test"})
        assert result["trace_id"] == "0" * 32
        assert result["span_id"] == "0" * 16


class TestRedaction:
    def test_secret_named_fields_are_masked(self):
        result = redact_secret_fields(
            None,
            "info",
            {"event": "refreshed", "access_token": "ya29.abc", "Refresh_Token": "1//xyz"},
        )
        assert result["access_token"] == "[REDACTED]"
        assert result["Refresh_Token"] == "[REDACTED]"
        assert result["event"] == "refreshed"

    def test_token_values_inside_messages_are_masked(self):
        result = redact_secret_fields(
            None, "info", {"event": "call failed: Authorization: Bearer ya29.secret"}
        )
        assert "ya29.secret" not in result["event"]

    def test_non_string_values_untouched(self):
        result = redact_secret_fields(None, "info", {"event": "x", "attempts": 3})
        assert result["attempts"] == 3


class TestConfigureLogging:
    def test_sets_root_level_and_quiets_noise(self):
        configure_logging(level="DEBUG", fmt="text")
        assert logging.getLogger().level == logging.DEBUG
        assert len(logging.getLogger().handlers) == 1
        for name in _NOISE_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING

    def test_reconfiguring_does_not_duplicate_handlers(self):
        configure_logging(fmt="json")
        configure_logging(fmt="json")
        assert len(logging.getLogger().handlers) == 1

    def test_log_root_writes_redacted_json(self, tmp_path: Path):
        configure_logging(level="INFO", fmt="json", log_root=tmp_path)

        with account_context("acct-1"):
            logging.getLogger("slotkeeper.test").info(
                "refresh failed refresh_token=1//secret-value"
            )
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = (tmp_path / "slotkeeper.log").read_text().strip().splitlines()
        record = json.loads(lines[-1])
        assert record["account"] == "acct-1"
        assert record["level"] == "info"
        assert "secret-value" not in record["event"]
        assert (tmp_path / "uvicorn.log").exists()
