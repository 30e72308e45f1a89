"""Tests for hooklearn.core.logging."""

import json
from pathlib import Path

from hooklearn.core.logging import (
    LearningContext,
    _add_context,
    _sanitize_event_dict,
    configure_logging,
    get_current_context,
    get_logger,
    with_context,
)


class TestLearningContext:
    """Tests for the execution context variable."""

    def test_execution_ids_are_unique(self) -> None:
        assert LearningContext("a").execution_id != LearningContext("a").execution_id

    def test_with_decision_keeps_execution_id(self) -> None:
        ctx = LearningContext("no-secrets")
        derived = ctx.with_decision("d-1")
        assert derived.execution_id == ctx.execution_id
        assert derived.decision_id == "d-1"

    def test_context_is_scoped_to_block(self) -> None:
        ctx = LearningContext("no-secrets")
        assert get_current_context() is None
        with with_context(ctx):
            assert get_current_context() is ctx
        assert get_current_context() is None

    def test_context_processor_does_not_override_bound_fields(self) -> None:
        with with_context(LearningContext("from-context")):
            event = _add_context(None, "info", {"event": "x", "rule_name": "explicit"})
        assert event["rule_name"] == "explicit"
        assert "execution_id" in event


class TestRedaction:
    """Sensitive fields never reach the output."""

    def test_sensitive_keys_redacted(self) -> None:
        event = _sanitize_event_dict(
            None,
            "info",
            {"event": "x", "api_key": "k", "file_content": "print(1)", "rule_name": "r"},
        )
        assert event["api_key"] == "[REDACTED]"
        assert event["file_content"] == "[REDACTED]"
        assert event["rule_name"] == "r"

    def test_nested_dicts_redacted_one_level(self) -> None:
        event = _sanitize_event_dict(None, "info", {"payload": {"token": "t", "size": 3}})
        assert event["payload"] == {"token": "[REDACTED]", "size": 3}


class TestConfigureLogging:
    """Tests for configure_logging output."""

    def test_json_file_output(self, tmp_path: Path) -> None:
        log_file = tmp_path / "logs" / "learning.log"
        configure_logging(level="INFO", format="json", file_path=log_file)

        logger = get_logger("learning.test")
        with with_context(LearningContext("no-secrets")):
            logger.info("execution_recorded", duration_ms=12.5, secret="hidden")
        logger.debug("not_written")

        lines = [json.loads(line) for line in log_file.read_text().splitlines()]
        assert len(lines) == 1
        entry = lines[0]
        assert entry["event"] == "execution_recorded"
        assert entry["component"] == "learning.test"
        assert entry["rule_name"] == "no-secrets"
        assert entry["duration_ms"] == 12.5
        assert entry["secret"] == "[REDACTED]"
        assert entry["level"] == "info"
        assert "timestamp" in entry

    def test_bound_logger_carries_context(self, tmp_path: Path) -> None:
        log_file = tmp_path / "learning.log"
        configure_logging(level="WARNING", format="json", file_path=log_file)

        get_logger("learning.test").bind(rule_name="bound").warning("cooldown_active")

        entry = json.loads(log_file.read_text().splitlines()[0])
        assert entry["rule_name"] == "bound"
        assert entry["event"] == "cooldown_active"
