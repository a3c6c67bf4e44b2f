"""Tests for config module."""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from config import LoopConfig, Result, load_config


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    return tmp_path


class TestLoopConfig:
    def test_defaults(self) -> None:
        config = LoopConfig()
        assert config.limits.max_iterations == 10
        assert config.limits.delay_seconds == 2
        assert config.limits.timeout_seconds == 1800
        assert config.limits.rate_limit_backoff_seconds == 60
        assert config.agent.executable == "claude"
        assert config.agent.permission_mode == "acceptEdits"
        assert config.agent.continue_session is False
        assert config.agent.dangerously_skip_permissions is False
        assert config.retry.max_item_retries == 3
        assert config.notifications.webhook_url is None
        assert config.paths.completion_marker is None
        assert any("sk-ant" in p for p in config.security.log_redact_patterns)

    def test_custom_values(self) -> None:
        config = LoopConfig(
            limits={"max_iterations": 0, "timeout_seconds": 60},
            agent={"permission_mode": "bypassPermissions", "continue_session": True},
        )
        assert config.limits.max_iterations == 0
        assert config.limits.timeout_seconds == 60
        assert config.agent.permission_mode == "bypassPermissions"
        assert config.agent.continue_session is True

    def test_validation_rejects_bad_values(self) -> None:
        with pytest.raises(ValidationError):
            LoopConfig(limits={"max_iterations": -1})

        with pytest.raises(ValidationError):
            LoopConfig(limits={"timeout_seconds": 0})

        with pytest.raises(ValidationError):
            LoopConfig(agent={"permission_mode": "yolo"})

        with pytest.raises(ValidationError):
            LoopConfig(retry={"max_item_retries": -2})


class TestLoadConfig:
    def test_load_valid_config(self, config_dir: Path) -> None:
        config_file = config_dir / "config.json"
        config_file.write_text(
            json.dumps({
                "limits": {"max_iterations": 25},
                "notifications": {"webhook_url": "https://example.com/hook"},
            }),
            encoding="utf-8",
        )

        result = load_config(config_file)
        assert result.success
        assert result.data is not None
        assert result.data.limits.max_iterations == 25
        assert result.data.notifications.webhook_url == "https://example.com/hook"

    def test_load_missing_file_returns_defaults(self, config_dir: Path) -> None:
        result = load_config(config_dir / "nonexistent.json")
        assert result.success
        assert result.data is not None
        assert result.data.limits.max_iterations == 10

    def test_load_invalid_json(self, config_dir: Path) -> None:
        config_file = config_dir / "config.json"
        config_file.write_text("not json {{{", encoding="utf-8")

        result = load_config(config_file)
        assert not result.success
        assert result.error_code == "JSON_ERROR"

    def test_load_invalid_values(self, config_dir: Path) -> None:
        config_file = config_dir / "config.json"
        config_file.write_text(
            json.dumps({"limits": {"max_iterations": -5}}),
            encoding="utf-8",
        )

        result = load_config(config_file)
        assert not result.success
        assert result.error_code == "VALIDATION_ERROR"


class TestResult:
    def test_ok(self) -> None:
        result = Result.ok(42)
        assert result.success
        assert result.data == 42
        assert result.error is None

    def test_fail_carries_code(self) -> None:
        result = Result.fail("nope", "SOME_CODE")
        assert not result.success
        assert result.data is None
        assert result.error == "nope"
        assert result.error_code == "SOME_CODE"

    def test_fail_default_code(self) -> None:
        assert Result.fail("nope").error_code == "UNKNOWN"
