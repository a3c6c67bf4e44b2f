"""Configuration validation for the ralph agent loop."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Generic, Literal, Optional, TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CONFIG_RELPATH = Path(".ralph") / "config.json"


@dataclass
class Result(Generic[T]):
    """Type-safe result wrapper for operations that can fail."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, data: T) -> Result[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str = "UNKNOWN") -> Result[T]:
        return cls(success=False, error=error, error_code=code)


class LimitsConfig(BaseModel):
    """Iteration, pacing and timeout limits."""

    max_iterations: int = Field(default=10, ge=0, description="0 = unlimited")
    delay_seconds: float = Field(
        default=2, ge=0,
        description="Pause between iterations",
    )
    timeout_seconds: float = Field(
        default=1800, gt=0,
        description="Per-iteration wall clock limit for the agent process",
    )
    rate_limit_backoff_seconds: float = Field(
        default=60, ge=0,
        description="Pause after a rate-limited iteration",
    )


class AgentConfig(BaseModel):
    """Agent CLI invocation settings."""

    executable: str = Field(default="claude")
    permission_mode: Literal["default", "acceptEdits", "plan", "bypassPermissions"] = Field(
        default="acceptEdits"
    )
    continue_session: bool = Field(
        default=False,
        description="Pass --continue to keep session context instead of --print",
    )
    dangerously_skip_permissions: bool = Field(default=False)


class RetryConfig(BaseModel):
    """Per-feature retry settings."""

    max_item_retries: int = Field(
        default=3, ge=0,
        description="Failures on one in-progress feature before it is auto-blocked (0 disables)",
    )


class NotificationConfig(BaseModel):
    """Outbound webhook settings."""

    webhook_url: Optional[str] = None
    timeout_seconds: float = Field(default=10.0, gt=0)


class SecurityConfig(BaseModel):
    """Redaction settings for console and iteration logs."""

    log_redact_patterns: list[str] = Field(
        default_factory=lambda: [
            r"sk-ant-[\w-]+",
            r"sk-proj-[\w-]+",
            r"ghp_[A-Za-z0-9]{20,}",
        ]
    )


class PathsConfig(BaseModel):
    """Optional prompt template and completion marker overrides."""

    prompt_path: Optional[str] = None
    completion_marker: Optional[str] = Field(
        default=None,
        description="Overrides completion.marker from the PRD",
    )


class LoopConfig(BaseModel):
    """Root configuration model for .ralph/config.json."""

    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)


def load_config(config_path: str | Path) -> Result[LoopConfig]:
    """Load and validate loop config from JSON file."""
    path = Path(config_path)
    if not path.exists():
        logger.debug("Config not found at %s, using defaults", path)
        return Result.ok(LoopConfig())

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        config = LoopConfig.model_validate(raw)
        return Result.ok(config)
    except json.JSONDecodeError as e:
        return Result.fail(f"Invalid JSON in {path}: {e}", "JSON_ERROR")
    except Exception as e:
        return Result.fail(f"Config validation failed: {e}", "VALIDATION_ERROR")
