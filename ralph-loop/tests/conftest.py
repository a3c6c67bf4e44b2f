"""Shared pytest fixtures for the ralph loop test suite.

Non-fixture helpers (PRD builders, fake runner/notifier, Popen mock) are in helpers.py.
"""

import sys
from pathlib import Path

import pytest

# Add the tests directory to sys.path so test files can import helpers.py
sys.path.insert(0, str(Path(__file__).parent))

from helpers import build_prd_text  # noqa: E402

from config import LoopConfig  # noqa: E402


@pytest.fixture
def prd_path(tmp_path: Path) -> Path:
    """A project directory holding a PRD with one in-progress feature."""
    path = tmp_path / "prd.jsonc"
    path.write_text(
        build_prd_text([
            ("feat-1", "in-progress"),
            ("feat-2", "pending"),
        ]),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def config() -> LoopConfig:
    return LoopConfig(
        limits={
            "max_iterations": 10,
            "delay_seconds": 0,
            "rate_limit_backoff_seconds": 0,
            "timeout_seconds": 30,
        },
    )
