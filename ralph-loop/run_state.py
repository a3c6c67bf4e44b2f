"""Persistent record of a loop run in .ralph/state.json."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from config import Result

logger = logging.getLogger(__name__)

CURRENT_STATE_VERSION = 1


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    INTERRUPTED = "interrupted"
    MAX_ITERATIONS = "max_iterations"


class IterationRecord(BaseModel):
    """Outcome of a single loop iteration."""

    iteration: int
    outcome: str
    item_id: Optional[str] = None
    duration_ms: int = 0
    agent_success: Optional[bool] = None
    error_message: Optional[str] = None
    completed_at: Optional[str] = None


class RunState(BaseModel):
    """Root state model persisted to .ralph/state.json."""

    version: int = Field(default=CURRENT_STATE_VERSION)
    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    status: RunStatus = RunStatus.RUNNING
    prd_path: Optional[str] = None
    iterations: list[IterationRecord] = Field(default_factory=list)
    blocked_items: list[str] = Field(default_factory=list)
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    end_reason: Optional[str] = None


class RunStateTracker:
    """Records iterations of the current run and writes them to disk."""

    def __init__(self, state_dir: str | Path, prd_path: str | Path | None = None) -> None:
        self.state_path = Path(state_dir) / "state.json"
        self.state = RunState(prd_path=str(prd_path) if prd_path else None)

    def start(self) -> None:
        self.state.status = RunStatus.RUNNING
        self.state.start_time = datetime.now(timezone.utc).isoformat()

    def record_iteration(
        self,
        iteration: int,
        outcome: str,
        item_id: Optional[str] = None,
        duration_ms: int = 0,
        agent_success: Optional[bool] = None,
        error_message: Optional[str] = None,
    ) -> IterationRecord:
        record = IterationRecord(
            iteration=iteration,
            outcome=outcome,
            item_id=item_id,
            duration_ms=duration_ms,
            agent_success=agent_success,
            error_message=error_message,
            completed_at=datetime.now(timezone.utc).isoformat(),
        )
        self.state.iterations.append(record)
        return record

    def record_blocked(self, item_id: str) -> None:
        if item_id not in self.state.blocked_items:
            self.state.blocked_items.append(item_id)

    def finish(self, status: RunStatus, reason: Optional[str] = None) -> None:
        self.state.status = status
        self.state.end_reason = reason
        self.state.end_time = datetime.now(timezone.utc).isoformat()
        if status is RunStatus.ABORTED:
            logger.error("Run aborted: %s", reason)

    def outcome_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for record in self.state.iterations:
            counts[record.outcome] = counts.get(record.outcome, 0) + 1
        return counts

    def save(self) -> Result[None]:
        """Persist current state to disk."""
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self.state_path.write_text(
                self.state.model_dump_json(indent=2), encoding="utf-8"
            )
            return Result.ok(None)
        except Exception as e:
            return Result.fail(f"State save failed: {e}", "SAVE_ERROR")
