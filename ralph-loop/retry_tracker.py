"""Failure counters for the loop and per-feature auto-blocking."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from task_document import DocumentError

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_FAILURES = 3

_BLOCKED_STATUS = '"status": "blocked"'
_BLOCKABLE_STATUS_RE = re.compile(r'"status": ?"(?:in-progress|pending)"')


class ConsecutiveFailureCounter:
    """Run-wide circuit breaker over non-productive iterations."""

    def __init__(self, threshold: int = MAX_CONSECUTIVE_FAILURES) -> None:
        self.threshold = threshold
        self.count = 0

    def record_failure(self) -> int:
        self.count += 1
        return self.count

    def record_success(self) -> None:
        self.count = 0

    def should_abort(self) -> bool:
        return self.count >= self.threshold


class ItemRetryTracker:
    """Counts failures per feature id; a threshold of 0 disables blocking."""

    def __init__(self, max_retries: int) -> None:
        self.max_retries = max_retries
        self._counts: dict[str, int] = {}

    def record_failure(self, item_id: str) -> int:
        self._counts[item_id] = self._counts.get(item_id, 0) + 1
        return self._counts[item_id]

    def reset(self, item_id: str) -> None:
        self._counts.pop(item_id, None)

    def get_count(self, item_id: str) -> int:
        return self._counts.get(item_id, 0)

    def should_block(self, item_id: str) -> bool:
        if self.max_retries == 0:
            return False
        return self.get_count(item_id) >= self.max_retries

    def is_enabled(self) -> bool:
        return self.max_retries > 0


def _id_marker(item_id: str) -> str:
    return f'"id": "{item_id}"'


def update_status_in_content(content: str, item_id: str) -> str:
    """Rewrite the first status line at or after ``item_id`` to blocked.

    Line-oriented: every other byte of the document is kept as-is, comments
    and line endings included. Status fields split across lines or written
    with single quotes are not recognised.
    """
    id_marker = _id_marker(item_id)
    lines = content.splitlines(keepends=True)
    in_target = False
    for i, line in enumerate(lines):
        if id_marker in line:
            in_target = True
        if in_target and '"status":' in line:
            lines[i] = _BLOCKABLE_STATUS_RE.sub(_BLOCKED_STATUS, line)
            break
    return "".join(lines)


def block_item(document_path: str | Path, item_id: str) -> None:
    """Mark ``item_id`` as blocked in the PRD file on disk."""
    path = Path(document_path)
    try:
        content = path.read_bytes().decode("utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise DocumentError(f"Failed to read PRD file {path}: {e}") from e

    if _id_marker(item_id) not in content:
        raise DocumentError(f"Feature {item_id} not found in PRD")

    updated = update_status_in_content(content, item_id)
    try:
        path.write_bytes(updated.encode("utf-8"))
    except OSError as e:
        raise DocumentError(f"Failed to write PRD file {path}: {e}") from e

    logger.warning("Feature '%s' auto-blocked after max retries", item_id)
