"""Restrict agent edits to the PRD to status-only changes.

This is a syntactic check over ``git diff`` output, not a structural diff of
the document. A changed line is accepted when it is blank or contains the
``"status":`` field key. A non-status line that happens to carry ``"status":``
inside a string value is therefore accepted too; that is a known limitation.
"""

from __future__ import annotations

import logging
from pathlib import Path

from config import Result
from git_ops import GitError, diff_from_head, has_commits

logger = logging.getLogger(__name__)

STATUS_FIELD_MARKER = '"status":'


def is_diff_content_line(line: str) -> bool:
    """Added/removed lines, excluding the ``+++``/``---`` file headers."""
    return (
        line.startswith(("+", "-"))
        and not line.startswith("+++")
        and not line.startswith("---")
    )


def validate_diff_content(diff: str) -> Result[None]:
    for line in diff.splitlines():
        if not is_diff_content_line(line):
            continue
        trimmed = line[1:].strip()
        if not trimmed or STATUS_FIELD_MARKER in trimmed:
            continue
        return Result.fail(
            "Invalid PRD modification detected.\n"
            "Only 'status' field changes are allowed.\n"
            f"Offending line: {line}\n"
            "Please revert non-status changes to the PRD.",
            "INVALID_PRD_CHANGE",
        )
    return Result.ok(None)


def validate_document_changes(document_path: str | Path) -> Result[None]:
    """Check the PRD's working-tree diff against HEAD.

    A repository with no commits has no baseline, so there is nothing to check.
    """
    path = Path(document_path)
    try:
        if not has_commits(path.parent):
            logger.warning("No commits yet - skipping PRD validation")
            return Result.ok(None)
        diff = diff_from_head(path)
    except GitError as e:
        return Result.fail(f"Could not diff PRD against HEAD: {e}", "GIT_ERROR")

    if not diff:
        return Result.ok(None)

    result = validate_diff_content(diff)
    if not result.success:
        logger.debug("Rejected PRD diff:\n%s", diff)
    return result
