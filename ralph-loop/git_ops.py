"""Thin wrappers around the git CLI used by the loop."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 30


class GitError(Exception):
    """A git command could not be run or exited non-zero."""


@dataclass
class GitStatus:
    branch: str
    uncommitted_changes: int


def _git(args: list[str], cwd: str | Path) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            capture_output=True, text=True,
            encoding="utf-8", errors="replace",
            timeout=GIT_TIMEOUT_SECONDS,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
        raise GitError(f"git {' '.join(args)} failed: {e}") from e


def is_git_repo(cwd: str | Path = ".") -> bool:
    try:
        return _git(["rev-parse", "--git-dir"], cwd).returncode == 0
    except GitError:
        return False


def has_commits(cwd: str | Path = ".") -> bool:
    """False in a repository whose HEAD is unborn (no commits yet)."""
    return _git(["rev-parse", "--verify", "--quiet", "HEAD"], cwd).returncode == 0


def parse_porcelain_status(output: str) -> int:
    return sum(1 for line in output.splitlines() if line)


def current_branch(cwd: str | Path = ".") -> str:
    return _git(["branch", "--show-current"], cwd).stdout.strip()


def uncommitted_changes_count(cwd: str | Path = ".") -> int:
    return parse_porcelain_status(_git(["status", "--porcelain"], cwd).stdout)


def recent_commits(count: int, cwd: str | Path = ".") -> list[str]:
    result = _git(["log", "--oneline", f"-{count}"], cwd)
    if result.returncode != 0:
        return []
    return result.stdout.splitlines()


def get_git_status(cwd: str | Path = ".") -> Optional[GitStatus]:
    """Branch and dirty-file count, or None outside a repository."""
    if not is_git_repo(cwd):
        return None
    try:
        branch = current_branch(cwd) or "unknown"
    except GitError:
        branch = "unknown"
    try:
        changes = uncommitted_changes_count(cwd)
    except GitError:
        changes = 0
    return GitStatus(branch=branch, uncommitted_changes=changes)


def diff_from_head(path: str | Path) -> str:
    """Unified diff of ``path`` in the working tree against HEAD."""
    path = Path(path)
    result = _git(["diff", "HEAD", "--", path.name], path.parent)
    if result.returncode != 0:
        raise GitError(
            f"git diff HEAD -- {path.name} exited {result.returncode}: "
            f"{result.stderr.strip()[:200]}"
        )
    return result.stdout
