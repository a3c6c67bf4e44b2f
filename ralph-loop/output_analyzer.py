"""Classify one iteration's agent output into a control-flow outcome."""

from __future__ import annotations

from enum import Enum

# Stuck declarations show up at the start of a transcript; provider errors at the end.
LOOP_CHECK_CHARS = 500
RATE_LIMIT_CHECK_CHARS = 1000

LOOP_PATTERNS = (
    "i cannot proceed",
    "i'm unable to continue",
    "i don't have access to",
    "cannot complete this task",
)

RATE_LIMIT_PATTERNS = (
    "rate limit",
    "too many requests",
)


class IterationOutcome(str, Enum):
    CONTINUE = "continue"
    COMPLETE = "complete"
    RATE_LIMITED = "rate_limited"
    LOOP_DETECTED = "loop_detected"
    FAILED = "failed"


def detect_loop_pattern(output: str) -> bool:
    """True if the agent declares itself stuck within the leading window."""
    head = output[:LOOP_CHECK_CHARS].lower()
    return any(p in head for p in LOOP_PATTERNS)


def detect_rate_limit(output: str) -> bool:
    """True if a rate-limit message appears within the trailing window."""
    tail = output[-RATE_LIMIT_CHECK_CHARS:].lower()
    return any(p in tail for p in RATE_LIMIT_PATTERNS)


def classify(output: str, success: bool, completion_marker: str) -> IterationOutcome:
    """Map agent output and exit status to an IterationOutcome.

    First match wins: rate limit (failed runs only), stuck declaration,
    completion marker, then the exit status. A stuck agent may echo the marker
    while quoting its instructions, so the marker is checked after the stuck
    patterns.
    """
    if not success and detect_rate_limit(output):
        return IterationOutcome.RATE_LIMITED
    if detect_loop_pattern(output):
        return IterationOutcome.LOOP_DETECTED
    if completion_marker in output:
        return IterationOutcome.COMPLETE
    if success:
        return IterationOutcome.CONTINUE
    return IterationOutcome.FAILED
