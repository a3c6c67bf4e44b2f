"""Scrub API keys and tokens from loop logs and iteration log files."""

from __future__ import annotations

import logging
import re
from typing import Sequence

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"


def compile_patterns(patterns: Sequence[str]) -> list[re.Pattern[str]]:
    """Compile redaction regexes, dropping (and reporting) invalid ones."""
    compiled: list[re.Pattern[str]] = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            logger.warning("Ignoring invalid redaction pattern %r: %s", pattern, e)
    return compiled


class Redactor:
    """Applies a fixed set of redaction patterns to text."""

    def __init__(self, patterns: Sequence[str]) -> None:
        self._patterns = compile_patterns(patterns)

    def __bool__(self) -> bool:
        return bool(self._patterns)

    def redact(self, text: str) -> str:
        for pattern in self._patterns:
            text = pattern.sub(REDACTED, text)
        return text


class RedactingFilter(logging.Filter):
    """Logging filter that redacts sensitive patterns from log records."""

    def __init__(self, patterns: Sequence[str], name: str = "") -> None:
        super().__init__(name)
        self._redactor = Redactor(patterns)

    def filter(self, record: logging.LogRecord) -> bool:
        if self._redactor:
            record.msg = self._redactor.redact(str(record.msg))
            if isinstance(record.args, tuple):
                record.args = tuple(
                    self._redactor.redact(a) if isinstance(a, str) else a
                    for a in record.args
                )
        return True
