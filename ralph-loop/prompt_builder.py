"""Prompt assembly: built-in template or a user template with placeholders."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from task_document import TaskDocument

logger = logging.getLogger(__name__)

PLACEHOLDER_PRD_PATH = "{prd_path}"
PLACEHOLDER_PROGRESS_PATH = "{progress_path}"
PLACEHOLDER_VERIFICATION_COMMANDS = "{verification_commands}"
PLACEHOLDER_COMPLETION_MARKER = "{completion_marker}"

PROMPT_TEMPLATE = """You are an autonomous coding agent working through features defined in a PRD.

## Important Paths

- **PRD file**: {prd_path}
- **Progress file**: {progress_path}

## Rules

1. **ONE feature per session** - Focus on a single feature from the PRD
2. **Status-only edits** - You may ONLY change the "status" field in {prd_path}
3. **No test removal** - Never remove or weaken existing tests
4. **Verify before complete** - Run all verification commands before marking complete
5. **Commit per feature** - Commit changes with descriptive messages, include only files relevant to the feature

## Verification Commands

Run these commands to verify your changes:
{verification_commands}

## Workflow

1. Read {prd_path} and {progress_path} for context
2. Find the first feature with status "pending" or "in-progress"
3. If "pending", update status to "in-progress"
4. Implement the feature following the defined steps
5. Run verification commands
6. If verification passes, update feature status to "complete"
7. If blocked (unclear requirements, missing dependencies, repeated failures), update status to "blocked"
8. Commit your changes with a descriptive message (only feature-related files)
9. **ALWAYS** append to {progress_path} at the end of each loop, documenting:
   - Which feature you worked on
   - What you accomplished
   - Any blockers or issues encountered
   - Current status
10. **STOP** - Do not start another feature. The next iteration will handle remaining work.

## Completion

When ALL features have status "complete" and all verifications pass:
1. Append final summary to {progress_path}
2. Make a final commit
3. Output: {completion_marker}
"""


class PromptError(Exception):
    """A prompt template could not be read or written."""


def format_verification_commands(document: TaskDocument) -> str:
    return "\n".join(
        f"- `{cmd.command}` - {cmd.description}"
        for cmd in document.verification.commands
    )


def substitute_placeholders(
    template: str,
    document: TaskDocument,
    prd_path: str | Path,
    progress_path: str | Path,
    completion_marker: Optional[str] = None,
) -> str:
    """Fill the four placeholders. ``completion_marker`` overrides the PRD's."""
    marker = document.completion.marker if completion_marker is None else completion_marker
    return (
        template
        .replace(PLACEHOLDER_PRD_PATH, str(prd_path))
        .replace(PLACEHOLDER_PROGRESS_PATH, str(progress_path))
        .replace(PLACEHOLDER_VERIFICATION_COMMANDS, format_verification_commands(document))
        .replace(PLACEHOLDER_COMPLETION_MARKER, marker)
    )


def load_custom_prompt(path: str | Path) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise PromptError(f"Failed to read custom prompt file {path}: {e}") from e


def build_system_prompt(
    document: TaskDocument,
    prd_path: str | Path,
    progress_path: str | Path,
    completion_marker: Optional[str] = None,
) -> str:
    return substitute_placeholders(
        PROMPT_TEMPLATE, document, prd_path, progress_path, completion_marker
    )


def get_prompt(
    prompt_path: Optional[str | Path],
    document: TaskDocument,
    prd_path: str | Path,
    progress_path: str | Path,
    completion_marker: Optional[str] = None,
) -> str:
    """Render the prompt for one iteration."""
    if prompt_path is None:
        return build_system_prompt(document, prd_path, progress_path, completion_marker)
    template = load_custom_prompt(prompt_path)
    return substitute_placeholders(
        template, document, prd_path, progress_path, completion_marker
    )


def generate_prompt_template(path: str | Path) -> None:
    """Write the built-in template so it can be customised."""
    path = Path(path)
    if path.exists():
        raise PromptError(f"Refusing to overwrite existing prompt file: {path}")
    try:
        path.write_text(PROMPT_TEMPLATE, encoding="utf-8")
    except OSError as e:
        raise PromptError(f"Failed to write prompt template to {path}: {e}") from e
    logger.info("Created prompt template at %s", path)
