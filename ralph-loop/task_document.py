"""PRD (task document) model and loader.

The PRD is a JSON-with-comments file listing verification commands and the
features the agent works through. It is re-read from disk at the start of every
iteration because the agent edits feature statuses in place.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

import json5
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)


class DocumentError(Exception):
    """PRD file could not be read, parsed or rewritten."""


class ItemStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETE = "complete"
    BLOCKED = "blocked"


class ProjectInfo(BaseModel):
    name: str
    description: str
    repository: Optional[str] = None


class VerifyCommand(BaseModel):
    name: str
    command: str
    description: str


class Verification(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    commands: list[VerifyCommand] = Field(default_factory=list)
    run_after_each_feature: bool = Field(alias="runAfterEachFeature")


class TaskItem(BaseModel):
    """A single feature entry. Only ``status`` may change during a run."""

    id: str
    category: str
    description: str
    steps: list[str] = Field(default_factory=list)
    status: ItemStatus
    notes: Optional[str] = None


class CompletionPolicy(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    all_features_complete: bool = Field(alias="allFeaturesComplete")
    all_verifications_passing: bool = Field(alias="allVerificationsPassing")
    marker: str


@dataclass
class StatusCounts:
    pending: int = 0
    in_progress: int = 0
    complete: int = 0
    blocked: int = 0


class TaskDocument(BaseModel):
    """Root PRD model."""

    project: ProjectInfo
    verification: Verification
    features: list[TaskItem]
    completion: CompletionPolicy

    @model_validator(mode="after")
    def _unique_ids(self) -> TaskDocument:
        dupes = [fid for fid, n in Counter(f.id for f in self.features).items() if n > 1]
        if dupes:
            raise ValueError(f"duplicate feature ids: {', '.join(sorted(dupes))}")
        return self

    def status_counts(self) -> StatusCounts:
        counts = StatusCounts()
        for feature in self.features:
            if feature.status is ItemStatus.PENDING:
                counts.pending += 1
            elif feature.status is ItemStatus.IN_PROGRESS:
                counts.in_progress += 1
            elif feature.status is ItemStatus.COMPLETE:
                counts.complete += 1
            else:
                counts.blocked += 1
        return counts

    def current_item_id(self) -> Optional[str]:
        """Id of the first feature marked in-progress, if any."""
        for feature in self.features:
            if feature.status is ItemStatus.IN_PROGRESS:
                return feature.id
        return None


def parse_document(text: str, source: str = "<string>") -> TaskDocument:
    """Parse PRD text (JSONC/JSON5) into a validated TaskDocument."""
    try:
        raw = json5.loads(text)
    except ValueError as e:
        raise DocumentError(f"Failed to parse PRD file {source}: {e}") from e
    try:
        return TaskDocument.model_validate(raw)
    except ValidationError as e:
        raise DocumentError(f"Invalid PRD file {source}: {e}") from e


def load_document(path: str | Path) -> TaskDocument:
    """Read and parse the PRD from disk."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise DocumentError(f"Failed to read PRD file {path}: {e}") from e
    return parse_document(text, str(path))


def generate_template(path: str | Path) -> None:
    """Write a starter PRD. Refuses to overwrite an existing file."""
    path = Path(path)
    if path.exists():
        raise DocumentError(f"Refusing to overwrite existing PRD: {path}")
    try:
        path.write_text(DEFAULT_TEMPLATE, encoding="utf-8")
    except OSError as e:
        raise DocumentError(f"Failed to write PRD template to {path}: {e}") from e
    logger.info("Created template PRD at %s", path)


DEFAULT_TEMPLATE = """{
  // PRD (Product Requirements Document) for the ralph agent loop.
  // Edit this file to define your features and verification commands.
  //
  // RULES FOR THE AGENT:
  // 1. Work on ONE feature per session
  // 2. You may ONLY update the "status" field of features
  // 3. Run verification commands before marking any feature complete
  // 4. Commit changes with descriptive messages

  "project": {
    "name": "my-project",
    "description": "Description of your project"
  },

  "verification": {
    "commands": [
      {
        "name": "check",
        "command": "echo 'Add your check command here'",
        "description": "Type checking / compilation"
      },
      {
        "name": "lint",
        "command": "echo 'Add your lint command here'",
        "description": "Linting and formatting"
      },
      {
        "name": "test",
        "command": "echo 'Add your test command here'",
        "description": "Run test suite"
      }
    ],
    "runAfterEachFeature": true
  },

  "features": [
    {
      "id": "example-feature",
      "category": "functional",
      "description": "Brief description of what needs to be done",
      "steps": [
        "Step 1: First action",
        "Step 2: Second action",
        "Step 3: Run verification"
      ],
      "status": "pending",
      "notes": "Optional notes or context"
    }
  ],

  "completion": {
    "allFeaturesComplete": true,
    "allVerificationsPassing": true,
    "marker": "<promise>COMPLETE</promise>"
  }
}
"""
