"""Shared test helpers for the ralph loop test suite.

Fixtures are in conftest.py. This module contains non-fixture helpers
(PRD builders, scripted runner and notifier fakes, a Popen mock).
"""

import io
import threading
from typing import Callable, Optional, Sequence, Union

from agent_runner import AgentResult

DEFAULT_MARKER = "<promise>DONE</promise>"


# --- PRD builders ---

def build_prd_text(
    features: Sequence[tuple[str, str]],
    marker: str = DEFAULT_MARKER,
    commands: Sequence[tuple[str, str]] = (("test", "true"),),
) -> str:
    """Build a JSONC PRD with one feature object per (id, status) pair."""
    feature_blocks = []
    for feature_id, status in features:
        feature_blocks.append(
            "    {\n"
            f'      "id": "{feature_id}",\n'
            '      "category": "functional",\n'
            f'      "description": "Implement {feature_id}",\n'
            '      "steps": ["write code", "run tests"],\n'
            f'      "status": "{status}"\n'
            "    }"
        )
    command_blocks = [
        f'      {{ "name": "{name}", "command": "{command}", "description": "Run {name}" }}'
        for name, command in commands
    ]
    return (
        "{\n"
        "  // Test PRD\n"
        '  "project": { "name": "demo", "description": "Demo project" },\n'
        '  "verification": {\n'
        '    "commands": [\n' + ",\n".join(command_blocks) + "\n    ],\n"
        '    "runAfterEachFeature": true\n'
        "  },\n"
        '  "features": [\n' + ",\n".join(feature_blocks) + "\n  ],\n"
        '  "completion": {\n'
        '    "allFeaturesComplete": true,\n'
        '    "allVerificationsPassing": true,\n'
        f'    "marker": "{marker}"\n'
        "  }\n"
        "}\n"
    )


# --- Agent results ---

def ok(output: str = "Working on it") -> AgentResult:
    return AgentResult(output=output, success=True, returncode=0)


def failed(output: str = "Error: build broke") -> AgentResult:
    return AgentResult(output=output, success=False, returncode=1)


Step = Union[AgentResult, Exception, Callable[[Optional[threading.Event]], AgentResult]]


class FakeRunner:
    """Stands in for AgentRunner; replays scripted steps in order.

    The last step repeats once the script runs out. A callable step receives
    the cancel event; an exception step is raised.
    """

    def __init__(self, steps: Sequence[Step]) -> None:
        self.steps = list(steps)
        self.prompts: list[str] = []
        self.log_paths: list = []

    def run(self, prompt, log_path, cancel_event=None) -> AgentResult:
        self.prompts.append(prompt)
        self.log_paths.append(log_path)
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(cancel_event)
        return step

    @property
    def calls(self) -> int:
        return len(self.prompts)


class FakeNotifier:
    """Records events instead of posting them."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []
        self.flushed = 0

    def send(self, event, message: str) -> None:
        self.events.append((event.value, message))

    def flush(self, timeout: float = 5.0) -> None:
        self.flushed += 1

    @property
    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.events]


# --- Popen mock ---

class MockPopen:
    """Mock subprocess.Popen with canned stdout/stderr and a writable stdin."""

    def __init__(self, stdout: str = "", stderr: str = "", returncode: int = 0) -> None:
        self.stdin = io.StringIO()
        self.stdout = io.StringIO(stdout)
        self.stderr = io.StringIO(stderr)
        self.returncode = returncode
        self.pid = 99999
        self.killed = False

    def poll(self) -> int:
        return self.returncode

    def wait(self, timeout: float | None = None) -> int:
        return self.returncode

    def kill(self) -> None:
        self.killed = True


def make_popen_factory(stdout: str = "", stderr: str = "", returncode: int = 0):
    """Create a side_effect for subprocess.Popen that records every MockPopen."""
    created: list[MockPopen] = []

    def factory(*args, **kwargs):
        proc = MockPopen(stdout, stderr, returncode)
        created.append(proc)
        return proc

    factory.created = created
    return factory
