"""Run the agent CLI for one iteration and capture what it prints.

The prompt goes in on stdin. stdout and stderr are drained line by line on
their own threads into the console, the iteration log file and one shared
buffer. The calling thread races process exit against the timeout and the
cancel event, and the child is always killed on the way out.
"""

from __future__ import annotations

import logging
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Optional

from config import AgentConfig
from log_redactor import Redactor

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Timeout: agent execution exceeded time limit"
CANCELLED_MESSAGE = "Cancelled: agent execution was interrupted"

POLL_INTERVAL_SECONDS = 0.1
JOIN_TIMEOUT_SECONDS = 2
KILL_WAIT_SECONDS = 5


class AgentExecutionError(Exception):
    """The agent could not be started or its output could not be captured."""


@dataclass
class AgentResult:
    """Captured output of one agent run."""

    output: str
    success: bool
    returncode: Optional[int] = None
    timed_out: bool = False
    cancelled: bool = False


def build_agent_command(config: AgentConfig) -> list[str]:
    args = [config.executable, "--permission-mode", config.permission_mode]
    if config.dangerously_skip_permissions:
        args.append("--dangerously-skip-permissions")
    args.append("--continue" if config.continue_session else "--print")
    return args


class _OutputSink:
    """Destination shared by the stdout and stderr readers."""

    def __init__(self, log_file: IO[str], redactor: Optional[Redactor], echo: bool) -> None:
        self._log_file = log_file
        self._redactor = redactor
        self._echo = echo
        self._lock = threading.Lock()
        self._chunks: list[str] = []

    def write_line(self, line: str, is_stderr: bool) -> None:
        if self._echo:
            print(line, file=sys.stderr if is_stderr else sys.stdout, flush=True)
        logged = self._redactor.redact(line) if self._redactor else line
        with self._lock:
            self._chunks.append(line + "\n")
            self._log_file.write(f"[stderr] {logged}\n" if is_stderr else f"{logged}\n")
            self._log_file.flush()

    def text(self) -> str:
        with self._lock:
            return "".join(self._chunks)


class AgentRunner:
    """Spawns the agent in the project directory, one run at a time."""

    def __init__(
        self,
        config: AgentConfig,
        project_dir: str | Path,
        timeout_seconds: float,
        redactor: Optional[Redactor] = None,
        echo: bool = True,
    ) -> None:
        self.command = build_agent_command(config)
        self.project_dir = Path(project_dir)
        self.timeout_seconds = timeout_seconds
        self.redactor = redactor
        self.echo = echo

    def run(
        self,
        prompt: str,
        log_path: str | Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> AgentResult:
        logger.debug("Spawning: %s (cwd=%s)", " ".join(self.command), self.project_dir)
        try:
            proc = subprocess.Popen(
                self.command,
                cwd=str(self.project_dir),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as e:
            raise AgentExecutionError(
                f"{self.command[0]} not found. Ensure it is on PATH."
            ) from e
        except OSError as e:
            raise AgentExecutionError(f"Failed to spawn {self.command[0]}: {e}") from e

        try:
            log_file = open(log_path, "w", encoding="utf-8")
        except OSError as e:
            self._terminate(proc)
            raise AgentExecutionError(f"Failed to create log file {log_path}: {e}") from e

        sink = _OutputSink(log_file, self.redactor, self.echo)
        readers = [
            threading.Thread(
                target=self._drain, args=(proc.stdout, sink, False), daemon=True
            ),
            threading.Thread(
                target=self._drain, args=(proc.stderr, sink, True), daemon=True
            ),
        ]
        feeder = threading.Thread(
            target=self._feed_prompt, args=(proc.stdin, prompt), daemon=True
        )

        timed_out = False
        cancelled = False
        try:
            feeder.start()
            for reader in readers:
                reader.start()

            deadline = time.monotonic() + self.timeout_seconds
            while True:
                if proc.poll() is not None and not any(r.is_alive() for r in readers):
                    break
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    timed_out = True
                    break
                step = min(POLL_INTERVAL_SECONDS, remaining)
                if cancel_event is not None:
                    cancel_event.wait(step)
                else:
                    time.sleep(step)
        finally:
            self._terminate(proc)
            feeder.join(timeout=JOIN_TIMEOUT_SECONDS)
            for reader in readers:
                reader.join(timeout=JOIN_TIMEOUT_SECONDS)
            log_file.close()

        if cancelled:
            logger.warning("Agent run cancelled; killed PID %d", proc.pid)
            return AgentResult(output=CANCELLED_MESSAGE, success=False, cancelled=True)
        if timed_out:
            logger.warning(
                "Agent timed out after %ds; killed PID %d", self.timeout_seconds, proc.pid
            )
            return AgentResult(output=TIMEOUT_MESSAGE, success=False, timed_out=True)

        returncode = proc.returncode
        return AgentResult(output=sink.text(), success=returncode == 0, returncode=returncode)

    @staticmethod
    def _feed_prompt(stdin: Optional[IO[str]], prompt: str) -> None:
        if stdin is None:
            return
        try:
            stdin.write(prompt)
            stdin.flush()
        except (OSError, ValueError) as e:
            logger.debug("Agent closed stdin early: %s", e)
        finally:
            try:
                stdin.close()
            except (OSError, ValueError):
                pass

    @staticmethod
    def _drain(stream: Optional[IO[str]], sink: _OutputSink, is_stderr: bool) -> None:
        if stream is None:
            return
        name = "stderr" if is_stderr else "stdout"
        try:
            for line in iter(stream.readline, ""):
                sink.write_line(line.rstrip("\r\n"), is_stderr)
        except (OSError, ValueError) as e:
            logger.warning("Error reading agent %s: %s", name, e)

    @staticmethod
    def _terminate(proc: subprocess.Popen) -> None:
        """Kill the child if it is still running; already-exited is fine."""
        try:
            proc.kill()
        except OSError:
            pass
        try:
            proc.wait(timeout=KILL_WAIT_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning("Agent PID %d did not exit after kill", proc.pid)
