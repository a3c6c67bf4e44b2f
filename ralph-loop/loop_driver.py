"""Iteration loop driver for an autonomous coding agent working through a PRD.

Each iteration reloads the PRD, renders the prompt, runs the agent CLI once,
checks that the agent only touched feature statuses in the PRD, classifies the
output and decides whether to continue, back off, finish or abort.
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from agent_runner import AgentExecutionError, AgentRunner
from change_guard import validate_document_changes
from config import DEFAULT_CONFIG_RELPATH, LoopConfig, load_config
from git_ops import get_git_status, is_git_repo, recent_commits
from log_redactor import RedactingFilter, Redactor
from notifier import EventType, Notifier
from output_analyzer import IterationOutcome, classify
from prompt_builder import PromptError, generate_prompt_template, get_prompt
from retry_tracker import (
    ConsecutiveFailureCounter,
    ItemRetryTracker,
    block_item,
)
from run_state import RunStateTracker, RunStatus
from task_document import DocumentError, TaskDocument, generate_template, load_document

logger = logging.getLogger(__name__)

# Exit codes
EXIT_OK = 0
EXIT_FAILURE = 1

EXIT_CODES = {
    RunStatus.COMPLETED: EXIT_OK,
    RunStatus.INTERRUPTED: EXIT_OK,
    RunStatus.MAX_ITERATIONS: EXIT_OK,
    RunStatus.ABORTED: EXIT_FAILURE,
}

PROGRESS_HEADER = "# Ralph Progress Log\n\nAppend-only log of session activity.\n\n---\n\n"
SEPARATOR = "=" * 60


class LoopSetupError(Exception):
    """The loop's working directories or files could not be prepared."""


class JsonFormatter(logging.Formatter):
    """Structured JSON log formatter for machine-readable output."""

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps({
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
        })


def format_duration(seconds: float) -> str:
    total = int(seconds)
    return f"{total // 60}m {total % 60}s"


@dataclass
class IterationReport:
    """What happened in one iteration, before the loop acts on it."""

    outcome: IterationOutcome
    item_id: Optional[str] = None
    agent_success: Optional[bool] = None
    error: Optional[str] = None
    duration_ms: int = 0


def handle_item_failure(
    tracker: ItemRetryTracker, prd_path: Path, item_id: Optional[str]
) -> bool:
    """Count a failure against the in-progress feature; block it at the limit.

    Returns True if the feature was auto-blocked.
    """
    if not tracker.is_enabled() or item_id is None:
        return False
    count = tracker.record_failure(item_id)
    if not tracker.should_block(item_id):
        logger.warning(
            "Feature '%s' error count: %d/%d", item_id, count, tracker.max_retries
        )
        return False
    try:
        block_item(prd_path, item_id)
    except DocumentError as e:
        logger.error("Could not auto-block feature '%s': %s", item_id, e)
        return False
    return True


class LoopDriver:
    """Runs the agent against the PRD until completion, abort or a limit."""

    def __init__(
        self,
        prd_path: str | Path,
        config: LoopConfig,
        skip_init: bool = False,
        runner: Optional[AgentRunner] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.prd_path = Path(prd_path)
        self.project_dir = self.prd_path.parent
        self.ralph_dir = self.project_dir / ".ralph"
        self.logs_dir = self.ralph_dir / "logs"
        self.progress_path = self.project_dir / "progress.txt"
        self.config = config
        self.skip_init = skip_init
        self.prompt_path = Path(config.paths.prompt_path) if config.paths.prompt_path else None

        self.stop_event = threading.Event()
        self.runner = runner or AgentRunner(
            config.agent,
            self.project_dir,
            config.limits.timeout_seconds,
            redactor=Redactor(config.security.log_redact_patterns),
        )
        self.notifier = notifier or Notifier(
            config.notifications.webhook_url, config.notifications.timeout_seconds
        )
        self.failures = ConsecutiveFailureCounter()
        self.item_retries = ItemRetryTracker(config.retry.max_item_retries)
        self.state = RunStateTracker(self.ralph_dir, self.prd_path)
        self.iteration = 0
        self._started_at: Optional[float] = None

    def request_stop(self) -> None:
        """Ask the loop to stop; a running agent is killed."""
        self.stop_event.set()

    def completion_marker(self, document: TaskDocument) -> str:
        override = self.config.paths.completion_marker
        return override if override is not None else document.completion.marker

    def prepare(self) -> TaskDocument:
        """Validate the environment before any iteration runs."""
        if not self.prd_path.exists():
            raise DocumentError(
                f"PRD file not found: {self.prd_path}. "
                "Run with --init to create a template, or pass --prd."
            )
        document = load_document(self.prd_path)
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            if not self.progress_path.exists():
                self.progress_path.write_text(PROGRESS_HEADER, encoding="utf-8")
        except OSError as e:
            raise LoopSetupError(f"Failed to prepare {self.ralph_dir}: {e}") from e
        return document

    def run(self) -> RunStatus:
        """Execute the loop. Raises DocumentError/LoopSetupError before iterating."""
        document = self.prepare()
        marker = self.completion_marker(document)

        if not self.skip_init:
            self.run_init_phase(document)

        self.notifier.send(
            EventType.SESSION_START, f"Starting session for {document.project.name}"
        )
        self._log_banner(marker)
        self.state.start()
        self._started_at = time.monotonic()

        while True:
            try:
                document = load_document(self.prd_path)
            except DocumentError as e:
                logger.error("%s", e)
                return self._finish(
                    RunStatus.ABORTED, f"PRD could not be reloaded: {e}",
                    EventType.SESSION_FAILED,
                )
            self.iteration += 1

            report = self.run_iteration(document, marker)
            if self.stop_event.is_set():
                return self._finish(RunStatus.INTERRUPTED, "Interrupted")

            self._record(report)
            status = self._apply_outcome(report)
            if status is not None:
                return status

            max_iterations = self.config.limits.max_iterations
            if max_iterations > 0 and self.iteration >= max_iterations:
                logger.warning("Max iterations (%d) reached", max_iterations)
                return self._finish(
                    RunStatus.MAX_ITERATIONS, f"Max iterations ({max_iterations}) reached"
                )

            delay = self.config.limits.delay_seconds
            logger.info("Waiting %ss before next iteration...", delay)
            if self.stop_event.wait(delay):
                return self._finish(RunStatus.INTERRUPTED, "Interrupted")

    def run_iteration(self, document: TaskDocument, marker: str) -> IterationReport:
        """Run the agent once and classify the result. Never raises."""
        logger.info("")
        logger.info(SEPARATOR)
        logger.info("Iteration %d - %s", self.iteration, datetime.now().strftime("%Y-%m-%d %H:%M:%S"))
        logger.info(SEPARATOR)

        item_id = document.current_item_id()
        log_path = self.logs_dir / (
            f"{datetime.now():%Y%m%d-%H%M%S}-iteration-{self.iteration}.log"
        )
        started = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            prompt = get_prompt(
                self.prompt_path, document, self.prd_path, self.progress_path, marker
            )
            result = self.runner.run(prompt, log_path, self.stop_event)
        except (AgentExecutionError, PromptError, OSError) as e:
            logger.error("Iteration error: %s", e)
            return IterationReport(
                IterationOutcome.FAILED, item_id, error=str(e), duration_ms=elapsed_ms()
            )

        if result.success:
            logger.info("Iteration %d completed", self.iteration)
        else:
            logger.warning("Iteration %d exited with error", self.iteration)

        if is_git_repo(self.project_dir):
            guard = validate_document_changes(self.prd_path)
            if not guard.success:
                logger.error("PRD validation failed: %s", guard.error)
                return IterationReport(
                    IterationOutcome.FAILED, item_id, result.success,
                    error=guard.error, duration_ms=elapsed_ms(),
                )
        else:
            logger.warning("Not a git repository - skipping PRD validation")

        outcome = classify(result.output, result.success, marker)
        return IterationReport(outcome, item_id, result.success, duration_ms=elapsed_ms())

    def _apply_outcome(self, report: IterationReport) -> Optional[RunStatus]:
        """Update trackers for one iteration; return a terminal status or None."""
        outcome = report.outcome
        if outcome is IterationOutcome.CONTINUE:
            self.failures.record_success()
            return None

        if outcome is IterationOutcome.COMPLETE:
            logger.info(SEPARATOR)
            logger.info("Completion marker found! Loop finished.")
            logger.info(SEPARATOR)
            return self._finish(
                RunStatus.COMPLETED, "Completion marker found",
                EventType.SESSION_COMPLETE,
                f"Session complete after {self.iteration} iterations",
            )

        if outcome is IterationOutcome.RATE_LIMITED:
            backoff = self.config.limits.rate_limit_backoff_seconds
            logger.error("Rate limit detected. Waiting %ss before retry...", backoff)
            if self.stop_event.wait(backoff):
                return self._finish(RunStatus.INTERRUPTED, "Interrupted")
            return None

        if outcome is IterationOutcome.LOOP_DETECTED:
            logger.warning("Loop detection: agent appears blocked")

        if handle_item_failure(self.item_retries, self.prd_path, report.item_id):
            self.state.record_blocked(report.item_id)

        count = self.failures.record_failure()
        if self.failures.should_abort():
            logger.error(SEPARATOR)
            logger.error("Too many consecutive failures (%d)", count)
            logger.error("The agent may be stuck. Review logs and PRD.")
            logger.error(SEPARATOR)
            return self._finish(
                RunStatus.ABORTED, "Too many consecutive failures",
                EventType.SESSION_FAILED,
                f"Session failed after {self.iteration} iterations: "
                "too many consecutive failures",
            )
        logger.warning(
            "Consecutive failures: %d/%d", count, self.failures.threshold
        )
        return None

    def _record(self, report: IterationReport) -> None:
        outcome = "error" if report.error and report.agent_success is None else report.outcome.value
        self.state.record_iteration(
            self.iteration,
            outcome,
            item_id=report.item_id,
            duration_ms=report.duration_ms,
            agent_success=report.agent_success,
            error_message=report.error,
        )
        saved = self.state.save()
        if not saved.success:
            logger.warning("%s", saved.error)

    def _finish(
        self,
        status: RunStatus,
        reason: str,
        event: Optional[EventType] = None,
        message: Optional[str] = None,
    ) -> RunStatus:
        self.state.finish(status, reason)
        saved = self.state.save()
        if not saved.success:
            logger.warning("%s", saved.error)

        if status is RunStatus.INTERRUPTED:
            logger.warning("Loop interrupted after %d iterations", self.iteration)
        self._log_summary()

        if event is not None:
            self.notifier.send(event, message or reason)
        self.notifier.flush()
        return status

    def _log_summary(self) -> None:
        elapsed = time.monotonic() - self._started_at if self._started_at else 0.0
        counts = self.state.outcome_counts()
        logger.info("")
        logger.info(SEPARATOR)
        logger.info("LOOP %s", self.state.state.status.value.upper())
        logger.info("Total iterations: %d", self.iteration)
        logger.info("Total runtime: %s", format_duration(elapsed))
        if counts:
            logger.info(
                "Outcomes: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(counts.items())),
            )
        if self.state.state.blocked_items:
            logger.info("Auto-blocked: %s", ", ".join(self.state.state.blocked_items))
        logger.info("Logs saved to: %s", self.logs_dir)
        logger.info(SEPARATOR)

    def _log_banner(self, marker: str) -> None:
        limits = self.config.limits
        agent = self.config.agent
        logger.info(SEPARATOR)
        logger.info("Ralph Loop")
        logger.info(SEPARATOR)
        logger.info("PRD file: %s", self.prd_path)
        logger.info("Progress file: %s", self.progress_path)
        if self.prompt_path:
            logger.info("Custom prompt: %s", self.prompt_path)
        logger.info("Completion marker: %s", marker)
        logger.info("Permission mode: %s", agent.permission_mode)
        logger.info(
            "Session mode: %s",
            "continue (preserves context)" if agent.continue_session
            else "print (fresh each iteration)",
        )
        logger.info("Timeout: %ss per iteration", limits.timeout_seconds)
        if limits.max_iterations > 0:
            logger.info("Max iterations: %d", limits.max_iterations)
        if self.item_retries.is_enabled():
            logger.info("Max retries per feature: %d", self.item_retries.max_retries)

    def run_init_phase(self, document: TaskDocument) -> None:
        """Log git state, PRD status counts and progress history."""
        logger.info(SEPARATOR)
        logger.info("Initialization")
        logger.info(SEPARATOR)

        status = get_git_status(self.project_dir)
        if status is None:
            logger.warning("Not a git repository - git features disabled")
        elif status.uncommitted_changes > 0:
            logger.warning(
                "Branch: %s (%d uncommitted changes)",
                status.branch, status.uncommitted_changes,
            )
        else:
            logger.info("Branch: %s (clean)", status.branch)

        c = document.status_counts()
        logger.info(
            "PRD: %d features (%d complete, %d in-progress, %d pending, %d blocked)",
            len(document.features), c.complete, c.in_progress, c.pending, c.blocked,
        )

        try:
            sessions = self.progress_path.read_text(encoding="utf-8").count("## Session")
            logger.info("Progress: %d previous sessions recorded", sessions)
        except OSError:
            logger.info("Progress file will be created")

        if status is not None:
            logger.info("Recent git history:")
            for commit in recent_commits(5, self.project_dir):
                logger.info("  %s", commit)

    def dry_run(self, document: TaskDocument) -> bool:
        """Summarise the PRD and run its verification commands once."""
        logger.info(SEPARATOR)
        logger.info("Dry Run")
        logger.info(SEPARATOR)
        logger.info("Project: %s", document.project.name)
        logger.info("PRD file: %s", self.prd_path)

        c = document.status_counts()
        logger.info("Total features: %d", len(document.features))
        logger.info("  Pending:     %d", c.pending)
        logger.info("  In-progress: %d", c.in_progress)
        logger.info("  Complete:    %d", c.complete)
        logger.info("  Blocked:     %d", c.blocked)

        status = get_git_status(self.project_dir)
        if status is None:
            logger.warning("Not a git repository")
        else:
            logger.info("Branch: %s", status.branch)
            logger.info("Uncommitted changes: %d", status.uncommitted_changes)

        all_passed = True
        for cmd in document.verification.commands:
            try:
                result = subprocess.run(
                    cmd.command, shell=True,
                    cwd=str(self.project_dir),
                    capture_output=True, text=True,
                    timeout=self.config.limits.timeout_seconds,
                )
            except (subprocess.TimeoutExpired, OSError) as e:
                logger.error("%s: ERROR (%s)", cmd.name, e)
                all_passed = False
                continue
            if result.returncode == 0:
                logger.info("%s: PASS", cmd.name)
            else:
                logger.error("%s: FAIL (rc=%d)", cmd.name, result.returncode)
                all_passed = False

        if all_passed:
            logger.info("Dry run complete - all verifications passed")
        else:
            logger.warning("Dry run complete - some verifications failed")
        return all_passed


def install_signal_handlers(driver: LoopDriver) -> None:
    """Route SIGINT/SIGTERM to a graceful stop."""

    def _handler(signum, frame) -> None:
        logger.warning("Received %s, stopping...", signal.Signals(signum).name)
        driver.request_stop()

    signal.signal(signal.SIGINT, _handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ralph",
        description="Autonomous AI agent loop for iterative development",
    )
    parser.add_argument("-p", "--prd", default="prd.jsonc", help="Path to PRD file")
    parser.add_argument("-P", "--prompt", default=None, help="Custom prompt template file")
    parser.add_argument("-m", "--max-iterations", type=int, default=None, help="Max iterations (0 = unlimited)")
    parser.add_argument("-d", "--delay", type=float, default=None, help="Delay between iterations in seconds")
    parser.add_argument("-c", "--completion-marker", default=None, help="Completion marker (overrides PRD)")
    parser.add_argument(
        "--permission-mode", default=None,
        choices=["default", "acceptEdits", "plan", "bypassPermissions"],
        help="Agent permission mode",
    )
    parser.add_argument("--continue-session", action="store_true", help="Use --continue (preserves session context)")
    parser.add_argument("--dangerously-skip-permissions", action="store_true", help="Skip all permission prompts")
    parser.add_argument("--skip-init", action="store_true", help="Skip initialization phase")
    parser.add_argument("--init", action="store_true", help="Create a template PRD and exit")
    parser.add_argument("--init-prompt", action="store_true", help="Create prompt.md from the built-in template and exit")
    parser.add_argument("-t", "--timeout", type=float, default=None, help="Timeout per agent run in seconds")
    parser.add_argument("--max-item-retries", type=int, default=None, help="Failures before a feature is auto-blocked (0 disables)")
    parser.add_argument("--webhook", default=None, help="Webhook URL for session events")
    parser.add_argument("--dry-run", action="store_true", help="Show PRD status and run verification commands only")
    parser.add_argument("--config", default=None, help="Path to config.json")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--json-log", action="store_true", help="Output structured JSON logs")
    return parser


def apply_overrides(config: LoopConfig, args: argparse.Namespace) -> LoopConfig:
    """Apply CLI flags on top of file config."""
    if args.max_iterations is not None:
        config.limits.max_iterations = args.max_iterations
    if args.delay is not None:
        config.limits.delay_seconds = args.delay
    if args.timeout is not None:
        config.limits.timeout_seconds = args.timeout
    if args.permission_mode is not None:
        config.agent.permission_mode = args.permission_mode
    if args.continue_session:
        config.agent.continue_session = True
    if args.dangerously_skip_permissions:
        config.agent.dangerously_skip_permissions = True
    if args.max_item_retries is not None:
        config.retry.max_item_retries = args.max_item_retries
    if args.webhook is not None:
        config.notifications.webhook_url = args.webhook
    if args.prompt is not None:
        config.paths.prompt_path = args.prompt
    if args.completion_marker is not None:
        config.paths.completion_marker = args.completion_marker
    # Re-validate so CLI values get the same bounds as file values
    return LoopConfig.model_validate(config.model_dump())


def setup_logging(verbose: bool, json_log: bool, redact_patterns: list[str]) -> None:
    log_level = logging.DEBUG if verbose else logging.INFO
    if json_log:
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
        logging.root.addHandler(handler)
        logging.root.setLevel(log_level)
    else:
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    for handler in logging.root.handlers:
        handler.addFilter(RedactingFilter(redact_patterns))


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point. Returns the process exit code."""
    args = build_parser().parse_args(argv)
    prd_path = Path(args.prd)

    config_path = args.config or (prd_path.parent / DEFAULT_CONFIG_RELPATH)
    config_result = load_config(config_path)
    # Logging first so config errors are reported the usual way
    patterns = (
        config_result.data.security.log_redact_patterns
        if config_result.success and config_result.data
        else LoopConfig().security.log_redact_patterns
    )
    setup_logging(args.verbose, args.json_log, patterns)
    if not config_result.success:
        logger.error("Config error: %s", config_result.error)
        return EXIT_FAILURE

    try:
        config = apply_overrides(config_result.data, args)
    except ValueError as e:
        logger.error("Invalid option: %s", e)
        return EXIT_FAILURE

    try:
        if args.init:
            generate_template(prd_path)
            return EXIT_OK
        if args.init_prompt:
            generate_prompt_template(Path("prompt.md"))
            return EXIT_OK
    except (DocumentError, PromptError) as e:
        logger.error("%s", e)
        return EXIT_FAILURE

    driver = LoopDriver(prd_path, config, skip_init=args.skip_init)
    try:
        if args.dry_run:
            driver.dry_run(load_document(prd_path))
            return EXIT_OK
        install_signal_handlers(driver)
        status = driver.run()
    except (DocumentError, LoopSetupError) as e:
        logger.error("%s", e)
        return EXIT_FAILURE
    return EXIT_CODES[status]


if __name__ == "__main__":
    sys.exit(main())
