"""Console output formatting utilities for ciflow."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from ciflow.model import JobInstance, RunResult, StepRecord


class Console:
    """Centralized console output formatting.

    Job instances run on worker threads, so every write goes through one lock
    and job/step lines carry a `[job]` prefix.
    """

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show stack traces and full step logs
            quiet: If True, suppress per-step progress lines
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        workflow: str,
        run_id: str,
        job_count: int,
        group: Optional[str] = None,
    ) -> None:
        """Print run start information."""
        lines = ["\nRUN STARTED", f"Workflow: {workflow}", f"Run ID: {run_id}", f"Jobs: {job_count}"]
        if group:
            lines.append(f"Concurrency group: {group}")
        self._out(*lines, "")

    def print_trigger_ignored(self, reason: str) -> None:
        self._out(f"NO RUN: {reason}")

    def print_run_pending(self, run_id: str, group: str) -> None:
        self._out(f"RUN PENDING: {run_id} waits for group '{group}'")

    def print_run_cancelled(self, run_id: str, reason: str) -> None:
        self._out(f"RUN CANCELLED: {run_id} ({reason})")

    def print_job_start(self, name: str) -> None:
        if not self.quiet:
            self._out(f"[{name}] JOB STARTED")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        if not self.quiet:
            self._out(f"[{job}] ▶ {name}")

    def print_step_finished(self, job: str, record: "StepRecord") -> None:
        if self.quiet:
            return
        lines = [f"[{job}] {record.outcome.value}: {record.name}"]
        if self.debug and record.log:
            lines.extend(f"[{job}]   {line}" for line in record.log.rstrip("\n").splitlines())
        self._out(*lines)

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        output: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            output: Optional tail of the captured output
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        if output:
            tail = output.rstrip("\n").splitlines()[-20:]
            lines.extend(f"  | {line}" for line in tail)
        self._out(*lines)

    def print_job_finished(self, instance: "JobInstance") -> None:
        self._out(f"[{instance.name}] JOB {instance.outcome.value.upper()}")

    def print_cache_hit(self, job: str, reason: str) -> None:
        self._out(f"[{job}] CACHE: hit ({reason})")

    def print_cache_miss(self, job: str, reason: str = "miss") -> None:
        self._out(f"[{job}] CACHE: {reason}")

    def print_cache_saved(self, job: str, key: str) -> None:
        """Keys are sha256 hex; only a prefix is shown."""
        short_key = key[:12] + "..." if len(key) > 12 else key
        self._out(f"[{job}] CACHE: saved ({short_key})")

    def print_plan_job(self, name: str, detail: str) -> None:
        """Print one planned job instance."""
        self._out(f"  {name} ({detail})")

    def print_results(self, result: "RunResult") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job, outcome in result.outcomes().items():
            lines.append(f"  {job}: {outcome.upper()}")
        lines.append(f"RUN: {result.status.value.upper()}")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[Iterable[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback

            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Process-wide console; the CLI replaces it according to --debug
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
