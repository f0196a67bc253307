# executor.py
from __future__ import annotations

import os
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .actions import ActionRegistry
from .cache import CacheStore
from .errors import ActionNotFound, CIError, StepFailure
from .expr import render
from .model import (
    ActionStep,
    CommandStep,
    JobInstance,
    JobOutcome,
    RunTrigger,
    Step,
    StepOutcome,
    StepRecord,
    Workflow,
)
from .settings import Settings
from .ui.console import Console, get_console

# How often a running command checks for cancellation / timeout.
POLL_SECONDS = 0.1
OUTPUT_TAIL = 4000


def slugify(name: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in name).strip("_") or "job"


@dataclass
class RunContext:
    """Everything the executors of one run share. Read-only for executors."""
    run_id: str
    workflow: Workflow
    trigger: RunTrigger
    settings: Settings
    actions: ActionRegistry
    cache: CacheStore
    cancel_event: threading.Event = field(default_factory=threading.Event)
    console: Console = field(default_factory=get_console)

    @property
    def run_dir(self) -> Path:
        return Path(self.settings.work_root).resolve() / self.run_id

    def expression_context(self) -> Dict[str, Any]:
        return {
            "workflow": self.workflow.name,
            "ref": self.trigger.ref,
            "ref_name": self.trigger.ref,
            "event_name": self.trigger.event_kind.value,
            "sha": self.trigger.sha or "",
            "pull_request.number": self.trigger.pr_number,
            "run_id": self.run_id,
        }


class StepContext:
    """What a running step sees: its job instance, workspace, environment and log."""

    def __init__(self, executor: "StepExecutor", index: int, step: Step, record: StepRecord):
        self._executor = executor
        self.index = index
        self.step = step
        self.record = record

    @property
    def instance(self) -> JobInstance:
        return self._executor.instance

    @property
    def run(self) -> RunContext:
        return self._executor.run

    @property
    def workspace(self) -> Path:
        return self._executor.workspace

    @property
    def settings(self) -> Settings:
        return self.run.settings

    @property
    def cache(self) -> CacheStore:
        return self.run.cache

    @property
    def console(self) -> Console:
        return self.run.console

    @property
    def cancelled(self) -> bool:
        return self.run.cancel_event.is_set()

    def log(self, text: str) -> None:
        if text and not text.endswith("\n"):
            text += "\n"
        self.record.log += text

    def render(self, text: str) -> str:
        return render(text, self._executor.expr_context, strict=False)

    def environment(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """
        Environment for a process started by this step. Actions call it too,
        so an action step's `env` reaches whatever the action runs.
        """
        # later layers win: process < engine < workflow < job < step < extra
        env = os.environ.copy()
        env.update(
            {
                "CI": "true",
                "CIFLOW": "true",
                "CIFLOW_RUN_ID": self.run.run_id,
                "CIFLOW_WORKFLOW": self.run.workflow.name,
                "CIFLOW_JOB": self.instance.job.name,
                "CIFLOW_EVENT": self.run.trigger.event_kind.value,
                "CIFLOW_REF": self.run.trigger.ref or "",
                "CIFLOW_WORKSPACE": str(self.workspace),
            }
        )
        step_env = getattr(self.step, "env", None) or {}
        for layer in (self.run.workflow.env, self.instance.job.env, step_env, extra or {}):
            env.update({k: self.render(str(v)) for k, v in layer.items()})
        return env

    def add_post_step(self, name: str, fn: Callable[[], None]) -> None:
        """Register work to run after every step of the instance succeeded."""
        self._executor.post_steps.append((name, fn))

    def failure(self, reason: str, *, cmd: str = "", exit_code: Optional[int] = None, output: str = "") -> StepFailure:
        return StepFailure(
            job=self.instance.name,
            step=self.step.name,
            cmd=cmd or self.step.describe(),
            exit_code=exit_code,
            reason=reason,
            output=output,
        )

    # ---- the two step variants ----

    def run_command(self, step: CommandStep) -> None:
        cmd = self.render(step.run)
        cwd = (self.workspace / self.render(step.cwd or ".")).resolve()
        if not cwd.is_dir():
            raise self.failure(f"cwd not found: {cwd}", cmd=cmd)

        log_path = self._executor.log_dir / f"{self.index:02d}-{slugify(step.name)}.log"
        with open(log_path, "w", encoding="utf-8") as fh:
            proc = subprocess.Popen(
                cmd,
                shell=True,
                cwd=str(cwd),
                env=self.environment(step.env),
                stdin=subprocess.DEVNULL,
                stdout=fh,
                stderr=subprocess.STDOUT,
                start_new_session=(os.name == "posix"),
            )
            interrupted = self._executor.wait_for(proc)

        output = log_path.read_text(encoding="utf-8", errors="replace")
        self.log(output)
        self.record.exit_code = proc.returncode

        if interrupted:
            raise self.failure(interrupted, cmd=cmd, exit_code=proc.returncode, output=output[-OUTPUT_TAIL:])
        if proc.returncode != 0:
            raise self.failure("failed", cmd=cmd, exit_code=proc.returncode, output=output[-OUTPUT_TAIL:])

    def run_action(self, step: ActionStep) -> None:
        fn = self.run.actions.resolve(step.uses)
        if fn is None:
            raise ActionNotFound(job=self.instance.name, step=step.name, uses=step.uses)
        fn(self, step)


def _terminate(proc: subprocess.Popen) -> None:
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGTERM)
        else:
            proc.terminate()
        proc.wait(timeout=5)
    except ProcessLookupError:
        return
    except subprocess.TimeoutExpired:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
        proc.wait()


class StepExecutor:
    """
    Runs the steps of one job instance, strictly in order, inside a freshly
    provisioned workspace.

    Per step: pending -> running -> succeeded | failed.
    After the first failure every remaining step is skipped and the instance
    fails. Nothing is retried. Provisioning (checkout, toolchain, cache
    restore) is made of ordinary steps and follows the same rules.
    """

    def __init__(self, instance: JobInstance, run: RunContext):
        self.instance = instance
        self.run = run
        base = run.run_dir / slugify(instance.name)
        self.workspace = base / "workspace"
        self.log_dir = base / "logs"
        self.deadline: Optional[float] = None
        self.post_steps: List[Tuple[str, Callable[[], None]]] = []

        self.expr_context = run.expression_context()
        self.expr_context["job"] = instance.job.name
        for k, v in instance.binding.items():
            self.expr_context[f"matrix.{k}"] = v

    def provision(self) -> Path:
        try:
            if self.workspace.exists():
                shutil.rmtree(self.workspace)
            self.workspace.mkdir(parents=True)
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CIError(
                kind="provision",
                job=self.instance.name,
                step=None,
                message=f"workspace provisioning failed: {e}",
                details={"workspace": str(self.workspace)},
            ) from e
        return self.workspace

    def wait_for(self, proc: subprocess.Popen) -> Optional[str]:
        """Wait for a command; returns 'cancelled' / 'timed out' if it was stopped."""
        while True:
            try:
                proc.wait(timeout=POLL_SECONDS)
                return None
            except subprocess.TimeoutExpired:
                pass
            if self.run.cancel_event.is_set():
                _terminate(proc)
                return "cancelled"
            if self.deadline is not None and time.monotonic() >= self.deadline:
                _terminate(proc)
                return "timed out"

    def _timeout_minutes(self) -> float:
        job_timeout = self.instance.job.timeout_minutes
        return job_timeout if job_timeout is not None else self.run.settings.timeout_minutes

    def _run_step(self, index: int, step: Step, record: StepRecord) -> None:
        console = self.run.console
        name = self.instance.name

        record.outcome = StepOutcome.RUNNING
        record.started_at = time.time()
        console.print_step(name, step.name)
        ctx = StepContext(self, index, step, record)
        try:
            if self.deadline is not None and time.monotonic() >= self.deadline:
                raise ctx.failure("timed out")
            step.execute(ctx)
        except StepFailure as e:
            record.outcome = StepOutcome.FAILED
            record.error = str(e)
            if e.exit_code is not None:
                record.exit_code = e.exit_code
            console.print_failure(f"{name} / {step.name}", str(e), exit_code=e.exit_code, output=e.output)
        except Exception as e:
            # actions are plain callables: raising fails the step like a non-zero exit
            record.outcome = StepOutcome.FAILED
            record.error = f"{type(e).__name__}: {e}"
            console.print_failure(f"{name} / {step.name}", record.error)
        else:
            record.outcome = StepOutcome.SUCCEEDED
        finally:
            record.finished_at = time.time()
        console.print_step_finished(name, record)

    def _run_post_steps(self) -> bool:
        for post_name, fn in self.post_steps:
            try:
                fn()
            except Exception as e:
                self.run.console.print_failure(f"{self.instance.name} / {post_name}", f"{type(e).__name__}: {e}")
                return False
        return True

    def execute(self) -> JobOutcome:
        inst = self.instance
        inst.outcome = JobOutcome.RUNNING
        inst.started_at = time.time()
        self.run.console.print_job_start(inst.name)

        timeout = self._timeout_minutes()
        self.deadline = time.monotonic() + timeout * 60 if timeout and timeout > 0 else None

        failed = False
        cancelled = False
        try:
            self.provision()
        except CIError as e:
            failed = True
            if inst.records:
                inst.records[0].outcome = StepOutcome.FAILED
                inst.records[0].error = str(e)
            self.run.console.print_failure(inst.name, e.message, is_job=True)

        for index, (step, record) in enumerate(zip(inst.job.steps, inst.records)):
            if record.outcome != StepOutcome.PENDING:
                continue
            if not failed and not cancelled and self.run.cancel_event.is_set():
                cancelled = True
            if failed or cancelled:
                record.outcome = StepOutcome.SKIPPED
                if cancelled:
                    record.error = "run cancelled"
                continue

            self._run_step(index, step, record)
            if record.outcome == StepOutcome.FAILED:
                if self.run.cancel_event.is_set():
                    cancelled = True
                else:
                    failed = True

        if not failed and not cancelled and not self._run_post_steps():
            failed = True

        if cancelled:
            inst.outcome = JobOutcome.CANCELLED
        elif failed:
            inst.outcome = JobOutcome.FAILED
        else:
            inst.outcome = JobOutcome.SUCCEEDED
        inst.finished_at = time.time()
        self.run.console.print_job_finished(inst)
        return inst.outcome
