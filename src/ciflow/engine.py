# engine.py
from __future__ import annotations

import itertools
import threading
import time
import uuid
from typing import Callable, Dict, List, Optional

from .actions import ActionRegistry, default_actions
from .cache import CacheStore
from .concurrency import ConcurrencyRegistry, default_registry
from .executor import RunContext
from .model import ConcurrencyGroup, JobInstance, JobOutcome, RunResult, RunStatus, RunTrigger, Workflow
from .scheduler import RunScheduler, expand_jobs, validate_workflow
from .settings import Settings
from .trigger import TriggerDecision, TriggerResolver
from .ui.console import Console, get_console

# process-wide, so runs from engines sharing a registry stay comparable
_run_seq = itertools.count(1)
_run_seq_lock = threading.Lock()


class Run:
    """
    Handle for one run of a workflow.

    Status: queued -> in_progress -> succeeded | failed | cancelled.
    A run whose cancellation was requested before it finished always ends
    as cancelled, whatever its jobs managed to do.
    """

    def __init__(
        self,
        run_id: str,
        workflow: str,
        trigger: RunTrigger,
        group: Optional[ConcurrencyGroup],
        instances: List[JobInstance],
        seq: int = 0,
    ):
        self.run_id = run_id
        self.seq = seq
        self.workflow = workflow
        self.trigger = trigger
        self.group = group
        self.instances = instances
        self.cancel_event = threading.Event()
        self.cancel_reason: Optional[str] = None
        self.result: Optional[RunResult] = None
        self.created_at = time.time()
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None

        self._status = RunStatus.QUEUED
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._done_callbacks: List[Callable[["Run"], None]] = []
        self._cancel_listeners: List[Callable[[], None]] = []

    def __repr__(self) -> str:
        return f"Run({self.run_id!r}, status={self.status.value!r}, group={self.group_key!r})"

    @property
    def group_key(self) -> Optional[str]:
        return self.group.key if self.group else None

    @property
    def status(self) -> RunStatus:
        with self._lock:
            return self._status

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def cancel(self, reason: str = "cancelled") -> bool:
        """Ask the run to stop. Cooperative: running steps are signalled, not rolled back."""
        with self._lock:
            if self.result is not None or self.cancel_event.is_set():
                return False
            self.cancel_reason = reason
            self.cancel_event.set()
            listeners = list(self._cancel_listeners)
        for fn in listeners:
            fn()
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def add_done_callback(self, fn: Callable[["Run"], None]) -> None:
        with self._lock:
            if self.result is None:
                self._done_callbacks.append(fn)
                return
        fn(self)

    def on_cancel(self, fn: Callable[[], None]) -> None:
        with self._lock:
            self._cancel_listeners.append(fn)

    def _mark_started(self) -> None:
        with self._lock:
            self._status = RunStatus.IN_PROGRESS
            self.started_at = time.time()

    def _finish(self, result: RunResult) -> List[Callable[["Run"], None]]:
        with self._lock:
            if self.cancel_event.is_set():
                result.cancelled = True
            self.result = result
            self._status = result.status
            self.finished_at = time.time()
            callbacks = list(self._done_callbacks)
            self._done_callbacks.clear()
        return callbacks

    def _set_done(self) -> None:
        # after the done callbacks, so wait() observes their side effects
        self._done.set()


class Engine:
    """
    Runs one workflow definition:

        trigger -> TriggerResolver -> ConcurrencyRegistry -> RunScheduler
                -> StepExecutor per job instance -> RunResult

    dispatch() runs in the calling thread; submit() runs on a background
    thread and returns the Run handle right away.
    """

    def __init__(
        self,
        workflow: Workflow,
        settings: Optional[Settings] = None,
        *,
        actions: Optional[ActionRegistry] = None,
        registry: Optional[ConcurrencyRegistry] = None,
        console: Optional[Console] = None,
    ):
        validate_workflow(workflow)
        self.workflow = workflow
        self.settings = settings or Settings.from_env()
        self.actions = actions or default_actions()
        self.registry = registry or default_registry()
        self.resolver = TriggerResolver(workflow)
        self._console = console
        self._cache: Optional[CacheStore] = None
        self._runs: Dict[str, Run] = {}
        self._lock = threading.Lock()

    @property
    def console(self) -> Console:
        return self._console or get_console()

    @property
    def cache(self) -> CacheStore:
        with self._lock:
            if self._cache is None:
                self._cache = CacheStore(self.settings.cache_root)
            return self._cache

    # ---- planning ----

    def resolve(self, trigger: RunTrigger) -> TriggerDecision:
        return self.resolver.resolve(trigger)

    def plan(self) -> List[JobInstance]:
        return expand_jobs(self.workflow.jobs)

    # ---- runs ----

    def create_run(self, trigger: RunTrigger) -> Optional[Run]:
        """Admit a trigger. Returns None (and does nothing else) on a filter mismatch."""
        decision = self.resolve(trigger)
        if not decision.admitted:
            self.console.print_trigger_ignored(decision.reason)
            return None

        with _run_seq_lock:
            seq = next(_run_seq)
        run = Run(
            run_id=uuid.uuid4().hex[:12],
            workflow=self.workflow.name,
            trigger=trigger,
            group=decision.group,
            instances=self.plan(),
            seq=seq,
        )
        run.on_cancel(self.registry.wake)
        with self._lock:
            self._runs[run.run_id] = run
        return run

    def execute(self, run: Run) -> RunResult:
        console = self.console
        ctx = RunContext(
            run_id=run.run_id,
            workflow=self.workflow,
            trigger=run.trigger,
            settings=self.settings,
            actions=self.actions,
            cache=self.cache,
            cancel_event=run.cancel_event,
            console=console,
        )

        acquired = True
        if run.group is not None:
            previous = self.registry.active(run.group.key)
            if previous is not None and not run.group.cancel_in_progress:
                console.print_run_pending(run.run_id, run.group.key)
            acquired = self.registry.acquire(run.group, run)
            if acquired and previous is not None and previous is not run and previous.cancelled:
                console.print_run_cancelled(previous.run_id, f"superseded by {run.run_id} in '{run.group.key}'")

        if not acquired:
            for inst in run.instances:
                inst.mark_unstarted(JobOutcome.CANCELLED)
            result = RunResult(run_id=run.run_id, jobs=run.instances, cancelled=True)
            console.print_run_cancelled(run.run_id, run.cancel_reason or "superseded while pending")
            self._complete(run, result)
            return result

        run._mark_started()
        console.print_run_started(
            workflow=self.workflow.name,
            run_id=run.run_id,
            job_count=len(run.instances),
            group=run.group_key,
        )
        try:
            result = RunScheduler(ctx).schedule(run.instances)
        except Exception as e:
            console.print_exception(e)
            for inst in run.instances:
                if not inst.done:
                    inst.mark_unstarted(JobOutcome.FAILED)
            result = RunResult(run_id=run.run_id, jobs=run.instances)
        finally:
            if run.group is not None:
                self.registry.release(run.group, run)

        self._complete(run, result)
        console.print_results(result)
        return result

    def _complete(self, run: Run, result: RunResult) -> None:
        try:
            for fn in run._finish(result):
                try:
                    fn(run)
                except Exception as e:
                    self.console.print_exception(e)
        finally:
            # finished runs live on in their callbacks (e.g. the run store), not here
            with self._lock:
                self._runs.pop(run.run_id, None)
            run._set_done()

    def dispatch(self, trigger: RunTrigger) -> Optional[Run]:
        """Admit and run synchronously. Returns None when the trigger is ignored."""
        run = self.create_run(trigger)
        if run is not None:
            self.execute(run)
        return run

    def submit(self, trigger: RunTrigger, *, on_done: Optional[Callable[[Run], None]] = None) -> Optional[Run]:
        """Admit and run on a background thread."""
        run = self.create_run(trigger)
        if run is None:
            return None
        if on_done is not None:
            run.add_done_callback(on_done)
        self.start(run)
        return run

    def start(self, run: Run) -> threading.Thread:
        """Execute an already admitted run on a background thread."""
        t = threading.Thread(target=self.execute, args=(run,), name=f"ciflow-run-{run.run_id}", daemon=True)
        t.start()
        return t

    def get_run(self, run_id: str) -> Optional[Run]:
        """A run that has not finished yet; None once it is done."""
        with self._lock:
            return self._runs.get(run_id)

    def runs(self) -> List[Run]:
        with self._lock:
            return sorted(self._runs.values(), key=lambda r: r.created_at)

    def cancel(self, run_id: str, reason: str = "cancelled by user") -> bool:
        run = self.get_run(run_id)
        return run.cancel(reason) if run is not None else False
