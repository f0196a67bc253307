# scheduler.py
from __future__ import annotations

from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Set, Tuple

from .errors import ConfigError
from .executor import RunContext, StepExecutor
from .model import Job, JobInstance, JobOutcome, RunResult, Workflow
from .trigger import validate_group_template


def build_graph(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Returns (adj, indeg) where adj maps a job to the jobs that need it.
    Raises ConfigError on duplicate names or missing dependencies.
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for dep in job.needs:
            if dep not in name_set:
                raise ConfigError(
                    f"Job '{job.name}' needs missing job '{dep}'. Known jobs: {sorted(name_set)}"
                )
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert the DAG into topological "levels" (stages).
    Jobs in one level have no ordering between them.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level: List[str] = []
        for _ in range(len(q)):
            node = q.popleft()
            level.append(node)
            processed += 1
            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)
        levels.append(level)

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise ConfigError(f"Job graph has a cycle. Stuck jobs: {remaining}")

    return levels


def expand_job(job: Job) -> List[JobInstance]:
    """One instance per matrix binding; exactly one when the job has no matrix."""
    instances = [JobInstance(job=job, binding=binding) for binding in job.bindings()]
    if not instances:
        raise ConfigError(f"Job '{job.name}' matrix expands to zero instances")
    return instances


def expand_jobs(jobs: List[Job]) -> List[JobInstance]:
    out: List[JobInstance] = []
    for job in jobs:
        out.extend(expand_job(job))
    return out


def validate_workflow(workflow: Workflow) -> List[List[str]]:
    """Raise ConfigError for anything that would make the workflow unrunnable."""
    if not workflow.name:
        raise ConfigError("Workflow has no name")
    if not workflow.jobs:
        raise ConfigError(f"Workflow '{workflow.name}' defines no jobs")
    for job in workflow.jobs:
        if not job.steps:
            raise ConfigError(f"Job '{job.name}' has no steps")
        expand_job(job)
    if workflow.concurrency is not None:
        validate_group_template(workflow.concurrency.group)
    adj, indeg = build_graph(workflow.jobs)
    return topo_levels(adj, indeg)


class RunScheduler:
    """
    Dispatches the job instances of one run onto a thread pool.

      - instances of independent jobs run concurrently, in no particular order
      - an instance starts once every instance of every job it needs succeeded
      - a failure never cancels siblings; dependents of a failed/cancelled
        job are skipped
      - when the run is cancelled, unstarted instances become cancelled and
        running ones are signalled through run.cancel_event
    """

    def __init__(self, run: RunContext, max_workers: Optional[int] = None):
        self.run = run
        self.max_workers = max_workers or run.settings.max_workers

    def schedule(self, instances: List[JobInstance]) -> RunResult:
        jobs: Dict[str, Job] = {}
        by_job: Dict[str, List[JobInstance]] = {}
        for inst in instances:
            jobs.setdefault(inst.job.name, inst.job)
            by_job.setdefault(inst.job.name, []).append(inst)

        adj, indeg = build_graph(list(jobs.values()))
        topo_levels(adj, indeg)  # cycle check before anything runs

        open_instances = {name: len(insts) for name, insts in by_job.items()}
        job_ok: Dict[str, bool] = {}
        ready: List[JobInstance] = []
        for name in jobs:
            if indeg[name] == 0:
                ready.extend(by_job[name])

        def _job_finished(name: str) -> None:
            # settle a job; skip dependents transitively if it did not succeed
            settle = deque([name])
            while settle:
                current = settle.popleft()
                job_ok[current] = all(i.outcome == JobOutcome.SUCCEEDED for i in by_job[current])
                for nxt in sorted(adj[current]):
                    indeg[nxt] -= 1
                    if indeg[nxt] != 0:
                        continue
                    if all(job_ok.get(dep, False) for dep in jobs[nxt].needs):
                        ready.extend(by_job[nxt])
                    else:
                        outcome = JobOutcome.CANCELLED if self.run.cancel_event.is_set() else JobOutcome.SKIPPED
                        for inst in by_job[nxt]:
                            inst.mark_unstarted(outcome)
                            self.run.console.print_job_finished(inst)
                        open_instances[nxt] = 0
                        settle.append(nxt)

        def _instance_finished(inst: JobInstance) -> None:
            open_instances[inst.job.name] -= 1
            if open_instances[inst.job.name] == 0:
                _job_finished(inst.job.name)

        in_flight: Dict[Future, JobInstance] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="ciflow-job") as pool:
            while ready or in_flight:
                while ready:
                    inst = ready.pop(0)
                    if self.run.cancel_event.is_set():
                        inst.mark_unstarted(JobOutcome.CANCELLED)
                        self.run.console.print_job_finished(inst)
                        _instance_finished(inst)
                        continue
                    fut = pool.submit(StepExecutor(inst, self.run).execute)
                    in_flight[fut] = inst

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    inst = in_flight.pop(fut)
                    try:
                        fut.result()
                    except Exception as e:
                        # executor bug or infrastructure error outside any step
                        inst.mark_unstarted(JobOutcome.FAILED)
                        self.run.console.print_failure(inst.name, str(e), is_job=True)
                        self.run.console.print_exception(e)
                    _instance_finished(inst)

        return RunResult(
            run_id=self.run.run_id,
            jobs=instances,
            cancelled=self.run.cancel_event.is_set(),
        )
