# src/ciflow/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .matrix import MatrixSpec
from .model import (
    DEFAULT_GROUP_TEMPLATE,
    ActionStep,
    CommandStep,
    ConcurrencySpec,
    EventKind,
    Job,
    Step,
    TriggerFilter,
    Workflow,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None, env: Optional[Dict[str, str]] = None) -> CommandStep:
    """Create a shell step."""
    return CommandStep(name=name, run=cmd, cwd=cwd, env={k: str(v) for k, v in (env or {}).items()})


def run(cmd: str, *, name: str | None = None, cwd: str | None = None, env: Optional[Dict[str, str]] = None) -> CommandStep:
    """Shell step named after its command, like an unnamed `run:` entry."""
    return sh(name or f"Run {cmd.splitlines()[0]}", cmd, cwd=cwd, env=env)


def uses(
    ref: str,
    *,
    name: str | None = None,
    with_: Optional[Mapping[str, Any]] = None,
    env: Optional[Dict[str, str]] = None,
    **inputs: Any,
) -> ActionStep:
    """
    Create an action step:
        uses("actions/checkout@v4")
        uses("actions/cache@v4", path=["target"], key="deps")
    """
    merged: Dict[str, Any] = dict(with_ or {})
    merged.update(inputs)
    return ActionStep(name=name or ref, uses=ref, with_=merged, env=dict(env or {}))


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(
    key: Optional[str] = None,
    values: Optional[Iterable[Any]] = None,
    *,
    exclude: Iterable[Mapping[str, Any]] = (),
    **dimensions: Iterable[Any],
) -> MatrixSpec:
    """
    matrix("rust", ["stable"])                    -> one dimension
    matrix(rust=["stable", "beta"], os=["linux"]) -> cross product
    """
    dims: Dict[str, Iterable[Any]] = {}
    if key is not None:
        if values is None:
            raise ValueError(f"matrix({key!r}) needs a list of values")
        dims[key] = values
    dims.update(dimensions)
    return MatrixSpec(dims, exclude=exclude)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    matrix: Optional[Union[MatrixSpec, Mapping[str, Sequence[Any]]]] = None,
    runs_on: str = "local",
    env: Optional[Dict[str, str]] = None,
    timeout_minutes: Optional[float] = None,
    inputs: Optional[List[str]] = None,
    cache_dirs: Optional[List[str]] = None,
    cache_keep: int = 3,
    cwd: str | None = None,  # default cwd applied to command steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [
            replace(s, cwd=cwd) if isinstance(s, CommandStep) and s.cwd is None else s
            for s in steps_final
        ]

    if matrix is not None and not isinstance(matrix, MatrixSpec):
        matrix = MatrixSpec(matrix)

    return Job(
        name=name,
        steps=steps_final,
        runs_on=runs_on,
        needs=list(needs or []),
        matrix=matrix,
        env={k: str(v) for k, v in (env or {}).items()},
        timeout_minutes=timeout_minutes,
        inputs=list(inputs or []),
        cache_dirs=list(cache_dirs or []),
        cache_keep=cache_keep,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._matrix: Optional[MatrixSpec] = None
        self._runs_on = "local"
        self._timeout: Optional[float] = None
        self._inputs: list[str] = []
        self._cache_dirs: list[str] = []
        self._cache_keep = 3

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(sh(name, run, cwd=cwd))
        return self

    def use_action(self, ref: str, name: str | None = None, **inputs: Any):
        self._steps.append(uses(ref, name=name, **inputs))
        return self

    def with_env(self, **env):
        # force values to str for stable hashing + env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_matrix(self, **dimensions: Iterable[Any]):
        self._matrix = MatrixSpec(dimensions)
        return self

    def on_runner(self, runs_on: str):
        self._runs_on = runs_on
        return self

    def timeout(self, minutes: float):
        self._timeout = minutes
        return self

    def with_inputs(self, *paths: str):
        self._inputs.extend(paths)
        return self

    def cache_dirs(self, *dirs: str, keep: int = 3):
        self._cache_dirs = list(dirs)
        self._cache_keep = keep
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return Job(
            name=self.name,
            steps=list(self._steps),
            runs_on=self._runs_on,
            needs=list(self._needs),
            matrix=self._matrix,
            env=dict(self._env),
            timeout_minutes=self._timeout,
            inputs=list(self._inputs),
            cache_dirs=list(self._cache_dirs),
            cache_keep=self._cache_keep,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Triggers / concurrency
# ---------------------------------------------------------------------

def on_push(*branches: str, ignore: Sequence[str] = ()) -> TriggerFilter:
    return TriggerFilter(EventKind.PUSH, branches=list(branches), branches_ignore=list(ignore))


def on_pull_request(*branches: str, ignore: Sequence[str] = ()) -> TriggerFilter:
    return TriggerFilter(EventKind.PULL_REQUEST, branches=list(branches), branches_ignore=list(ignore))


def concurrency(group: str = DEFAULT_GROUP_TEMPLATE, *, cancel_in_progress: bool = True) -> ConcurrencySpec:
    return ConcurrencySpec(group=group, cancel_in_progress=cancel_in_progress)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: Job,
    name: str = "",
    on: Optional[Iterable[TriggerFilter]] = None,
    concurrency: Optional[ConcurrencySpec] = None,
    env: Optional[Dict[str, str]] = None,
) -> Workflow:
    """
    Workflow definition helper.

        from ciflow import wf, job, sh, uses, on_push, on_pull_request, concurrency

        def workflow():
            return wf(
                job("build", uses("actions/checkout@v4"), sh("Build", "make")),
                name="CI",
                on=[on_push("main"), on_pull_request("main")],
                concurrency=concurrency(),
            )

    A workflow without a name is named after the file it was loaded from.
    """
    return Workflow(
        name=name,
        jobs=list(jobs),
        triggers=list(on or []),
        concurrency=concurrency,
        env={k: str(v) for k, v in (env or {}).items()},
    )


workflow = wf  # alias; do not name your own workflow() function after it if you import this
