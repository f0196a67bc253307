# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .matrix import MatrixSpec, instance_name

if TYPE_CHECKING:
    from .executor import StepContext


# Hosted-runner default; see expr.normalize_name for the accepted spellings.
DEFAULT_GROUP_TEMPLATE = "${{ github.workflow }}-${{ github.event.pull_request.number || github.ref }}"


class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"


@dataclass(frozen=True)
class RunTrigger:
    """A version-control event. Immutable; consumed once by the resolver."""
    event_kind: EventKind
    target_branch: str
    ref: Optional[str] = None          # defaults to target_branch
    pr_number: Optional[int] = None
    sha: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "event_kind", EventKind(self.event_kind))
        if self.ref is None:
            object.__setattr__(self, "ref", self.target_branch)


@dataclass(frozen=True)
class TriggerFilter:
    event_kind: EventKind
    branches: List[str] = field(default_factory=list)         # fnmatch patterns, empty = any
    branches_ignore: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        object.__setattr__(self, "event_kind", EventKind(self.event_kind))


@dataclass(frozen=True)
class ConcurrencySpec:
    group: str = DEFAULT_GROUP_TEMPLATE
    cancel_in_progress: bool = False


@dataclass(frozen=True)
class ConcurrencyGroup:
    key: str
    cancel_in_progress: bool


# ---------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """A single named unit of work inside a CI job."""
    name: str

    def execute(self, ctx: "StepContext") -> None:
        raise NotImplementedError

    def describe(self) -> str:
        return self.name


@dataclass(frozen=True)
class CommandStep(Step):
    """Inline shell command."""
    run: str
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)

    def execute(self, ctx: "StepContext") -> None:
        ctx.run_command(self)

    def describe(self) -> str:
        return self.run


@dataclass(frozen=True)
class ActionStep(Step):
    """Reusable action reference, e.g. 'actions/checkout@v4'."""
    uses: str
    with_: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def action(self) -> str:
        return self.uses.split("@", 1)[0]

    @property
    def version(self) -> str | None:
        _, sep, version = self.uses.partition("@")
        return version if sep else None

    def execute(self, ctx: "StepContext") -> None:
        ctx.run_action(self)

    def describe(self) -> str:
        return self.uses


class StepOutcome(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (StepOutcome.SUCCEEDED, StepOutcome.FAILED, StepOutcome.SKIPPED)


@dataclass
class StepRecord:
    """Outcome of one step inside one job instance."""
    name: str
    outcome: StepOutcome = StepOutcome.PENDING
    exit_code: int | None = None
    log: str = ""
    error: str | None = None
    started_at: float | None = None
    finished_at: float | None = None


# ---------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------

@dataclass
class Job:
    """
    A CI job definition: ordered steps + dependencies + matrix + cache knobs.
    Instantiated once per matrix binding for every run.
    """
    name: str
    steps: list[Step]
    runs_on: str = "local"
    needs: list[str] = field(default_factory=list)
    matrix: Optional[MatrixSpec] = None
    env: Dict[str, str] = field(default_factory=dict)
    timeout_minutes: float | None = None       # None -> settings default

    # cache
    inputs: list[str] = field(default_factory=list)
    cache_dirs: list[str] = field(default_factory=list)
    cache_keep: int = 3

    def bindings(self) -> MatrixSpec:
        return self.matrix if self.matrix is not None else MatrixSpec()


class JobOutcome(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class JobInstance:
    """One concrete instance of a Job for a single matrix binding."""
    job: Job
    binding: Dict[str, Any] = field(default_factory=dict)
    outcome: JobOutcome = JobOutcome.PENDING
    records: list[StepRecord] = field(default_factory=list)
    started_at: float | None = None
    finished_at: float | None = None

    def __post_init__(self) -> None:
        if not self.records:
            self.records = [StepRecord(name=s.name) for s in self.job.steps]

    @property
    def name(self) -> str:
        return instance_name(self.job.name, self.binding)

    @property
    def done(self) -> bool:
        return self.outcome not in (JobOutcome.PENDING, JobOutcome.RUNNING)

    @property
    def log(self) -> str:
        parts = []
        for rec in self.records:
            parts.append(f"## {rec.name} [{rec.outcome.value}]")
            if rec.log:
                parts.append(rec.log.rstrip("\n"))
            if rec.error:
                parts.append(f"error: {rec.error}")
        return "\n".join(parts)

    def mark_unstarted(self, outcome: JobOutcome) -> None:
        """Close out an instance that never ran (dependency failed or run cancelled)."""
        self.outcome = outcome
        for rec in self.records:
            if rec.outcome == StepOutcome.PENDING:
                rec.outcome = StepOutcome.SKIPPED
                if outcome == JobOutcome.CANCELLED:
                    rec.error = "run cancelled"


# ---------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------

class RunStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


@dataclass
class RunResult:
    """Aggregate of every job instance outcome of one run."""
    run_id: str
    jobs: list[JobInstance] = field(default_factory=list)
    cancelled: bool = False

    @property
    def status(self) -> RunStatus:
        if self.cancelled:
            return RunStatus.CANCELLED
        if all(j.outcome == JobOutcome.SUCCEEDED for j in self.jobs):
            return RunStatus.SUCCEEDED
        return RunStatus.FAILED

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def outcomes(self) -> Dict[str, str]:
        return {j.name: j.outcome.value for j in self.jobs}


@dataclass
class Workflow:
    name: str
    jobs: list[Job]
    triggers: list[TriggerFilter] = field(default_factory=list)   # empty = admit every event
    concurrency: Optional[ConcurrencySpec] = None
    env: Dict[str, str] = field(default_factory=dict)
    source: str | None = None

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)
