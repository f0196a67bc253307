from .engine import Engine, Run
from .errors import ActionNotFound, CIError, ConfigError, StepFailure
from .loader import load_workflow
from .model import EventKind, Job, RunStatus, RunTrigger, Step, Workflow
from .settings import Settings
# Imported last: the dsl helpers `concurrency` and `matrix` share names with
# submodules, and loading those submodules would otherwise rebind the attributes.
from .dsl import (
    JobBuilder,
    build,
    concurrency,
    job,
    matrix,
    on_pull_request,
    on_push,
    run,
    sh,
    uses,
    wf,
    workflow,
)

__all__ = [
    "ActionNotFound",
    "CIError",
    "ConfigError",
    "Engine",
    "EventKind",
    "Job",
    "JobBuilder",
    "Run",
    "RunStatus",
    "RunTrigger",
    "Settings",
    "Step",
    "StepFailure",
    "Workflow",
    "build",
    "concurrency",
    "job",
    "load_workflow",
    "matrix",
    "on_pull_request",
    "on_push",
    "run",
    "sh",
    "uses",
    "wf",
    "workflow",
]
