# trigger.py
from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any, Dict, Optional

from .errors import ConfigError
from .expr import names_in, render
from .model import ConcurrencyGroup, RunTrigger, TriggerFilter, Workflow

# Names a concurrency group template may reference.
GROUP_CONTEXT_NAMES = frozenset(
    {"workflow", "ref", "ref_name", "event_name", "sha", "pull_request.number"}
)


@dataclass(frozen=True)
class TriggerDecision:
    """
    Result of resolving one trigger.

    A mismatch is not an error: admitted=False, reason says why, nothing runs.
    """
    admitted: bool
    reason: str
    group: Optional[ConcurrencyGroup] = None


def filter_matches(flt: TriggerFilter, trigger: RunTrigger) -> bool:
    if flt.event_kind != trigger.event_kind:
        return False
    branch = trigger.target_branch
    if flt.branches and not any(fnmatchcase(branch, p) for p in flt.branches):
        return False
    if any(fnmatchcase(branch, p) for p in flt.branches_ignore):
        return False
    return True


def group_context(workflow: Workflow, trigger: RunTrigger) -> Dict[str, Any]:
    return {
        "workflow": workflow.name,
        "ref": trigger.ref,
        "ref_name": trigger.ref,
        "event_name": trigger.event_kind.value,
        "sha": trigger.sha or "",
        "pull_request.number": trigger.pr_number,
    }


def validate_group_template(template: str) -> None:
    unknown = sorted({n for n in names_in(template) if n not in GROUP_CONTEXT_NAMES})
    if unknown:
        raise ConfigError(
            f"Concurrency group '{template}' references unknown names: {unknown}. "
            f"Known names: {sorted(GROUP_CONTEXT_NAMES)}"
        )


class TriggerResolver:
    """Decides whether a trigger starts a run and derives its concurrency group."""

    def __init__(self, workflow: Workflow):
        self.workflow = workflow
        if workflow.concurrency is not None:
            validate_group_template(workflow.concurrency.group)

    def matches(self, trigger: RunTrigger) -> bool:
        # No declared filters: every event starts a run.
        if not self.workflow.triggers:
            return True
        return any(filter_matches(f, trigger) for f in self.workflow.triggers)

    def group_for(self, trigger: RunTrigger) -> Optional[ConcurrencyGroup]:
        spec = self.workflow.concurrency
        if spec is None:
            return None
        key = render(spec.group, group_context(self.workflow, trigger))
        return ConcurrencyGroup(key=key, cancel_in_progress=spec.cancel_in_progress)

    def resolve(self, trigger: RunTrigger) -> TriggerDecision:
        if not self.matches(trigger):
            return TriggerDecision(
                admitted=False,
                reason=(
                    f"{trigger.event_kind.value} to '{trigger.target_branch}' "
                    f"does not match the filters of workflow '{self.workflow.name}'"
                ),
            )
        return TriggerDecision(
            admitted=True,
            reason=f"{trigger.event_kind.value} to '{trigger.target_branch}'",
            group=self.group_for(trigger),
        )
