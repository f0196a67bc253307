import pytest

from ciflow.dsl import concurrency, job, on_pull_request, on_push, sh, wf
from ciflow.errors import ConfigError
from ciflow.model import ConcurrencySpec, EventKind, RunTrigger
from ciflow.trigger import TriggerResolver


def _workflow(**kwargs):
    kwargs.setdefault("name", "Rust")
    kwargs.setdefault("on", [on_push("main"), on_pull_request("main")])
    return wf(job("build", sh("Build", "true")), **kwargs)


def test_push_to_filtered_branch_is_admitted():
    decision = TriggerResolver(_workflow()).resolve(RunTrigger(EventKind.PUSH, "main"))
    assert decision.admitted
    assert decision.group is None


def test_push_to_other_branch_is_not_admitted():
    decision = TriggerResolver(_workflow()).resolve(RunTrigger(EventKind.PUSH, "feature/x"))
    assert not decision.admitted
    assert "feature/x" in decision.reason


def test_event_kind_must_match():
    resolver = TriggerResolver(_workflow(on=[on_push("main")]))
    assert not resolver.matches(RunTrigger(EventKind.PULL_REQUEST, "main", pr_number=1))


def test_branch_globs_and_ignores():
    resolver = TriggerResolver(_workflow(on=[on_push("release/*", ignore=["release/old-*"])]))
    assert resolver.matches(RunTrigger("push", "release/1.0"))
    assert not resolver.matches(RunTrigger("push", "release/old-1"))
    assert not resolver.matches(RunTrigger("push", "main"))


def test_no_filters_admits_everything():
    resolver = TriggerResolver(_workflow(on=[]))
    assert resolver.matches(RunTrigger("push", "anything"))


def test_pull_request_group_uses_pr_number():
    resolver = TriggerResolver(_workflow(concurrency=concurrency()))
    decision = resolver.resolve(RunTrigger(EventKind.PULL_REQUEST, "main", pr_number=42))
    assert decision.group.key == "Rust-42"
    assert decision.group.cancel_in_progress


def test_push_group_falls_back_to_ref():
    resolver = TriggerResolver(_workflow(concurrency=concurrency()))
    assert resolver.group_for(RunTrigger(EventKind.PUSH, "main")).key == "Rust-main"
    assert resolver.group_for(RunTrigger(EventKind.PUSH, "main", ref="refs/heads/main")).key == "Rust-refs/heads/main"


def test_same_pr_maps_to_same_group():
    resolver = TriggerResolver(_workflow(concurrency=concurrency()))
    a = resolver.group_for(RunTrigger("pull_request", "main", pr_number=7, sha="aaa"))
    b = resolver.group_for(RunTrigger("pull_request", "main", pr_number=7, sha="bbb"))
    assert a == b


def test_unknown_group_names_are_rejected_up_front():
    with pytest.raises(ConfigError, match="unknown names"):
        TriggerResolver(_workflow(concurrency=ConcurrencySpec(group="${{ github.actor }}")))
