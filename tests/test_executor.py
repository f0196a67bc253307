import dataclasses
import os
import threading
import time

import pytest

from ciflow.cache import CacheStore
from ciflow.dsl import job, matrix, sh, uses, wf
from ciflow.executor import RunContext, StepExecutor
from ciflow.model import EventKind, JobInstance, JobOutcome, RunTrigger, StepOutcome

posix_only = pytest.mark.skipif(os.name != "posix", reason="uses a POSIX shell")


def _run_ctx(settings, actions, workflow, run_id="run1"):
    return RunContext(
        run_id=run_id,
        workflow=workflow,
        trigger=RunTrigger(EventKind.PUSH, "main", sha="abc123"),
        settings=settings,
        actions=actions,
        cache=CacheStore(settings.cache_root),
    )


def _execute(settings, actions, the_job, binding=None, env=None):
    workflow = wf(the_job, name="CI", env=env)
    run = _run_ctx(settings, actions, workflow)
    inst = JobInstance(job=the_job, binding=binding or {})
    StepExecutor(inst, run).execute()
    return inst


@posix_only
def test_steps_run_in_order_and_succeed(settings, actions):
    inst = _execute(
        settings,
        actions,
        job("build", sh("one", "echo first > order.txt"), sh("two", "echo second >> order.txt && cat order.txt")),
    )
    assert inst.outcome == JobOutcome.SUCCEEDED
    assert [r.outcome for r in inst.records] == [StepOutcome.SUCCEEDED, StepOutcome.SUCCEEDED]
    assert inst.records[1].log.split() == ["first", "second"]


@posix_only
def test_first_failure_skips_the_rest(settings, actions):
    inst = _execute(
        settings,
        actions,
        job("lint", sh("ok", "true"), sh("boom", "echo broken; exit 3"), sh("never", "echo nope")),
    )
    assert inst.outcome == JobOutcome.FAILED
    assert [r.outcome for r in inst.records] == [StepOutcome.SUCCEEDED, StepOutcome.FAILED, StepOutcome.SKIPPED]
    assert inst.records[1].exit_code == 3
    assert "broken" in inst.records[1].log
    assert inst.records[2].log == ""


@posix_only
def test_environment_layers_and_matrix_rendering(settings, actions):
    the_job = job(
        "build",
        sh("show", 'echo "$LEVEL $TOOLCHAIN ${{ matrix.rust }} $CI $CIFLOW_EVENT"', env={"LEVEL": "step"}),
        env={"LEVEL": "job", "TOOLCHAIN": "${{ matrix.rust }}"},
        matrix=matrix("rust", ["stable"]),
    )
    inst = _execute(settings, actions, the_job, binding={"rust": "stable"}, env={"LEVEL": "workflow"})
    assert inst.outcome == JobOutcome.SUCCEEDED
    assert inst.records[0].log.strip() == "step stable stable true push"


def test_unknown_action_fails_the_step(settings, actions):
    inst = _execute(settings, actions, job("deploy", uses("acme/deploy@v1"), sh("after", "true")))
    assert inst.outcome == JobOutcome.FAILED
    assert inst.records[0].outcome == StepOutcome.FAILED
    assert "unknown action" in inst.records[0].error
    assert inst.records[1].outcome == StepOutcome.SKIPPED


def test_raising_action_fails_the_step(settings, actions):
    def explode(ctx, step):
        raise RuntimeError("kaboom")

    actions.register("test/explode", explode)
    inst = _execute(settings, actions, job("x", uses("test/explode")))
    assert inst.outcome == JobOutcome.FAILED
    assert "RuntimeError: kaboom" in inst.records[0].error


def test_checkout_copies_source_tree(settings, actions):
    seen = {}

    def inspect(ctx, step):
        seen["files"] = sorted(p.name for p in ctx.workspace.iterdir())

    actions.register("test/inspect", inspect)
    inst = _execute(settings, actions, job("build", uses("actions/checkout@v4"), uses("test/inspect")))
    assert inst.outcome == JobOutcome.SUCCEEDED
    assert "Cargo.toml" in seen["files"]
    assert "src" in seen["files"]


@posix_only
def test_workspace_is_fresh_per_instance(settings, actions):
    the_job = job("build", sh("check", "test ! -e leftover && touch leftover"))
    assert _execute(settings, actions, the_job).outcome == JobOutcome.SUCCEEDED
    assert _execute(settings, actions, the_job).outcome == JobOutcome.SUCCEEDED


@posix_only
def test_timeout_fails_the_running_step(settings, actions):
    the_job = job("slow", sh("sleep", "sleep 30"), sh("after", "true"), timeout_minutes=0.005)
    started = time.monotonic()
    inst = _execute(settings, actions, the_job)
    assert time.monotonic() - started < 20
    assert inst.outcome == JobOutcome.FAILED
    assert "timed out" in inst.records[0].error
    assert inst.records[1].outcome == StepOutcome.SKIPPED


@posix_only
def test_cancellation_stops_the_running_command(settings, actions):
    the_job = job("slow", sh("sleep", "sleep 30"), sh("after", "true"))
    workflow = wf(the_job, name="CI")
    run = _run_ctx(settings, actions, workflow)
    inst = JobInstance(job=the_job)

    t = threading.Thread(target=StepExecutor(inst, run).execute)
    t.start()
    time.sleep(0.3)
    run.cancel_event.set()
    t.join(15)

    assert not t.is_alive()
    assert inst.outcome == JobOutcome.CANCELLED
    assert inst.records[0].outcome == StepOutcome.FAILED
    assert "cancelled" in inst.records[0].error
    assert inst.records[1].outcome == StepOutcome.SKIPPED


def test_action_steps_see_their_own_env(settings, actions):
    seen = {}

    def show_env(ctx, step):
        env = ctx.environment()
        seen["target"] = env["DEPLOY_TARGET"]
        seen["region"] = env["REGION"]

    actions.register("test/env", show_env)
    the_job = job(
        "deploy",
        uses("test/env", env={"DEPLOY_TARGET": "staging"}),
        env={"DEPLOY_TARGET": "prod", "REGION": "eu"},
    )
    inst = _execute(settings, actions, the_job)
    assert inst.outcome == JobOutcome.SUCCEEDED
    assert seen == {"target": "staging", "region": "eu"}


def test_cancelled_run_skips_unstarted_steps_with_a_reason(settings, actions):
    the_job = job("build", sh("one", "true"), sh("two", "true"))
    run = _run_ctx(settings, actions, wf(the_job, name="CI"))
    run.cancel_event.set()
    inst = JobInstance(job=the_job)
    StepExecutor(inst, run).execute()

    assert inst.outcome == JobOutcome.CANCELLED
    assert [r.outcome for r in inst.records] == [StepOutcome.SKIPPED, StepOutcome.SKIPPED]
    assert [r.error for r in inst.records] == ["run cancelled", "run cancelled"]


def test_steps_skipped_after_a_failure_carry_no_cancel_reason(settings, actions):
    inst = _execute(settings, actions, job("deploy", uses("acme/deploy@v1"), sh("after", "true")))
    assert inst.records[1].outcome == StepOutcome.SKIPPED
    assert inst.records[1].error is None


def test_unprovisionable_workspace_fails_the_instance(tmp_path, settings, actions):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    settings = dataclasses.replace(settings, work_dir=blocker)

    inst = _execute(settings, actions, job("build", sh("one", "true"), sh("two", "true")))
    assert inst.outcome == JobOutcome.FAILED
    assert inst.records[0].outcome == StepOutcome.FAILED
    assert inst.records[0].error.startswith("provision: workspace provisioning failed")
    assert "job=build" in inst.records[0].error
    assert inst.records[1].outcome == StepOutcome.SKIPPED
