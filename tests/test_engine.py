import os

import pytest

from ciflow.dsl import concurrency, job, matrix, on_pull_request, on_push, run, sh, uses, wf
from ciflow.engine import Engine
from ciflow.errors import ConfigError
from ciflow.model import ConcurrencySpec, EventKind, JobOutcome, RunStatus, RunTrigger

posix_only = pytest.mark.skipif(os.name != "posix", reason="uses a POSIX shell")


def rust_workflow(deny_step=None, build_steps=None):
    build_steps = build_steps or [
        uses("actions/checkout@v4"),
        run('echo rustup override set "${{ matrix.rust }}"'),
        run("echo rustup component add clippy"),
        uses("Swatinem/rust-cache@v2"),
        sh("Clippy", "echo cargo clippy --verbose"),
        sh("Build", "echo cargo build --verbose"),
        sh("Run tests", "echo cargo test --verbose"),
    ]
    return wf(
        job("build", *build_steps, runs_on="ubuntu-latest", matrix=matrix("rust", ["stable"])),
        job(
            "deny",
            uses("actions/checkout@v4"),
            deny_step or uses("EmbarkStudios/cargo-deny-action@v2"),
            runs_on="ubuntu-latest",
        ),
        name="Rust",
        on=[on_push("main"), on_pull_request("main")],
        env={"CARGO_TERM_COLOR": "always"},
        concurrency=concurrency(cancel_in_progress=True),
    )


@posix_only
def test_push_to_main_runs_every_job(settings, actions, registry):
    engine = Engine(rust_workflow(), settings, actions=actions, registry=registry)
    result_run = engine.dispatch(RunTrigger(EventKind.PUSH, "main", sha="abc"))

    assert result_run is not None
    assert result_run.status == RunStatus.SUCCEEDED
    assert result_run.group_key == "Rust-main"
    assert result_run.result.outcomes() == {"build (stable)": "succeeded", "deny": "succeeded"}

    build = next(i for i in result_run.instances if i.job.name == "build")
    assert "rustup override set stable" in build.records[1].log
    assert registry.active("Rust-main") is None


def test_push_to_other_branch_creates_no_run(settings, actions, registry):
    engine = Engine(rust_workflow(), settings, actions=actions, registry=registry)
    assert engine.dispatch(RunTrigger(EventKind.PUSH, "feature")) is None
    assert engine.runs() == []


def test_new_event_for_same_pull_request_cancels_previous_run(settings, actions, registry, gate):
    workflow = rust_workflow(build_steps=[uses("test/block")], deny_step=uses("test/block"))
    engine = Engine(workflow, settings, actions=actions, registry=registry)

    first = engine.submit(RunTrigger(EventKind.PULL_REQUEST, "main", pr_number=42, sha="aaa"))
    assert gate.wait_entered(2)
    second = engine.submit(RunTrigger(EventKind.PULL_REQUEST, "main", pr_number=42, sha="bbb"))

    assert first.wait(10)
    assert first.status == RunStatus.CANCELLED
    assert first.group_key == second.group_key == "Rust-42"
    assert {i.outcome for i in first.instances} == {JobOutcome.CANCELLED}

    assert gate.wait_entered(4)
    gate.opened.set()
    assert second.wait(10)
    assert second.status == RunStatus.SUCCEEDED


def test_other_pull_requests_are_not_cancelled(settings, actions, registry, gate):
    workflow = rust_workflow(build_steps=[uses("test/block")], deny_step=uses("test/block"))
    engine = Engine(workflow, settings, actions=actions, registry=registry)

    a = engine.submit(RunTrigger(EventKind.PULL_REQUEST, "main", pr_number=1))
    b = engine.submit(RunTrigger(EventKind.PULL_REQUEST, "main", pr_number=2))
    assert gate.wait_entered(4)
    gate.opened.set()

    assert a.wait(10) and b.wait(10)
    assert a.status == RunStatus.SUCCEEDED
    assert b.status == RunStatus.SUCCEEDED


@posix_only
def test_failing_job_fails_run_and_skips_dependents(settings, actions, registry):
    workflow = wf(
        job("lint", sh("Clippy", "echo 'warning: unused variable'; exit 101")),
        job("compile", sh("Build", "true"), needs=["lint"]),
        job("test", sh("Run tests", "true"), needs=["compile"]),
        job("deny", uses("EmbarkStudios/cargo-deny-action@v2")),
        name="Rust",
    )
    engine = Engine(workflow, settings, actions=actions, registry=registry)
    done = engine.dispatch(RunTrigger(EventKind.PUSH, "main"))

    assert done.status == RunStatus.FAILED
    assert done.result.outcomes() == {
        "lint": "failed",
        "compile": "skipped",
        "test": "skipped",
        "deny": "succeeded",
    }
    lint = done.instances[0]
    assert lint.records[0].exit_code == 101
    assert "unused variable" in lint.log


def test_queue_mode_runs_one_after_another(settings, actions, registry, gate):
    workflow = wf(
        job("deploy", uses("test/block")),
        name="Deploy",
        concurrency=ConcurrencySpec(group="deploy-${{ github.ref }}", cancel_in_progress=False),
    )
    engine = Engine(workflow, settings, actions=actions, registry=registry)

    first = engine.submit(RunTrigger(EventKind.PUSH, "main"))
    assert gate.wait_entered(1)
    second = engine.submit(RunTrigger(EventKind.PUSH, "main"))

    assert not second.wait(0.3)
    assert gate.entered == 1

    gate.opened.set()
    assert first.wait(10) and second.wait(10)
    assert first.status == RunStatus.SUCCEEDED
    assert second.status == RunStatus.SUCCEEDED
    assert gate.entered == 2


def test_cancel_by_id(settings, actions, registry, gate):
    engine = Engine(wf(job("a", uses("test/block")), name="CI"), settings, actions=actions, registry=registry)
    r = engine.submit(RunTrigger(EventKind.PUSH, "main"))
    assert gate.wait_entered(1)

    assert engine.cancel(r.run_id, "stop")
    assert r.wait(10)
    assert r.status == RunStatus.CANCELLED
    assert r.cancel_reason == "stop"
    assert not engine.cancel(r.run_id)


def test_done_callbacks_run_before_wait_returns(settings, actions, registry, gate):
    engine = Engine(wf(job("a", uses("test/block")), name="CI"), settings, actions=actions, registry=registry)
    seen = []
    r = engine.submit(RunTrigger(EventKind.PUSH, "main"), on_done=lambda run: seen.append(run.status))
    gate.opened.set()
    assert r.wait(10)
    assert seen == [RunStatus.SUCCEEDED]


def test_invalid_workflow_is_rejected_at_construction(settings):
    with pytest.raises(ConfigError):
        Engine(wf(job("a", sh("a", "true"), needs=["b"]), name="CI"), settings)


@posix_only
def test_lint_step_failure_skips_rest_of_build_but_not_deny(settings, actions, registry):
    workflow = rust_workflow(
        build_steps=[
            uses("actions/checkout@v4"),
            sh("Clippy", "echo 'error: this looks like a bug' >&2; exit 101"),
            sh("Build", "echo cargo build"),
            sh("Run tests", "echo cargo test"),
        ]
    )
    engine = Engine(workflow, settings, actions=actions, registry=registry)
    done = engine.dispatch(RunTrigger(EventKind.PUSH, "main"))

    assert done.status == RunStatus.FAILED
    assert done.result.outcomes() == {"build (stable)": "failed", "deny": "succeeded"}
    build = done.instances[0]
    assert [r.outcome.value for r in build.records] == ["succeeded", "failed", "skipped", "skipped"]
    assert "this looks like a bug" in build.records[1].log


def test_older_event_started_late_does_not_cancel_newer_run(settings, actions, registry, gate):
    workflow = rust_workflow(build_steps=[uses("test/block")], deny_step=uses("test/block"))
    engine = Engine(workflow, settings, actions=actions, registry=registry)

    first = engine.create_run(RunTrigger(EventKind.PULL_REQUEST, "main", pr_number=42, sha="aaa"))
    second = engine.create_run(RunTrigger(EventKind.PULL_REQUEST, "main", pr_number=42, sha="bbb"))
    engine.start(second)
    assert gate.wait_entered(1)
    engine.start(first)

    assert first.wait(10)
    assert first.status == RunStatus.CANCELLED
    assert first.cancel_reason.startswith(f"superseded by {second.run_id}")
    assert {i.outcome for i in first.instances} == {JobOutcome.CANCELLED}

    gate.opened.set()
    assert second.wait(10)
    assert second.status == RunStatus.SUCCEEDED


def test_finished_runs_are_not_kept_by_the_engine(settings, actions, registry, gate):
    engine = Engine(wf(job("a", uses("test/block")), name="CI"), settings, actions=actions, registry=registry)
    r = engine.submit(RunTrigger(EventKind.PUSH, "main"))
    assert gate.wait_entered(1)
    assert engine.get_run(r.run_id) is r
    assert engine.runs() == [r]

    gate.opened.set()
    assert r.wait(10)
    assert engine.get_run(r.run_id) is None
    assert engine.runs() == []

    for _ in range(5):
        assert engine.dispatch(RunTrigger(EventKind.PUSH, "main")).status == RunStatus.SUCCEEDED
    assert engine.runs() == []
