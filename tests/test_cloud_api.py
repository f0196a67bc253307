import time

import pytest
from fastapi.testclient import TestClient

from ciflow.cloud.db import init_db, make_engine, make_session_factory
from ciflow.cloud.main import build_app, create_app
from ciflow.dsl import concurrency, job, on_pull_request, on_push, uses, wf
from ciflow.engine import Engine


@pytest.fixture()
def ci(settings, actions, registry):
    workflow = wf(
        job("build", uses("test/block")),
        job("deny", uses("EmbarkStudios/cargo-deny-action@v2")),
        name="Rust",
        on=[on_push("main"), on_pull_request("main")],
        concurrency=concurrency(),
    )
    return Engine(workflow, settings, actions=actions, registry=registry)


@pytest.fixture()
def client(ci):
    db = make_engine("sqlite+pysqlite:///:memory:")
    init_db(db)
    app = create_app(ci, make_session_factory(db))
    with TestClient(app) as c:
        yield c
    db.dispose()


def _wait_status(client, run_id, statuses, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/runs/{run_id}").json()
        if body["status"] in statuses:
            return body
        time.sleep(0.05)
    raise AssertionError(f"run {run_id} never reached {statuses}")


def test_event_starts_a_run_and_completion_is_persisted(client, ci, gate):
    resp = client.post("/events", json={"event_kind": "push", "target_branch": "main", "sha": "abc"})
    assert resp.status_code == 202
    body = resp.json()
    assert body["admitted"] is True
    assert body["group"] == "Rust-main"
    run_id = body["run_id"]

    assert gate.wait_entered(1)
    running = client.get(f"/runs/{run_id}").json()
    assert running["status"] == "in_progress"

    gate.opened.set()
    _wait_status(client, run_id, {"succeeded"})

    done = client.get(f"/runs/{run_id}").json()
    assert done["status"] == "succeeded"
    assert done["finished_at"] is not None
    assert {j["name"]: j["outcome"] for j in done["jobs"]} == {"build": "succeeded", "deny": "succeeded"}
    assert "advisories ok" in next(j for j in done["jobs"] if j["name"] == "deny")["log"]


def test_event_that_matches_no_filter_is_not_admitted(client):
    resp = client.post("/events", json={"event_kind": "push", "target_branch": "feature"})
    assert resp.status_code == 202
    assert resp.json() == {"admitted": False, "reason": resp.json()["reason"], "run_id": None, "group": None}
    assert client.get("/runs").json() == []


def test_invalid_event_kind_is_rejected(client):
    resp = client.post("/events", json={"event_kind": "tag", "target_branch": "main"})
    assert resp.status_code == 422


def test_second_event_for_same_pull_request_cancels_first(client, gate):
    first = client.post("/events", json={"event_kind": "pull_request", "target_branch": "main", "pr_number": 42})
    first_id = first.json()["run_id"]
    assert gate.wait_entered(1)

    second = client.post("/events", json={"event_kind": "pull_request", "target_branch": "main", "pr_number": 42})
    second_id = second.json()["run_id"]
    assert second.json()["group"] == "Rust-42"

    cancelled = _wait_status(client, first_id, {"cancelled"})
    assert next(j for j in cancelled["jobs"] if j["name"] == "build")["outcome"] == "cancelled"

    gate.opened.set()
    assert _wait_status(client, second_id, {"succeeded"})["status"] == "succeeded"

    listed = {r["id"]: r["status"] for r in client.get("/runs").json()}
    assert listed == {first_id: "cancelled", second_id: "succeeded"}


def test_cancel_endpoint(client, ci, gate):
    run_id = client.post("/events", json={"event_kind": "push", "target_branch": "main"}).json()["run_id"]
    assert gate.wait_entered(1)

    resp = client.post(f"/runs/{run_id}/cancel")
    assert resp.status_code == 202
    _wait_status(client, run_id, {"cancelled"})

    body = client.get(f"/runs/{run_id}").json()
    assert body["status"] == "cancelled"
    assert body["cancel_reason"] == "cancelled via API"

    assert client.post(f"/runs/{run_id}/cancel").status_code == 409


def test_unknown_run_is_404(client):
    assert client.get("/runs/nope").status_code == 404
    assert client.post("/runs/nope/cancel").status_code == 404


def test_build_app_from_settings(tmp_path, settings, repo):
    (repo / "ciflow_workflow.py").write_text(
        "from ciflow import job, sh, wf\n"
        "def workflow():\n"
        "    return wf(job('a', sh('a', 'true')), name='Local')\n",
        encoding="utf-8",
    )
    app = build_app(settings)
    with TestClient(app) as c:
        assert c.get("/runs").json() == []
    assert app.state.ci.workflow.name == "Local"
    assert (settings.home / "runs.db").exists()
