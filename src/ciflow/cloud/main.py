from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Optional

import sqlalchemy as sa
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import selectinload, sessionmaker

from ciflow.engine import Engine, Run
from ciflow.loader import discover_workflow, load_workflow
from ciflow.model import EventKind, RunTrigger
from ciflow.settings import Settings

from .db import init_db, make_engine, make_session_factory, session_scope
from .models import JobRow, RunRow

# -------------------- Schemas --------------------

class EventRequest(BaseModel):
    event_kind: EventKind
    target_branch: str
    ref: Optional[str] = None
    pr_number: Optional[int] = None
    sha: Optional[str] = None


class EventResponse(BaseModel):
    admitted: bool
    reason: str
    run_id: Optional[str] = None
    group: Optional[str] = None


class StepResponse(BaseModel):
    name: str
    outcome: str
    exit_code: Optional[int] = None
    error: Optional[str] = None


class JobResponse(BaseModel):
    name: str
    outcome: str
    binding: dict[str, Any] = Field(default_factory=dict)
    steps: list[StepResponse] = Field(default_factory=list)
    log: Optional[str] = None


class RunSummary(BaseModel):
    id: str
    workflow: str
    event_kind: str
    target_branch: str
    ref: str
    pr_number: Optional[int] = None
    group: Optional[str] = None
    status: str
    cancel_reason: Optional[str] = None
    created_at: datetime
    finished_at: Optional[datetime] = None


class RunResponse(RunSummary):
    jobs: list[JobResponse] = Field(default_factory=list)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value is not None else None


# -------------------- Persistence --------------------

class RunStore:
    """Run rows written at admission and again when the run completes."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory
        # one session at a time; in-memory SQLite shares a single connection
        self._lock = threading.Lock()

    def insert(self, run: Run) -> None:
        with self._lock, session_scope(self.session_factory) as s:
            s.add(
                RunRow(
                    id=run.run_id,
                    workflow=run.workflow,
                    event_kind=run.trigger.event_kind.value,
                    target_branch=run.trigger.target_branch,
                    ref=run.trigger.ref,
                    pr_number=run.trigger.pr_number,
                    sha=run.trigger.sha,
                    group_key=run.group_key,
                    status=run.status.value,
                    created_at=_ts(run.created_at),
                )
            )

    def complete(self, run: Run) -> None:
        with self._lock, session_scope(self.session_factory) as s:
            row = s.get(RunRow, run.run_id)
            if row is None:
                return
            row.status = run.status.value
            row.cancel_reason = run.cancel_reason
            row.finished_at = _ts(run.finished_at) or now_utc()
            row.jobs = [
                JobRow(
                    name=inst.name,
                    outcome=inst.outcome.value,
                    binding=dict(inst.binding),
                    steps=[
                        {"name": r.name, "outcome": r.outcome.value, "exit_code": r.exit_code, "error": r.error}
                        for r in inst.records
                    ],
                    log=inst.log or None,
                )
                for inst in run.instances
            ]

    def recent(self) -> list[RunRow]:
        with self._lock, session_scope(self.session_factory) as s:
            q = sa.select(RunRow).order_by(RunRow.created_at.desc())
            return list(s.scalars(q))

    def get(self, run_id: str) -> Optional[RunRow]:
        with self._lock, session_scope(self.session_factory) as s:
            q = sa.select(RunRow).options(selectinload(RunRow.jobs)).where(RunRow.id == run_id)
            return s.scalars(q).first()


def _summary(row: RunRow, live: Optional[Run]) -> dict[str, Any]:
    data = {
        "id": row.id,
        "workflow": row.workflow,
        "event_kind": row.event_kind,
        "target_branch": row.target_branch,
        "ref": row.ref,
        "pr_number": row.pr_number,
        "group": row.group_key,
        "status": row.status,
        "cancel_reason": row.cancel_reason,
        "created_at": row.created_at,
        "finished_at": row.finished_at,
    }
    if live is not None:
        # the engine is ahead of the table while a run is still going
        data["status"] = live.status.value
        data["cancel_reason"] = live.cancel_reason
        data["finished_at"] = _ts(live.finished_at)
    return data


def _live_jobs(run: Run) -> list[JobResponse]:
    return [
        JobResponse(
            name=inst.name,
            outcome=inst.outcome.value,
            binding=dict(inst.binding),
            steps=[
                StepResponse(name=r.name, outcome=r.outcome.value, exit_code=r.exit_code, error=r.error)
                for r in inst.records
            ],
            log=inst.log or None,
        )
        for inst in run.instances
    ]


# -------------------- App --------------------

def create_app(ci: Engine, session_factory: sessionmaker) -> FastAPI:
    app = FastAPI(title="ciflow control plane")
    store = RunStore(session_factory)
    app.state.ci = ci
    app.state.store = store

    @app.post("/events", response_model=EventResponse, status_code=202)
    def post_event(req: EventRequest):
        trigger = RunTrigger(
            event_kind=req.event_kind,
            target_branch=req.target_branch,
            ref=req.ref,
            pr_number=req.pr_number,
            sha=req.sha,
        )
        decision = ci.resolve(trigger)
        if not decision.admitted:
            return EventResponse(admitted=False, reason=decision.reason)

        run = ci.create_run(trigger)
        store.insert(run)
        run.add_done_callback(store.complete)
        ci.start(run)
        return EventResponse(admitted=True, reason=decision.reason, run_id=run.run_id, group=run.group_key)

    @app.get("/runs", response_model=list[RunSummary])
    def list_runs():
        return [RunSummary(**_summary(row, ci.get_run(row.id))) for row in store.recent()]

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        row = store.get(run_id)
        if row is None:
            raise HTTPException(status_code=404, detail="Run not found")

        live = ci.get_run(run_id)
        if live is not None and not live.done:
            jobs = _live_jobs(live)
        else:
            live = None
            jobs = [
                JobResponse(
                    name=j.name,
                    outcome=j.outcome,
                    binding=j.binding or {},
                    steps=[StepResponse(**s) for s in j.steps or []],
                    log=j.log,
                )
                for j in row.jobs
            ]
        return RunResponse(**_summary(row, live), jobs=jobs)

    @app.post("/runs/{run_id}/cancel", response_model=RunSummary, status_code=202)
    def cancel_run(run_id: str):
        row = store.get(run_id)
        if row is None:
            raise HTTPException(status_code=404, detail="Run not found")

        live = ci.get_run(run_id)
        if live is None or not live.cancel("cancelled via API"):
            status = live.status.value if live is not None else row.status
            raise HTTPException(status_code=409, detail=f"Run already {status}")
        return RunSummary(**_summary(row, live))

    return app


def build_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    App for `uvicorn --factory ciflow.cloud.main:build_app`.

    The workflow comes from CIFLOW_WORKFLOW (or discovery under
    CIFLOW_REPO_ROOT); runs are stored in CIFLOW_DATABASE_URL.
    """
    settings = settings or Settings.from_env()
    workflow = load_workflow(discover_workflow(settings.workflow, root=settings.repo_root))

    settings.home.mkdir(parents=True, exist_ok=True)
    db_engine = make_engine(settings.db_url)
    init_db(db_engine)
    return create_app(Engine(workflow, settings), make_session_factory(db_engine))
