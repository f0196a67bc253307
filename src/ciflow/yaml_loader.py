# yaml_loader.py
# Hosted-runner style workflow files:
#
#   name: Rust
#   on:
#     push:
#       branches: ["main"]
#   concurrency:
#     group: ${{ github.workflow }}-${{ github.event.pull_request.number || github.ref }}
#     cancel-in-progress: true
#   jobs:
#     build:
#       runs-on: ubuntu-latest
#       strategy:
#         matrix:
#           rust: ["stable"]
#       steps:
#         - uses: actions/checkout@v4
#         - run: cargo build
from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError
from .matrix import MatrixSpec
from .model import (
    ActionStep,
    CommandStep,
    ConcurrencySpec,
    EventKind,
    Job,
    Step,
    TriggerFilter,
    Workflow,
)

SUPPORTED_EVENTS = {e.value for e in EventKind}


def _str_list(value: Any, *, where: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(v) for v in value]
    raise ConfigError(f"{where} must be a string or a list, got {type(value).__name__}")


def _str_map(value: Any, *, where: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{where} must be a mapping")
    return {str(k): "" if v is None else str(v).lower() if isinstance(v, bool) else str(v) for k, v in value.items()}


def _parse_triggers(raw: Any) -> List[TriggerFilter]:
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = [raw]
    if isinstance(raw, list):
        raw = {str(e): None for e in raw}
    if not isinstance(raw, Mapping):
        raise ConfigError("'on' must be an event name, a list or a mapping")

    triggers: List[TriggerFilter] = []
    for event, cfg in raw.items():
        if event not in SUPPORTED_EVENTS:
            # workflow_dispatch, schedule, ... can never reach this engine
            continue
        cfg = cfg or {}
        if not isinstance(cfg, Mapping):
            raise ConfigError(f"on.{event} must be a mapping")
        triggers.append(
            TriggerFilter(
                EventKind(event),
                branches=_str_list(cfg.get("branches"), where=f"on.{event}.branches"),
                branches_ignore=_str_list(cfg.get("branches-ignore"), where=f"on.{event}.branches-ignore"),
            )
        )
    return triggers


def _parse_concurrency(raw: Any) -> Optional[ConcurrencySpec]:
    if raw is None:
        return None
    if isinstance(raw, str):
        return ConcurrencySpec(group=raw, cancel_in_progress=False)
    if not isinstance(raw, Mapping) or "group" not in raw:
        raise ConfigError("concurrency must be a string or a mapping with 'group'")
    return ConcurrencySpec(
        group=str(raw["group"]),
        cancel_in_progress=bool(raw.get("cancel-in-progress", False)),
    )


def _parse_matrix(raw: Any, *, job_id: str) -> Optional[MatrixSpec]:
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise ConfigError(f"jobs.{job_id}.strategy.matrix must be a mapping")
    if "include" in raw:
        raise ConfigError(f"jobs.{job_id}.strategy.matrix.include is not supported")
    exclude = raw.get("exclude") or []
    dims = {k: v for k, v in raw.items() if k != "exclude"}
    return MatrixSpec(dims, exclude=exclude)


def _parse_step(raw: Any, *, job_id: str, index: int) -> Step:
    where = f"jobs.{job_id}.steps[{index}]"
    if not isinstance(raw, Mapping):
        raise ConfigError(f"{where} must be a mapping")
    has_run = "run" in raw
    has_uses = "uses" in raw
    if has_run == has_uses:
        raise ConfigError(f"{where} needs exactly one of 'run' or 'uses'")

    env = _str_map(raw.get("env"), where=f"{where}.env")
    if has_run:
        cmd = str(raw["run"])
        name = raw.get("name") or f"Run {cmd.strip().splitlines()[0] if cmd.strip() else ''}".strip()
        return CommandStep(name=str(name), run=cmd, cwd=raw.get("working-directory"), env=env)

    ref = str(raw["uses"])
    with_ = raw.get("with") or {}
    if not isinstance(with_, Mapping):
        raise ConfigError(f"{where}.with must be a mapping")
    return ActionStep(name=str(raw.get("name") or ref), uses=ref, with_=dict(with_), env=env)


def _parse_job(job_id: str, raw: Any) -> Job:
    if not isinstance(raw, Mapping):
        raise ConfigError(f"jobs.{job_id} must be a mapping")
    steps_raw = raw.get("steps") or []
    if not isinstance(steps_raw, list) or not steps_raw:
        raise ConfigError(f"jobs.{job_id} must define a non-empty 'steps' list")

    strategy = raw.get("strategy") or {}
    timeout = raw.get("timeout-minutes")
    return Job(
        name=str(job_id),
        steps=[_parse_step(s, job_id=job_id, index=i) for i, s in enumerate(steps_raw)],
        runs_on=str(raw.get("runs-on", "local")),
        needs=_str_list(raw.get("needs"), where=f"jobs.{job_id}.needs"),
        matrix=_parse_matrix(strategy.get("matrix"), job_id=job_id),
        env=_str_map(raw.get("env"), where=f"jobs.{job_id}.env"),
        timeout_minutes=float(timeout) if timeout is not None else None,
    )


def workflow_from_mapping(data: Mapping[str, Any], *, default_name: str = "workflow") -> Workflow:
    jobs_raw = data.get("jobs")
    if not isinstance(jobs_raw, Mapping) or not jobs_raw:
        raise ConfigError("Workflow must define a non-empty 'jobs' mapping")

    # YAML 1.1 reads a bare `on:` key as boolean True
    on = data["on"] if "on" in data else data.get(True)

    return Workflow(
        name=str(data.get("name") or default_name),
        jobs=[_parse_job(str(k), v) for k, v in jobs_raw.items()],
        triggers=_parse_triggers(on),
        concurrency=_parse_concurrency(data.get("concurrency")),
        env=_str_map(data.get("env"), where="env"),
    )


def load_yaml_workflow(path: str | Path) -> Workflow:
    wf_path = Path(path)
    try:
        with open(wf_path, "r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {wf_path}: {exc}") from exc

    if not isinstance(payload, Mapping):
        raise ConfigError(f"Workflow file must contain a YAML mapping: {wf_path}")

    workflow = workflow_from_mapping(payload, default_name=wf_path.stem)
    workflow.source = str(wf_path)
    return workflow
