# ciflow_workflow.py
# Workflow for ciflow itself: lint, tests on two Python versions, packaging check.
from __future__ import annotations

from ciflow.dsl import concurrency, job, matrix, on_pull_request, on_push, sh, uses, wf


def workflow():
    return wf(
        job(
            "lint",
            uses("actions/checkout@v4"),
            sh("Ruff check", "ruff check src tests"),
            inputs=["src/**", "tests/**", "pyproject.toml"],
        ),
        job(
            "test",
            uses("actions/checkout@v4"),
            sh("Create venv", "python${{ matrix.python }} -m venv .venv"),
            uses("actions/cache@v4", name="Cache venv", path=[".venv"], key="py${{ matrix.python }}"),
            sh("Install package", ".venv/bin/pip install -e '.[test]'"),
            sh("Run pytest", ".venv/bin/pytest -q"),
            needs=["lint"],
            matrix=matrix(python=["3.11", "3.12"]),
            inputs=["src/**", "tests/**", "pyproject.toml"],
            cache_keep=5,
            timeout_minutes=30,
        ),
        job(
            "validate",
            uses("actions/checkout@v4"),
            sh("Validate bundled workflows", "ciflow validate --workflow workflows/rust_workflow.py"),
            needs=["lint"],
        ),
        name="ciflow",
        on=[on_push("main"), on_pull_request("main")],
        concurrency=concurrency(cancel_in_progress=True),
    )
