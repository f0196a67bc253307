# rust_workflow.py
# Build/lint/test a cargo project on every push or pull request to main.
# A newer event for the same pull request (or branch) cancels the older run.
from __future__ import annotations

from ciflow.dsl import concurrency, job, matrix, on_pull_request, on_push, run, sh, uses, wf


def workflow():
    return wf(
        job(
            "build",
            uses("actions/checkout@v4"),
            run('rustup override set "${{ matrix.rust }}"'),
            run("rustup component add clippy"),
            uses("Swatinem/rust-cache@v2"),
            sh("Clippy", "cargo clippy --verbose"),
            sh("Build", "cargo build --verbose"),
            sh("Run tests", "cargo test --verbose"),
            runs_on="ubuntu-latest",
            matrix=matrix("rust", ["stable"]),
        ),
        job(
            "deny",
            uses("actions/checkout@v4"),
            uses("EmbarkStudios/cargo-deny-action@v2"),
            runs_on="ubuntu-latest",
        ),
        name="Rust",
        on=[on_push("main"), on_pull_request("main")],
        env={"CARGO_TERM_COLOR": "always"},
        concurrency=concurrency(cancel_in_progress=True),
    )
