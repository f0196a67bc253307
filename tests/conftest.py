from __future__ import annotations

import threading
import time

import pytest

from ciflow.actions import default_actions
from ciflow.concurrency import ConcurrencyRegistry
from ciflow.settings import Settings
from ciflow.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    return console


@pytest.fixture()
def repo(tmp_path):
    root = tmp_path / "repo"
    root.mkdir()
    (root / "Cargo.toml").write_text('[package]\nname = "demo"\n', encoding="utf-8")
    (root / "src").mkdir()
    (root / "src" / "main.rs").write_text("fn main() {}\n", encoding="utf-8")
    return root


@pytest.fixture()
def settings(tmp_path, repo):
    return Settings(home=tmp_path / ".ciflow", repo_root=repo, workers=4, timeout_minutes=5)


@pytest.fixture()
def registry():
    return ConcurrencyRegistry()


class Gate:
    """Action pair for deterministic tests: 'test/block' waits until opened or cancelled."""

    def __init__(self):
        self.opened = threading.Event()
        self.started = threading.Event()
        self.entered = 0
        self._lock = threading.Lock()

    def block(self, ctx, step):
        with self._lock:
            self.entered += 1
        self.started.set()
        while not self.opened.is_set():
            if ctx.cancelled:
                raise ctx.failure("cancelled")
            time.sleep(0.01)
        ctx.log("gate opened")

    def wait_entered(self, count: int, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._lock:
                if self.entered >= count:
                    return True
            time.sleep(0.01)
        return False


@pytest.fixture()
def gate():
    return Gate()


@pytest.fixture()
def actions(gate):
    registry = default_actions()
    registry.register("test/block", gate.block)
    registry.register("EmbarkStudios/cargo-deny-action", lambda ctx, step: ctx.log("advisories ok"))
    return registry
