# concurrency.py
from __future__ import annotations

import threading
from typing import Dict, Optional, Protocol

from .model import ConcurrencyGroup


class Cancellable(Protocol):
    run_id: str
    seq: int  # admission order; higher is newer

    @property
    def cancelled(self) -> bool: ...

    def cancel(self, reason: str = ...) -> object: ...


class ConcurrencyRegistry:
    """
    The set of currently active runs per concurrency-group key.

    Single coordination point: every read/write happens under one Condition.
      - acquire() when a run starts (may cancel or wait for the previous run)
      - release() when the run reaches a terminal state

    cancel_in_progress=True:
        the in-flight run is signalled to cancel and the new run becomes
        active immediately. Cancellation is best effort; the old run winds
        down on its own and its release() is then a no-op.
    cancel_in_progress=False:
        the new run waits as pending until the key is free. A newer pending
        run supersedes (cancels) an older pending one.

    Newer means admitted later (higher `seq`), not "reached acquire() first":
    a run that arrives while a newer one holds or waits for the key is
    cancelled on the spot, in both modes.
    """

    def __init__(self) -> None:
        # RLock-backed so cancel callbacks may call wake() re-entrantly.
        self._cond = threading.Condition(threading.RLock())
        self._active: Dict[str, Cancellable] = {}
        self._pending: Dict[str, Cancellable] = {}

    def acquire(self, group: ConcurrencyGroup, run: Cancellable) -> bool:
        """
        Make `run` the active run for `group.key`.
        Returns False if the run got cancelled before it could start.
        """
        key = group.key
        with self._cond:
            current = self._active.get(key)
            previous = self._pending.get(key)
            for other in (current, previous):
                if other is not None and other is not run and other.seq > run.seq:
                    run.cancel(f"superseded by {other.run_id} in '{key}'")
                    self._cond.notify_all()
                    return False

            if current is None or current is run:
                self._active[key] = run
                return True

            if group.cancel_in_progress:
                current.cancel(f"superseded by {run.run_id} in '{key}'")
                self._active[key] = run
                self._cond.notify_all()
                return True

            if previous is not None and previous is not run:
                previous.cancel(f"superseded by {run.run_id} in '{key}'")
            self._pending[key] = run
            self._cond.notify_all()

            while True:
                if run.cancelled:
                    if self._pending.get(key) is run:
                        del self._pending[key]
                    return False
                if self._active.get(key) is None:
                    self._active[key] = run
                    if self._pending.get(key) is run:
                        del self._pending[key]
                    return True
                self._cond.wait()

    def release(self, group: ConcurrencyGroup, run: Cancellable) -> None:
        with self._cond:
            if self._active.get(group.key) is run:
                del self._active[group.key]
            if self._pending.get(group.key) is run:
                del self._pending[group.key]
            self._cond.notify_all()

    def wake(self) -> None:
        """Re-check waiting runs (one of them may have been cancelled)."""
        with self._cond:
            self._cond.notify_all()

    def active(self, key: str) -> Optional[Cancellable]:
        with self._cond:
            return self._active.get(key)

    def pending(self, key: str) -> Optional[Cancellable]:
        with self._cond:
            return self._pending.get(key)

    def snapshot(self) -> Dict[str, str]:
        with self._cond:
            return {k: r.run_id for k, r in self._active.items()}


_registry: Optional[ConcurrencyRegistry] = None
_registry_lock = threading.Lock()


def default_registry() -> ConcurrencyRegistry:
    """Process-wide registry shared by every Engine that doesn't bring its own."""
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = ConcurrencyRegistry()
        return _registry
