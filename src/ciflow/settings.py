from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_HOME = ".ciflow"
# Hosted runners kill a job after six hours.
DEFAULT_TIMEOUT_MINUTES = 360.0


@dataclass(frozen=True)
class Settings:
    home: Path = Path(DEFAULT_HOME)
    repo_root: Path = Path(".")
    cache_dir: Optional[Path] = None          # default: <home>/cache
    work_dir: Optional[Path] = None           # default: <home>/work
    workers: Optional[int] = None             # default: cpu_count - 1
    timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES
    database_url: Optional[str] = None        # default: sqlite file in <home>
    workflow: Optional[str] = None

    @property
    def cache_root(self) -> Path:
        return Path(self.cache_dir) if self.cache_dir else Path(self.home) / "cache"

    @property
    def work_root(self) -> Path:
        return Path(self.work_dir) if self.work_dir else Path(self.home) / "work"

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{(Path(self.home) / 'runs.db').as_posix()}"

    @property
    def max_workers(self) -> int:
        if self.workers:
            return max(1, int(self.workers))
        c = os.cpu_count() or 2
        return max(1, c - 1)

    def with_overrides(self, **changes) -> "Settings":
        """Return a copy with every non-None override applied (CLI flags)."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        def _path(name: str) -> Optional[Path]:
            value = env.get(name)
            return Path(value) if value else None

        workers = env.get("CIFLOW_WORKERS")
        return cls(
            home=_path("CIFLOW_HOME") or Path(DEFAULT_HOME),
            repo_root=_path("CIFLOW_REPO_ROOT") or Path("."),
            cache_dir=_path("CIFLOW_CACHE_DIR"),
            work_dir=_path("CIFLOW_WORK_DIR"),
            workers=int(workers) if workers else None,
            timeout_minutes=float(env.get("CIFLOW_TIMEOUT_MINUTES", DEFAULT_TIMEOUT_MINUTES)),
            database_url=env.get("CIFLOW_DATABASE_URL") or None,
            workflow=env.get("CIFLOW_WORKFLOW") or None,
        )
