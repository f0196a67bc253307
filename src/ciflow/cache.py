# cache.py
from __future__ import annotations

import hashlib
import io
import json
import tarfile
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .model import ActionStep, CommandStep, JobInstance

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Instance-level dependency caching:
#   cache_key = hash(
#       job name + matrix binding,
#       step definitions,
#       job env,
#       contents of declared input files/dirs (globs, relative to workspace),
#       optional extra key (e.g. `with: {key: ...}` on the cache step)
#   )
#
# Cache artifact:
#   a tar.gz containing the declared cache dirs plus a manifest.json.
#
# The cache is advisory. A missing, stale or corrupted artifact is a miss and
# the job simply rebuilds. Concurrent runs may race on save(); each writer
# uses its own temp file and the last atomic replace wins.
# ---------------------------------------------------------------------

DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    manifest: Dict = field(default_factory=dict)


def _sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(root: Path, patterns: List[str]) -> List[Path]:
    """
    Expand input patterns into concrete paths.
    Supports:
      - file path: "Cargo.lock"
      - dir path:  "src/"
      - glob:      "crates/**", "**/Cargo.toml"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.exists():
            out.append(p)
            continue
        out.extend(m for m in sorted(root.glob(pat)) if m.exists())

    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def _hash_inputs(root: Path, inputs: List[str], *, excludes: List[str]) -> Tuple[str, Dict]:
    file_fps: List[Tuple[str, str, int]] = []
    for p in _resolve_globs(root, inputs):
        files = [p] if p.is_file() else list(_iter_files_under(p))
        for f in files:
            rel = _relpath(f, root)
            if _matches_any_glob(rel, excludes):
                continue
            file_fps.append((rel, _hash_file_contents(f), f.stat().st_size))

    file_fps.sort(key=lambda t: t[0])
    payload = {"files": file_fps}
    return _sha256_str(_json_dumps_stable(payload)), payload


def _step_fingerprint(step) -> Dict:
    if isinstance(step, CommandStep):
        return {"name": step.name, "run": step.run, "cwd": step.cwd or ".", "env": dict(step.env)}
    if isinstance(step, ActionStep):
        return {"name": step.name, "uses": step.uses, "with": dict(step.with_)}
    return {"name": step.name}


def compute_cache_key(
    instance: JobInstance,
    *,
    workspace: str | Path,
    extra: Optional[str] = None,
) -> Tuple[str, Dict]:
    """Returns (cache_key, manifest) where manifest explains what went into the key."""
    root = Path(workspace).resolve()
    job = instance.job

    inputs_hash, inputs_manifest = _hash_inputs(root, list(job.inputs), excludes=DEFAULT_CACHE_EXCLUDES)

    payload = {
        "v": 1,  # bump this if the hashing format changes
        "job": job.name,
        "binding": dict(instance.binding),
        "steps": [_step_fingerprint(s) for s in job.steps],
        "env": dict(job.env),
        "inputs_hash": inputs_hash,
        "extra": extra or "",
    }
    key = _sha256_str(_json_dumps_stable(payload))
    manifest = {
        "key": key,
        "payload": payload,
        "inputs": inputs_manifest,
        "generated_at_unix": int(time.time()),
    }
    return key, manifest


def _tar_add_path(tar: tarfile.TarFile, root: Path, src: Path, *, exclude_globs: List[str]) -> None:
    src = src.resolve()
    if not src.exists():
        return
    files = [src] if src.is_file() else list(_iter_files_under(src))
    for f in files:
        rel = _relpath(f, root)
        if _matches_any_glob(rel, exclude_globs):
            continue
        tar.add(str(f), arcname=rel, recursive=False)


def _safe_extract(tar: tarfile.TarFile, dest: Path) -> None:
    dest = dest.resolve()
    for member in tar.getmembers():
        target = (dest / member.name).resolve()
        if target != dest and dest not in target.parents:
            raise tarfile.ExtractError(f"refusing to extract outside workspace: {member.name}")
    if hasattr(tarfile, "data_filter"):
        tar.extractall(path=str(dest), filter="data")
    else:
        tar.extractall(path=str(dest))


def _slug(name: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in name)


class CacheStore:
    """
    File-based cache store shared by every run:
      root/
        <job_name>/
          <key>.tar.gz
          <key>.manifest.json
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _job_dir(self, job_name: str) -> Path:
        d = self.root / _slug(job_name)
        d.mkdir(parents=True, exist_ok=True)
        return d

    def artifact_path(self, job_name: str, key: str) -> Path:
        return self._job_dir(job_name) / f"{key}.tar.gz"

    def manifest_path(self, job_name: str, key: str) -> Path:
        return self._job_dir(job_name) / f"{key}.manifest.json"

    def restore(
        self,
        instance: JobInstance,
        *,
        workspace: str | Path,
        paths: Optional[List[str]] = None,
        extra: Optional[str] = None,
    ) -> CacheHit:
        """
        Extract the cached dirs into the workspace.

        Never raises for cache problems: a broken artifact is reported as a
        miss so the job falls back to a full rebuild.
        """
        root = Path(workspace).resolve()
        cache_dirs = list(paths if paths is not None else instance.job.cache_dirs)
        if not cache_dirs:
            return CacheHit(hit=False, key="", reason="no cache dirs specified")

        key, manifest = compute_cache_key(instance, workspace=root, extra=extra)
        art = self.artifact_path(instance.job.name, key)
        man = self.manifest_path(instance.job.name, key)

        if not art.exists() or not man.exists():
            return CacheHit(hit=False, key=key, reason="cache miss", manifest=manifest)

        try:
            with tarfile.open(str(art), mode="r:gz") as tar:
                _safe_extract(tar, root)
        except (OSError, EOFError, tarfile.TarError) as e:
            return CacheHit(hit=False, key=key, reason=f"cache exists but restore failed: {e}", manifest=manifest)

        try:
            stored = json.loads(man.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            stored = {}

        return CacheHit(hit=True, key=key, reason="cache hit: restored artifact", manifest=stored or manifest)

    def save(
        self,
        instance: JobInstance,
        *,
        workspace: str | Path,
        paths: Optional[List[str]] = None,
        extra: Optional[str] = None,
        key: Optional[str] = None,
        manifest: Optional[Dict] = None,
    ) -> Optional[str]:
        """Archive the cache dirs from the workspace. Returns the key, or None if nothing to save."""
        root = Path(workspace).resolve()
        cache_dirs = list(paths if paths is not None else instance.job.cache_dirs)
        if not cache_dirs:
            return None

        if key is None or manifest is None:
            key, manifest = compute_cache_key(instance, workspace=root, extra=extra)

        art = self.artifact_path(instance.job.name, key)
        man = self.manifest_path(instance.job.name, key)
        token = uuid.uuid4().hex
        tmp_art = art.with_name(f"{art.name}.{token}.tmp")
        tmp_man = man.with_name(f"{man.name}.{token}.tmp")

        body = json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False, default=str)
        try:
            with tarfile.open(str(tmp_art), mode="w:gz") as tar:
                for entry in cache_dirs:
                    _tar_add_path(tar, root, root / entry, exclude_globs=DEFAULT_CACHE_EXCLUDES)

                payload = body.encode("utf-8")
                info = tarfile.TarInfo(name=f".ciflow_cache_manifest/{key}.manifest.json")
                info.size = len(payload)
                info.mtime = int(time.time())
                tar.addfile(info, fileobj=io.BytesIO(payload))

            tmp_man.write_text(body, encoding="utf-8")
            tmp_art.replace(art)
            tmp_man.replace(man)
        finally:
            tmp_art.unlink(missing_ok=True)
            tmp_man.unlink(missing_ok=True)

        return key

    def prune(self, job_name: str, keep: int = 3) -> None:
        """Keep only the newest N artifacts for a job (by mtime)."""
        d = self._job_dir(job_name)
        tars = sorted(d.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)
        for p in tars[keep:]:
            key = p.name[: -len(".tar.gz")]
            p.unlink(missing_ok=True)
            (d / f"{key}.manifest.json").unlink(missing_ok=True)
