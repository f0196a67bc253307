# actions.py
# Reusable actions referenced by `uses:` steps. An action is a plain callable
# registered under its identifier ('actions/checkout'); the version after '@'
# is passed through on the step and never used for lookup.
from __future__ import annotations

import shutil
import tarfile
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Mapping, Optional

from .model import ActionStep, CommandStep

if TYPE_CHECKING:
    from .executor import StepContext

ActionFn = Callable[["StepContext", ActionStep], None]


class ActionRegistry:
    def __init__(self, actions: Optional[Mapping[str, ActionFn]] = None):
        self._actions: Dict[str, ActionFn] = {}
        for name, fn in (actions or {}).items():
            self.register(name, fn)

    def register(self, name: str, fn: Optional[ActionFn] = None):
        """
        Register an action. Usable directly or as a decorator:

            @registry.register("acme/deploy")
            def deploy(ctx, step): ...
        """
        key = name.split("@", 1)[0].strip().lower()

        def _add(f: ActionFn) -> ActionFn:
            self._actions[key] = f
            return f

        if fn is None:
            return _add
        return _add(fn)

    def resolve(self, uses: str) -> Optional[ActionFn]:
        return self._actions.get(uses.split("@", 1)[0].strip().lower())


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        # `path:` blocks in YAML are newline separated
        return [line.strip() for line in value.splitlines() if line.strip()]
    if isinstance(value, Iterable):
        return [str(v) for v in value]
    return [str(value)]


# ---------------------------------------------------------------------
# Built-in actions
# ---------------------------------------------------------------------

def checkout(ctx: "StepContext", step: ActionStep) -> None:
    """Copy the source tree into the workspace (without .git and engine state)."""
    src = Path(ctx.settings.repo_root).resolve()
    dest = (ctx.workspace / str(step.with_.get("path", ""))).resolve()
    if not src.is_dir():
        raise ctx.failure(f"source tree not found: {src}")

    skip = {
        Path(ctx.settings.home).resolve(),
        Path(ctx.settings.work_root).resolve(),
        Path(ctx.settings.cache_root).resolve(),
    }

    def _ignore(dirpath: str, names: List[str]) -> List[str]:
        ignored = []
        for n in names:
            if n == ".git" or (Path(dirpath) / n).resolve() in skip:
                ignored.append(n)
        return ignored

    shutil.copytree(src, dest, ignore=_ignore, symlinks=True, dirs_exist_ok=True)
    ctx.log(f"checked out {src} -> {dest}")


def cache(ctx: "StepContext", step: ActionStep) -> None:
    """
    Restore cached dirs now; save them after the instance succeeds.

    with:
      path: dirs relative to the workspace (default: job.cache_dirs)
      key:  extra key material
      keep: artifacts to keep per job (default: job.cache_keep)
    """
    instance = ctx.instance
    paths = _as_list(step.with_.get("path")) or None
    extra = step.with_.get("key")
    extra = ctx.render(str(extra)) if extra is not None else None
    store = ctx.cache

    hit = store.restore(instance, workspace=ctx.workspace, paths=paths, extra=extra)
    ctx.log(hit.reason)
    if hit.hit:
        ctx.console.print_cache_hit(instance.name, hit.reason)
        return
    ctx.console.print_cache_miss(instance.name, hit.reason)
    if not hit.key:
        return

    keep = int(step.with_.get("keep", instance.job.cache_keep))

    def _save() -> None:
        try:
            key = store.save(
                instance,
                workspace=ctx.workspace,
                paths=paths,
                extra=extra,
                key=hit.key,
                manifest=hit.manifest,
            )
            store.prune(instance.job.name, keep=keep)
        except (OSError, tarfile.TarError) as e:
            # advisory: a lost cache write only costs the next run time
            ctx.console.print_cache_miss(instance.name, f"save failed: {e}")
            return
        if key:
            ctx.console.print_cache_saved(instance.name, key)

    ctx.add_post_step(f"Post {step.name}", _save)


def rust_cache(ctx: "StepContext", step: ActionStep) -> None:
    """Cache action preset for cargo builds: caches target/ unless `path` is given."""
    if step.with_.get("path") is None:
        step = replace(step, with_={**step.with_, "path": ["target"]})
    cache(ctx, step)


def cargo_deny(ctx: "StepContext", step: ActionStep) -> None:
    """Run `cargo deny` in the workspace; `command` and `arguments` as in the hosted action."""
    command = str(step.with_.get("command", "check"))
    arguments = str(step.with_.get("arguments", ""))
    cmd = " ".join(p for p in ("cargo deny", arguments, command) if p)
    ctx.run_command(CommandStep(name=step.name, run=cmd))


def default_actions() -> ActionRegistry:
    registry = ActionRegistry()
    registry.register("actions/checkout", checkout)
    registry.register("checkout", checkout)
    registry.register("actions/cache", cache)
    registry.register("cache", cache)
    registry.register("swatinem/rust-cache", rust_cache)
    registry.register("embarkstudios/cargo-deny-action", cargo_deny)
    return registry
