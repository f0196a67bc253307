# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import List, Optional

from .errors import ConfigError
from .model import Job, Workflow
from .yaml_loader import load_yaml_workflow

DEFAULT_WORKFLOW_FILE = "ciflow_workflow.py"
YAML_SUFFIXES = (".yml", ".yaml")


def find_workflow_files(root: str | Path = ".") -> List[Path]:
    """
    Candidate workflow files under `root`:
      - ciflow_workflow.py
      - *_workflow.py
      - .github/workflows/*.yml / *.yaml
    """
    base = Path(root)
    found = set()

    default = base / DEFAULT_WORKFLOW_FILE
    if default.exists():
        found.add(default)
    for path in base.glob("*_workflow.py"):
        found.add(path)

    gh = base / ".github" / "workflows"
    if gh.is_dir():
        for suffix in YAML_SUFFIXES:
            found.update(gh.glob(f"*{suffix}"))

    return sorted(found)


def _from_python(wf_path: Path) -> Workflow:
    module_name = f"ciflow_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    result = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            result = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise ConfigError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from ciflow import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        result = globals_dict["WORKFLOW"]
    elif "JOBS" in globals_dict:
        result = globals_dict["JOBS"]

    if isinstance(result, list) and all(isinstance(j, Job) for j in result):
        result = Workflow(name="", jobs=result)

    if not isinstance(result, Workflow):
        raise ConfigError(
            f"{wf_path.name} must define workflow() returning a Workflow or List[Job], "
            "or a module-level WORKFLOW / JOBS."
        )

    if not result.name:
        result.name = wf_path.stem
    result.source = str(wf_path)
    return result


def load_workflow(path: str | Path) -> Workflow:
    """Load a workflow from a .py definition or a hosted-runner style YAML file."""
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix == ".py":
        return _from_python(wf_path)
    if wf_path.suffix in YAML_SUFFIXES:
        return load_yaml_workflow(wf_path)
    raise ConfigError(f"Workflow must be a .py, .yml or .yaml file, got: {wf_path.name}")


def discover_workflow(explicit: Optional[str] = None, root: str | Path = ".") -> Path:
    """
    Pick the workflow file to use.

    An explicit path wins (".py" is appended when missing). Otherwise exactly
    one candidate must exist; several candidates are an error rather than a
    guess.
    """
    if explicit:
        path = Path(explicit)
        if not path.is_absolute():
            path = Path(root) / path
        if not path.exists() and not path.suffix:
            path = path.with_suffix(".py")
        if not path.exists():
            raise FileNotFoundError(f"Could not find workflow file: {explicit}")
        return path

    candidates = find_workflow_files(root)
    if not candidates:
        raise ConfigError(
            f"No workflow file found. Looked for {DEFAULT_WORKFLOW_FILE}, *_workflow.py "
            "and .github/workflows/*.yml"
        )
    if len(candidates) > 1:
        listing = ", ".join(str(c) for c in candidates)
        raise ConfigError(f"Multiple workflow files found ({listing}); pass --workflow to pick one")
    return candidates[0]
