# git.py
# Thin wrapper around the Git CLI. Only used to fill in trigger defaults
# (branch, sha) for local runs; nothing in the engine depends on git.

from __future__ import annotations

import subprocess
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Run git and return stripped stdout.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str] = None) -> str:
    """
    Name of the checked-out branch.

    A detached HEAD has no branch; "HEAD" is returned then, which matches no
    sensible branch filter.
    """
    return _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)


def local_facts(cwd: Optional[str] = None) -> dict:
    """Best-effort branch/sha of the working copy; empty outside a repository."""
    facts = {}
    try:
        facts["branch"] = current_branch(cwd)
        facts["sha"] = head_sha(cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        pass
    return facts
