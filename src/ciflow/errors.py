# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - API error payloads
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigError(ValueError):
    """Raised when a workflow definition cannot be loaded or is invalid."""


@dataclass
class StepFailure(Exception):
    """A step returned non-zero, raised, timed out or was aborted."""
    job: str
    step: str
    cmd: str
    exit_code: int | None = None
    reason: str = "failed"
    output: str = ""

    def __str__(self) -> str:
        if self.exit_code is None:
            return f"[{self.job}] step '{self.step}' {self.reason}: {self.cmd}"
        return f"[{self.job}] step '{self.step}' {self.reason} (exit={self.exit_code}): {self.cmd}"


class ActionNotFound(StepFailure):
    """The referenced action is not registered."""

    def __init__(self, job: str, step: str, uses: str):
        super().__init__(job=job, step=step, cmd=uses, reason="unknown action")
