# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


class PipelineError(Exception):
    """Base class for every failure a pipeline run can surface."""


class ConfigError(PipelineError):
    """Invalid or disallowed pipeline definition. Raised before any container work."""


@dataclass
class ResolutionError(PipelineError):
    """A bare environment variable name could not be found in any source."""
    name: str
    scope: str

    def __str__(self) -> str:
        return f"Unable to find match for environment variable <{self.name}> in {self.scope}"


class TransferError(PipelineError):
    """Raised by the archive transfer unit (globs, destinations, symlinks)."""


@dataclass
class StageError(PipelineError):
    """
    Structured lifecycle error with enough context for:
      - clean CLI output
      - telling which stage of a container's life failed
      - debugging without full tracebacks (the engine error is chained)
    """
    stage: str
    message: str
    scope: Optional[str] = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        prefix = f"{self.scope}: " if self.scope else ""
        lines = [f"{prefix}[{self.stage}] {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        if self.__cause__ is not None:
            lines.append(f"cause={self.__cause__}")
        return "\n".join(lines)


@dataclass
class ExitStatusError(StageError):
    exit_code: int = 0

    def __str__(self) -> str:
        prefix = f"{self.scope}: " if self.scope else ""
        return f"{prefix}{self.message} (exit={self.exit_code})"
