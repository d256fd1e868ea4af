"""Domain models for job tree evaluation."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

ROOT_ATTR_PATH = ""


class ResultKind(str, Enum):
    """Exactly one tag is set per attribute path."""

    JOB = "job"
    CHILDREN = "attrs"
    EMPTY = "empty"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class JobResult:
    """Outcome of resolving one attribute path."""

    kind: ResultKind
    job: dict[str, Any] | None = None
    children: tuple[str, ...] = ()
    error: str | None = None

    @classmethod
    def for_job(cls, drv_path: str, **metadata: Any) -> JobResult:
        return cls(kind=ResultKind.JOB, job={"drvPath": drv_path, **metadata})

    @classmethod
    def for_children(cls, names: list[str] | tuple[str, ...]) -> JobResult:
        return cls(kind=ResultKind.CHILDREN, children=tuple(names))

    @classmethod
    def empty(cls) -> JobResult:
        return cls(kind=ResultKind.EMPTY)

    @classmethod
    def for_error(cls, message: str) -> JobResult:
        return cls(kind=ResultKind.ERROR, error=message)

    @property
    def drv_path(self) -> str | None:
        if self.job is None:
            return None
        value = self.job.get("drvPath")
        return value if isinstance(value, str) else None

    def to_output(self) -> dict[str, Any] | None:
        """Entry for the result document, or None when the node contributes no key."""

        if self.kind is ResultKind.JOB:
            return dict(self.job or {})
        if self.kind is ResultKind.ERROR:
            return {"error": self.error or ""}
        return None


@dataclass(slots=True)
class HandlerStats:
    """Per-slot counters for run reporting."""

    evaluated: int = 0
    workers_spawned: int = 0
    memory_restarts: int = 0


@dataclass(slots=True)
class EvalRunSummary:
    """Aggregate counters across all handler loops."""

    jobs: int = 0
    errors: int = 0
    evaluated: int = 0
    workers_spawned: int = 0
    memory_restarts: int = 0
    handler_stats: list[HandlerStats] = field(default_factory=list)

    def add(self, stats: HandlerStats) -> None:
        self.evaluated += stats.evaluated
        self.workers_spawned += stats.workers_spawned
        self.memory_restarts += stats.memory_restarts
        self.handler_stats.append(stats)


@dataclass(slots=True)
class EvalRunResult:
    """Final result document plus run counters."""

    jobs: dict[str, dict[str, Any]]
    summary: EvalRunSummary


def join_attr_path(parent: str, child: str) -> str:
    """Child address; the root has the empty path."""

    return child if parent == ROOT_ATTR_PATH else f"{parent}.{child}"


def split_attr_path(attr_path: str) -> list[str]:
    if attr_path == ROOT_ATTR_PATH:
        return []
    return attr_path.split(".")


def is_valid_attr_name(name: str) -> bool:
    """Whether a child name can be re-expressed as a dotted path segment."""

    if not name or "." in name:
        return False
    return not any(char.isspace() for char in name)
