"""Runtime configuration for job tree evaluation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_EVALUATORS: tuple[str, ...] = ("nix", "json")

DEFAULT_WORKERS = 1
DEFAULT_MAX_MEMORY_SIZE_MIB = 4096


@dataclass(slots=True)
class WorkerPoolSettings:
    """Worker pool sizing and recycling settings."""

    workers: int = DEFAULT_WORKERS
    max_memory_size_mib: int = DEFAULT_MAX_MEMORY_SIZE_MIB
    shutdown_seconds: float = 10.0


@dataclass(slots=True)
class EvaluatorSettings:
    """Evaluator backend selection."""

    backend: str = "nix"
    nix_bin: str = "nix"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    pool: WorkerPoolSettings = field(default_factory=WorkerPoolSettings)
    evaluator: EvaluatorSettings = field(default_factory=EvaluatorSettings)
    gc_roots_dir: Path | None = None

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults matching the upstream tool."""

        gc_roots_dir = os.getenv("HYDRA_EVAL_JOBS_GC_ROOTS_DIR", "").strip()
        return cls(
            pool=WorkerPoolSettings(
                workers=_env_int("HYDRA_EVAL_JOBS_WORKERS", DEFAULT_WORKERS),
                max_memory_size_mib=_env_int(
                    "HYDRA_EVAL_JOBS_MAX_MEMORY_SIZE",
                    DEFAULT_MAX_MEMORY_SIZE_MIB,
                ),
                shutdown_seconds=_env_float("HYDRA_EVAL_JOBS_WORKER_SHUTDOWN_SECONDS", 10.0),
            ),
            evaluator=EvaluatorSettings(
                backend=os.getenv("HYDRA_EVAL_JOBS_EVALUATOR", "nix").strip() or "nix",
                nix_bin=os.getenv("HYDRA_EVAL_JOBS_NIX_BIN", "nix").strip() or "nix",
            ),
            gc_roots_dir=Path(gc_roots_dir) if gc_roots_dir else None,
        )

    def validate(self) -> None:
        """Raise configuration error before any worker is spawned."""

        if self.pool.workers < 1:
            raise ValueError("Number of workers must be a positive integer.")
        if self.pool.max_memory_size_mib < 1:
            raise ValueError("Maximum memory size must be a positive number of MiB.")
        if self.pool.shutdown_seconds <= 0:
            raise ValueError("HYDRA_EVAL_JOBS_WORKER_SHUTDOWN_SECONDS must be > 0.")
        if self.evaluator.backend not in SUPPORTED_EVALUATORS:
            raise ValueError(
                f"Unsupported evaluator {self.evaluator.backend!r}; "
                f"expected one of {', '.join(SUPPORTED_EVALUATORS)}.",
            )
        if not self.evaluator.nix_bin:
            raise ValueError("HYDRA_EVAL_JOBS_NIX_BIN must not be empty.")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {raw!r}") from error
