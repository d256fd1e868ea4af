"""Shared test fixtures."""

from __future__ import annotations

import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from hydra_eval_jobs.eval_jobs.evaluator import EvaluatorConfig
from hydra_eval_jobs.eval_jobs.handler import WorkerLauncher
from hydra_eval_jobs.eval_jobs.worker import WorkerOptions

FAKE_WORKER = Path(__file__).parent / "fake_worker.py"


@pytest.fixture()
def write_tree(tmp_path: Path) -> Callable[[Any], Path]:
    """Persist a JSON job tree and return its path."""

    def _write(tree: Any, name: str = "jobs.json") -> Path:
        path = tmp_path / name
        path.write_text(json.dumps(tree), "utf-8")
        return path

    return _write


@pytest.fixture()
def json_launcher() -> Callable[..., WorkerLauncher]:
    """Launcher for real worker processes over the JSON evaluator."""

    def _launcher(
        tree_path: Path,
        *,
        max_memory_size_mib: int = 4096,
        gc_roots_dir: Path | None = None,
        dry_run: bool = False,
        flake: bool = False,
    ) -> WorkerLauncher:
        options = WorkerOptions(
            evaluator="json",
            config=EvaluatorConfig(release_expr=str(tree_path), flake=flake, dry_run=dry_run),
            max_memory_size_mib=max_memory_size_mib,
            gc_roots_dir=gc_roots_dir,
        )
        return WorkerLauncher.for_options(options, shutdown_seconds=5)

    return _launcher


@pytest.fixture()
def fake_launcher() -> Callable[..., WorkerLauncher]:
    """Launcher for the scripted fault-injecting worker."""

    def _launcher(mode: str, *extra: str) -> WorkerLauncher:
        return WorkerLauncher(
            [sys.executable, str(FAKE_WORKER), "--mode", mode, *extra],
            shutdown_seconds=5,
        )

    return _launcher
