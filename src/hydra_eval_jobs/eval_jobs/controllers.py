"""Controller for the evaluation CLI command."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from hydra_eval_jobs.config import Settings
from hydra_eval_jobs.eval_jobs.driver import EvalJobsDriver
from hydra_eval_jobs.eval_jobs.evaluator import AutoArg, EvaluatorConfig
from hydra_eval_jobs.eval_jobs.handler import WorkerLauncher
from hydra_eval_jobs.eval_jobs.models import EvalRunResult
from hydra_eval_jobs.eval_jobs.worker import WorkerOptions

logger = logging.getLogger(__name__)

GC_ROOTS_TREE = "gcroots"


@dataclass(slots=True)
class EvalJobsCommand:
    """CLI input for one evaluation run; None means "use the configured value"."""

    release_expr: str | None
    flake: bool = False
    dry_run: bool = False
    workers: int | None = None
    max_memory_size_mib: int | None = None
    gc_roots_dir: Path | None = None
    auto_args: tuple[tuple[str, str], ...] = ()
    auto_argstrs: tuple[tuple[str, str], ...] = ()
    search_path: tuple[str, ...] = ()
    evaluator: str | None = None
    log_level: int = logging.WARNING


class EvalJobsCliController:
    """Validate options, run the worker pool and render the result document."""

    def prepare(self, command: EvalJobsCommand) -> EvalJobsDriver:
        """Build the driver; raise ``ValueError`` before any worker is spawned."""

        settings = resolve_settings(command)
        if not command.release_expr:
            raise ValueError("no expression specified")
        if settings.gc_roots_dir is None:
            logger.warning("`--gc-roots-dir' not specified")
        elif GC_ROOTS_TREE not in settings.gc_roots_dir.expanduser().resolve().parts:
            logger.warning(
                "GC roots directory %s is outside the store's %s tree; "
                "its symlinks will not protect derivations",
                settings.gc_roots_dir,
                GC_ROOTS_TREE,
            )

        options = WorkerOptions(
            evaluator=settings.evaluator.backend,
            config=EvaluatorConfig(
                release_expr=command.release_expr,
                flake=command.flake,
                dry_run=command.dry_run,
                auto_args=_auto_args(command),
                search_path=command.search_path,
                nix_bin=settings.evaluator.nix_bin,
            ),
            max_memory_size_mib=settings.pool.max_memory_size_mib,
            gc_roots_dir=settings.gc_roots_dir,
            log_level=command.log_level,
        )
        launcher = WorkerLauncher.for_options(
            options,
            shutdown_seconds=settings.pool.shutdown_seconds,
        )
        return EvalJobsDriver(launcher=launcher, workers=settings.pool.workers)

    def run(self, driver: EvalJobsDriver) -> list[str]:
        """Evaluate the whole tree; the first fatal error is re-raised."""

        return [render_jobs(driver.run())]


def resolve_settings(command: EvalJobsCommand) -> Settings:
    """Environment settings overridden by explicit command-line values."""

    settings = Settings.from_env()
    if command.workers is not None:
        settings.pool.workers = command.workers
    if command.max_memory_size_mib is not None:
        settings.pool.max_memory_size_mib = command.max_memory_size_mib
    if command.gc_roots_dir is not None:
        settings.gc_roots_dir = command.gc_roots_dir
    if command.evaluator is not None:
        settings.evaluator.backend = command.evaluator
    settings.validate()
    return settings


def render_jobs(result: EvalRunResult) -> str:
    return json.dumps(result.jobs, ensure_ascii=False, indent=2, sort_keys=True)


def _auto_args(command: EvalJobsCommand) -> tuple[AutoArg, ...]:
    return tuple(AutoArg(name=name, value=value) for name, value in command.auto_args) + tuple(
        AutoArg(name=name, value=value, is_string=True) for name, value in command.auto_argstrs
    )
