"""CLI entrypoint for hydra-eval-jobs."""

import logging
import sys
from pathlib import Path

import rich_click as click

from hydra_eval_jobs import __version__
from hydra_eval_jobs.config import SUPPORTED_EVALUATORS
from hydra_eval_jobs.eval_jobs.controllers import EvalJobsCliController, EvalJobsCommand

click.rich_click.USE_MARKDOWN = True
EVAL_JOBS_CONTROLLER = EvalJobsCliController()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.command()
@click.version_option(version=__version__, prog_name="hydra-eval-jobs")
@click.argument("expr", required=False)
@click.option("--flake", is_flag=True, default=False, help="Treat EXPR as a flake reference.")
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Don't create store derivations.",
)
@click.option(
    "--workers",
    type=click.IntRange(min=1),
    default=None,
    help="Number of evaluation workers. [default: 1]",
)
@click.option(
    "--max-memory-size",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum evaluation memory size per worker in MiB. [default: 4096]",
)
@click.option(
    "--gc-roots-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help=(
        "Garbage collector roots directory. Roots are plain symlinks and only protect "
        "derivations when the directory is inside /nix/var/nix/gcroots."
    ),
)
@click.option(
    "--arg",
    "auto_args",
    type=(str, str),
    multiple=True,
    metavar="NAME EXPR",
    help="Pass the value of a Nix expression to functions along the attribute path.",
)
@click.option(
    "--argstr",
    "auto_argstrs",
    type=(str, str),
    multiple=True,
    metavar="NAME VALUE",
    help="Pass a string to functions along the attribute path.",
)
@click.option(
    "-I",
    "--include",
    "search_path",
    multiple=True,
    help="Add a path to the Nix search path. Can be repeated.",
)
@click.option(
    "--evaluator",
    type=click.Choice(SUPPORTED_EVALUATORS),
    default=None,
    help="Evaluator backend; `json` reads a pre-computed job tree. [default: nix]",
)
@click.option("-v", "--verbose", count=True, help="Increase log verbosity (-v info, -vv debug).")
def hydra_eval_jobs(  # noqa: PLR0913
    expr: str | None,
    flake: bool,
    dry_run: bool,
    workers: int | None,
    max_memory_size: int | None,
    gc_roots_dir: Path | None,
    auto_args: tuple[tuple[str, str], ...],
    auto_argstrs: tuple[tuple[str, str], ...],
    search_path: tuple[str, ...],
    evaluator: str | None,
    verbose: int,
) -> None:
    """Evaluate a Hydra jobset and print its jobs as JSON."""

    log_level = _log_level(verbose)
    logging.basicConfig(level=log_level, format=LOG_FORMAT, stream=sys.stderr)

    command = EvalJobsCommand(
        release_expr=expr,
        flake=flake,
        dry_run=dry_run,
        workers=workers,
        max_memory_size_mib=max_memory_size,
        gc_roots_dir=gc_roots_dir,
        auto_args=auto_args,
        auto_argstrs=auto_argstrs,
        search_path=search_path,
        evaluator=evaluator,
        log_level=log_level,
    )
    try:
        driver = EVAL_JOBS_CONTROLLER.prepare(command)
    except ValueError as error:
        raise click.UsageError(str(error)) from error
    try:
        lines = EVAL_JOBS_CONTROLLER.run(driver)
    except Exception as error:  # noqa: BLE001
        raise click.ClickException(str(error) or type(error).__name__) from error
    _emit_lines(lines)


def _log_level(verbose: int) -> int:
    if verbose >= 2:  # noqa: PLR2004
        return logging.DEBUG
    if verbose == 1:
        return logging.INFO
    return logging.WARNING


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)
