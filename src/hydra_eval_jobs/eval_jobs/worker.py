"""Worker process hosting one evaluator instance.

Run as ``python -m hydra_eval_jobs.eval_jobs.worker``. Stdin carries commands
from the coordinator and stdout carries replies; logging goes to stderr.
"""

from __future__ import annotations

import argparse
import contextlib
import logging
import os
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from hydra_eval_jobs.eval_jobs.evaluator import (
    AutoArg,
    EvalError,
    Evaluator,
    EvaluatorConfig,
    create_evaluator,
)
from hydra_eval_jobs.eval_jobs.gc_roots import GcRootRegistrar
from hydra_eval_jobs.eval_jobs.models import JobResult, ResultKind, is_valid_attr_name
from hydra_eval_jobs.eval_jobs.protocol import (
    CommandKind,
    decode_command,
    encode_error,
    encode_ready,
    encode_restart,
    encode_result,
)

logger = logging.getLogger(__name__)

WORKER_MODULE = "hydra_eval_jobs.eval_jobs.worker"
LOG_FORMAT = "%(asctime)s %(levelname)s [worker %(process)d] %(name)s: %(message)s"


@dataclass(slots=True)
class WorkerOptions:
    """Everything a worker process needs, passed on its command line."""

    evaluator: str
    config: EvaluatorConfig
    max_memory_size_mib: int
    gc_roots_dir: Path | None = None
    log_level: int = logging.WARNING

    def to_argv(self) -> list[str]:
        argv = [
            "--evaluator",
            self.evaluator,
            "--max-memory-size",
            str(self.max_memory_size_mib),
            "--nix-bin",
            self.config.nix_bin,
            "--log-level",
            str(self.log_level),
        ]
        if self.config.flake:
            argv.append("--flake")
        if self.config.dry_run:
            argv.append("--dry-run")
        if self.gc_roots_dir is not None:
            argv += ["--gc-roots-dir", str(self.gc_roots_dir)]
        for arg in self.config.auto_args:
            argv += ["--argstr" if arg.is_string else "--arg", arg.name, arg.value]
        for entry in self.config.search_path:
            argv += ["-I", entry]
        argv += ["--", self.config.release_expr]
        return argv


def parse_worker_args(argv: list[str] | None = None) -> WorkerOptions:
    parser = argparse.ArgumentParser(prog=WORKER_MODULE)
    parser.add_argument("--evaluator", default="nix")
    parser.add_argument("--max-memory-size", type=int, required=True)
    parser.add_argument("--nix-bin", default="nix")
    parser.add_argument("--log-level", type=int, default=logging.WARNING)
    parser.add_argument("--flake", action="store_true")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--gc-roots-dir", type=Path, default=None)
    parser.add_argument("--arg", nargs=2, action="append", default=[], metavar=("NAME", "EXPR"))
    parser.add_argument("--argstr", nargs=2, action="append", default=[], metavar=("NAME", "VALUE"))
    parser.add_argument("-I", dest="search_path", action="append", default=[])
    parser.add_argument("release_expr")
    args = parser.parse_args(argv)

    auto_args = tuple(AutoArg(name=name, value=value) for name, value in args.arg) + tuple(
        AutoArg(name=name, value=value, is_string=True) for name, value in args.argstr
    )
    return WorkerOptions(
        evaluator=args.evaluator,
        config=EvaluatorConfig(
            release_expr=args.release_expr,
            flake=args.flake,
            dry_run=args.dry_run,
            auto_args=auto_args,
            search_path=tuple(args.search_path),
            nix_bin=args.nix_bin,
        ),
        max_memory_size_mib=args.max_memory_size,
        gc_roots_dir=args.gc_roots_dir,
        log_level=args.log_level,
    )


class EvalWorker:
    """Answers ``do`` commands until told to exit or memory runs over the ceiling."""

    def __init__(
        self,
        *,
        evaluator: Evaluator,
        max_memory_size_mib: int,
        gc_roots: GcRootRegistrar | None = None,
    ) -> None:
        self.evaluator = evaluator
        self.max_memory_bytes = max_memory_size_mib * 1024 * 1024
        self.gc_roots = gc_roots

    def serve(self, channel_in: TextIO, channel_out: TextIO) -> int:
        while True:
            _write_line(channel_out, encode_ready())

            line = channel_in.readline()
            if not line:
                logger.debug("Coordinator closed the channel")
                return 0
            command = decode_command(line)
            if command.kind is CommandKind.EXIT:
                return 0

            attr_path = command.attr_path or ""
            logger.debug("worker process %d at '%s'", os.getpid(), attr_path)
            _write_line(channel_out, encode_result(self.evaluate(attr_path)))

            if self.memory_exceeded():
                logger.info(
                    "Worker process %d exceeded %d MiB, requesting restart",
                    os.getpid(),
                    self.max_memory_bytes // (1024 * 1024),
                )
                _write_line(channel_out, encode_restart())
                return 0

    def evaluate(self, attr_path: str) -> JobResult:
        try:
            result = self.evaluator.resolve(attr_path)
        except EvalError as error:
            message = str(error)
            logger.error("error: %s", message)
            return JobResult.for_error(message)

        if result.kind is ResultKind.JOB and self.gc_roots is not None and result.drv_path:
            self.gc_roots.register(result.drv_path)
        if result.kind is ResultKind.CHILDREN:
            return JobResult.for_children(_legal_child_names(result.children))
        return result

    def memory_exceeded(self) -> bool:
        return self.evaluator.current_memory_usage() > self.max_memory_bytes


def _legal_child_names(names: tuple[str, ...]) -> list[str]:
    legal: list[str] = []
    for name in names:
        if not is_valid_attr_name(name):
            logger.warning("skipping job with illegal name '%s'", name)
            continue
        legal.append(name)
    return legal


def _write_line(channel: TextIO, line: str) -> None:
    channel.write(line)
    channel.flush()


def main(argv: list[str] | None = None) -> int:
    """Run one worker session over stdin/stdout."""

    options = parse_worker_args(argv)
    logging.basicConfig(level=options.log_level, format=LOG_FORMAT, stream=sys.stderr)
    # Interrupts are handled by the coordinator, which lets in-flight work finish.
    signal.signal(signal.SIGINT, signal.SIG_IGN)

    channel_in, channel_out = sys.stdin, sys.stdout
    sys.stdout = sys.stderr

    gc_roots = None
    if options.gc_roots_dir is not None:
        if options.config.dry_run:
            logger.debug("Dry run: not registering GC roots in %s", options.gc_roots_dir)
        else:
            gc_roots = GcRootRegistrar(options.gc_roots_dir)

    try:
        evaluator = create_evaluator(options.evaluator, options.config)
        evaluator.initialize()
        worker = EvalWorker(
            evaluator=evaluator,
            max_memory_size_mib=options.max_memory_size_mib,
            gc_roots=gc_roots,
        )
        return worker.serve(channel_in, channel_out)
    except Exception as error:  # noqa: BLE001
        message = str(error) or type(error).__name__
        logger.error("error: %s", message)
        with contextlib.suppress(BrokenPipeError):
            _write_line(channel_out, encode_error(message))
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
