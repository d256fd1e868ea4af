"""Run a fixed pool of handler loops over one job tree."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from hydra_eval_jobs.eval_jobs.frontier import Frontier
from hydra_eval_jobs.eval_jobs.handler import HandlerLoop, WorkerLauncher
from hydra_eval_jobs.eval_jobs.models import EvalRunResult, EvalRunSummary

logger = logging.getLogger(__name__)

_JOIN_POLL_SECONDS = 0.2


class EvalInterrupted(RuntimeError):
    """The run was stopped by a signal before the tree was exhausted."""


class EvalJobsDriver:
    """Start ``workers`` handler loops, wait for all of them, then report.

    The first fatal error recorded by any loop is re-raised here, after every
    loop has joined; partial results are discarded in that case.
    """

    def __init__(
        self,
        *,
        launcher: WorkerLauncher,
        workers: int = 1,
        install_signal_handlers: bool = True,
    ) -> None:
        if workers < 1:
            raise ValueError("Number of workers must be a positive integer.")
        self.launcher = launcher
        self.workers = workers
        self.install_signal_handlers = install_signal_handlers
        self.frontier: Frontier | None = None

    def run(self) -> EvalRunResult:
        frontier = Frontier()
        self.frontier = frontier
        loops = [
            HandlerLoop(frontier=frontier, launcher=self.launcher, slot=slot)
            for slot in range(self.workers)
        ]
        threads = [
            threading.Thread(target=loop.run, name=f"eval-handler-{loop.slot}", daemon=True)
            for loop in loops
        ]

        with self._signal_handlers(frontier):
            for thread in threads:
                thread.start()
            for thread in threads:
                while thread.is_alive():
                    thread.join(_JOIN_POLL_SECONDS)

        summary = EvalRunSummary()
        for loop in loops:
            summary.add(loop.stats)

        error = frontier.fatal_error
        if error is not None:
            raise error

        jobs = frontier.results()
        summary.errors = sum(1 for entry in jobs.values() if "error" in entry)
        summary.jobs = len(jobs) - summary.errors
        logger.info(
            "Evaluation finished: jobs=%d errors=%d evaluated=%d workers_spawned=%d "
            "memory_restarts=%d",
            summary.jobs,
            summary.errors,
            summary.evaluated,
            summary.workers_spawned,
            summary.memory_restarts,
        )
        return EvalRunResult(jobs=jobs, summary=summary)

    def interrupt(self, reason: str = "interrupted") -> None:
        """Stop claiming new work; in-flight evaluations are allowed to finish."""

        if self.frontier is not None:
            self.frontier.fail_fatally(EvalInterrupted(reason))

    @contextmanager
    def _signal_handlers(self, frontier: Frontier) -> Iterator[None]:
        if not self.install_signal_handlers or not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            if frontier.fail_fatally(EvalInterrupted(f"interrupted by {name}")):
                logger.warning("Received %s, waiting for in-flight evaluations", name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            logger.debug("Not running in the main thread, signals are not handled")
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
