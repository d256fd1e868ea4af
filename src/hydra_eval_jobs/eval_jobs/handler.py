"""Handler loop driving one worker process from the shared frontier."""

from __future__ import annotations

import logging
import subprocess
import sys
from collections.abc import Sequence
from enum import Enum

from hydra_eval_jobs.eval_jobs.frontier import Frontier
from hydra_eval_jobs.eval_jobs.models import HandlerStats, JobResult, ResultKind, join_attr_path
from hydra_eval_jobs.eval_jobs.protocol import (
    MessageKind,
    ProtocolError,
    WorkerMessage,
    decode_worker_message,
    encode_do,
    encode_exit,
)
from hydra_eval_jobs.eval_jobs.worker import WORKER_MODULE, WorkerOptions

logger = logging.getLogger(__name__)


class WorkerError(RuntimeError):
    """Unrecoverable worker fault; fatal for the whole run."""


class WorkerState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    EXITED = "exited"


class WorkerHandle:
    """One worker process and its two pipes, owned by a single handler loop."""

    def __init__(self, process: subprocess.Popen[str], *, shutdown_seconds: float = 10.0) -> None:
        self.process = process
        self.state = WorkerState.STARTING
        self.shutdown_seconds = shutdown_seconds

    @property
    def pid(self) -> int:
        return self.process.pid

    def send(self, line: str) -> None:
        stdin = self.process.stdin
        if stdin is None:
            raise WorkerError(f"worker process {self.pid} has no command channel")
        try:
            stdin.write(line)
            stdin.flush()
        except (BrokenPipeError, ValueError) as error:
            self.state = WorkerState.EXITED
            raise WorkerError(f"worker process {self.pid} stopped accepting commands") from error

    def read_message(self) -> WorkerMessage | None:
        """Next record from the worker, or None at end of stream."""

        stdout = self.process.stdout
        if stdout is None:
            raise WorkerError(f"worker process {self.pid} has no reply channel")
        line = stdout.readline()
        if not line:
            self.state = WorkerState.EXITED
            return None
        return decode_worker_message(line)

    def exit_code(self) -> int | None:
        try:
            return self.process.wait(timeout=self.shutdown_seconds)
        except subprocess.TimeoutExpired:
            return None

    def shutdown(self) -> None:
        """Ask the worker to exit, then reap it."""

        if self.state is not WorkerState.EXITED:
            try:
                self.send(encode_exit())
            except WorkerError:
                logger.debug("Worker process %d was gone before exit", self.pid)
        self.reap()

    def reap(self) -> None:
        """Wait for a worker that is exiting on its own; terminate it if it lingers."""

        self._close_pipes()
        try:
            self.process.wait(timeout=self.shutdown_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Worker process %d did not exit, terminating", self.pid)
            _terminate_process(self.process)
        self.state = WorkerState.EXITED

    def kill(self) -> None:
        self._close_pipes()
        _terminate_process(self.process)
        self.state = WorkerState.EXITED

    def _close_pipes(self) -> None:
        for stream in (self.process.stdin, self.process.stdout):
            if stream is None or stream.closed:
                continue
            try:
                stream.close()
            except BrokenPipeError:
                logger.debug("Worker process %d pipe already closed", self.pid)


class WorkerLauncher:
    """Spawn worker processes speaking the channel protocol on stdin/stdout."""

    def __init__(self, command: Sequence[str], *, shutdown_seconds: float = 10.0) -> None:
        if not command:
            raise ValueError("Worker command must not be empty.")
        self.command = list(command)
        self.shutdown_seconds = shutdown_seconds

    @classmethod
    def for_options(
        cls,
        options: WorkerOptions,
        *,
        shutdown_seconds: float = 10.0,
    ) -> WorkerLauncher:
        return cls(
            [sys.executable, "-m", WORKER_MODULE, *options.to_argv()],
            shutdown_seconds=shutdown_seconds,
        )

    def spawn(self) -> WorkerHandle:
        process = subprocess.Popen(  # noqa: S603
            self.command,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            bufsize=1,
        )
        logger.debug("created worker process %d", process.pid)
        return WorkerHandle(process, shutdown_seconds=self.shutdown_seconds)


class HandlerLoop:
    """Claim, dispatch and fold until the frontier drains or the run fails.

    States: no worker -> awaiting ready -> claiming -> dispatching ->
    awaiting response -> folding -> claiming. A ``restart`` record sends the
    loop back to spawning; the claimed path, if any, stays active and is
    dispatched to the fresh worker.
    """

    def __init__(self, *, frontier: Frontier, launcher: WorkerLauncher, slot: int = 0) -> None:
        self.frontier = frontier
        self.launcher = launcher
        self.slot = slot
        self.stats = HandlerStats()
        self._worker: WorkerHandle | None = None

    def run(self) -> None:
        clean = False
        try:
            self._run()
            clean = True
        except Exception as error:  # noqa: BLE001
            if self.frontier.fail_fatally(error):
                logger.error("Handler %d failed: %s", self.slot, error)
            else:
                logger.debug("Handler %d failed after run was aborted: %s", self.slot, error)
        finally:
            if self._worker is not None:
                if clean:
                    self._worker.shutdown()
                else:
                    self._worker.kill()
                self._worker = None

    def _run(self) -> None:
        attr_path: str | None = None
        while True:
            if self._worker is None:
                if self.frontier.fatal_error is not None:
                    return
                self._worker = self.launcher.spawn()
                self.stats.workers_spawned += 1

            if not self._await_ready(self._worker):
                self._retire_worker()
                continue

            if attr_path is None:
                attr_path = self.frontier.claim()
                if attr_path is None:
                    return
            elif self.frontier.fatal_error is not None:
                # The run is over; the path stays active and is never folded.
                return

            self._worker.send(encode_do(attr_path))
            result = self._await_response(self._worker, attr_path)
            if result is None:
                self._retire_worker()
                continue

            self._fold(attr_path, result)
            attr_path = None

    def _await_ready(self, worker: WorkerHandle) -> bool:
        """True once the worker is ready; False when it asked to be replaced."""

        first = worker.state is WorkerState.STARTING
        message = self._read(worker, context="waiting for readiness")
        if message is None:
            if first:
                raise WorkerError(
                    f"worker process {worker.pid} failed to start "
                    f"(exit code {worker.exit_code()})",
                )
            raise WorkerError(
                f"worker process {worker.pid} exited unexpectedly (exit code {worker.exit_code()})",
            )
        if message.kind is MessageKind.READY:
            worker.state = WorkerState.READY
            return True
        if message.kind is MessageKind.RESTART:
            logger.info("Worker process %d requested restart", worker.pid)
            return False
        if message.result is not None and message.result.kind is ResultKind.ERROR:
            raise WorkerError(f"worker error: {message.result.error}")
        raise WorkerError(f"worker process {worker.pid} sent an unexpected record")

    def _await_response(self, worker: WorkerHandle, attr_path: str) -> JobResult | None:
        """The worker's answer for ``attr_path``, or None if it restarts instead."""

        message = self._read(worker, context=f"evaluating '{attr_path}'")
        if message is None:
            raise WorkerError(
                f"worker process {worker.pid} exited unexpectedly while evaluating "
                f"'{attr_path}' (exit code {worker.exit_code()})",
            )
        if message.kind is MessageKind.RESTART:
            logger.info(
                "Worker process %d restarted before answering '%s', re-dispatching",
                worker.pid,
                attr_path,
            )
            return None
        if message.kind is not MessageKind.RESULT or message.result is None:
            raise WorkerError(
                f"worker process {worker.pid} sent '{message.kind.value}' instead of a result "
                f"for '{attr_path}'",
            )
        return message.result

    def _read(self, worker: WorkerHandle, *, context: str) -> WorkerMessage | None:
        try:
            return worker.read_message()
        except ProtocolError as error:
            raise WorkerError(f"worker process {worker.pid} {context}: {error}") from error

    def _fold(self, attr_path: str, result: JobResult) -> None:
        children = [join_attr_path(attr_path, name) for name in result.children]
        self.frontier.fold(attr_path, result, children)
        self.stats.evaluated += 1

    def _retire_worker(self) -> None:
        """Reap a worker that announced a restart."""

        if self._worker is not None:
            self.stats.memory_restarts += 1
            self._worker.state = WorkerState.EXITED
            self._worker.reap()
            self._worker = None


def _terminate_process(process: subprocess.Popen[str]) -> None:
    if process.poll() is not None:
        return
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
