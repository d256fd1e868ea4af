"""Shared todo/active/results state for the handler loops."""

from __future__ import annotations

import heapq
import threading
from collections.abc import Iterable
from typing import Any

from hydra_eval_jobs.eval_jobs.models import ROOT_ATTR_PATH, JobResult


class Frontier:
    """Work discovered while it is being consumed.

    All state sits behind one lock; the paired condition is notified on every
    change that can unblock a claimant. A path lives in at most one of ``todo``
    and ``active``, and leaves ``active`` only once its result has been folded.
    """

    def __init__(self, root: str = ROOT_ATTR_PATH) -> None:
        self._lock = threading.Lock()
        self._wakeup = threading.Condition(self._lock)
        self._todo: set[str] = {root}
        self._todo_order: list[str] = [root]
        self._active: set[str] = set()
        self._results: dict[str, dict[str, Any]] = {}
        self._fatal_error: BaseException | None = None

    def claim(self) -> str | None:
        """Take the smallest pending path, or return None once the run is over."""

        with self._wakeup:
            while True:
                if self._fatal_error is not None:
                    return None
                if self._todo:
                    attr_path = heapq.heappop(self._todo_order)
                    self._todo.remove(attr_path)
                    self._active.add(attr_path)
                    return attr_path
                if not self._active:
                    return None
                self._wakeup.wait()

    def fold(
        self,
        attr_path: str,
        result: JobResult,
        discovered_children: Iterable[str] = (),
    ) -> None:
        """Record the claimant's result and publish its children."""

        entry = result.to_output()
        with self._wakeup:
            if attr_path not in self._active:
                raise RuntimeError(f"Attribute path {attr_path!r} is not claimed.")
            if entry is not None:
                self._results[attr_path] = entry
            self._active.remove(attr_path)
            for child in discovered_children:
                if child in self._todo or child in self._active or child in self._results:
                    continue
                self._todo.add(child)
                heapq.heappush(self._todo_order, child)
            self._wakeup.notify_all()

    def fail_fatally(self, error: BaseException) -> bool:
        """Record the run-level failure; only the first caller wins."""

        with self._wakeup:
            recorded = self._fatal_error is None
            if recorded:
                self._fatal_error = error
            self._wakeup.notify_all()
            return recorded

    @property
    def fatal_error(self) -> BaseException | None:
        with self._lock:
            return self._fatal_error

    def pending(self) -> tuple[int, int]:
        """Sizes of ``todo`` and ``active``."""

        with self._lock:
            return len(self._todo), len(self._active)

    def results(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {attr_path: dict(entry) for attr_path, entry in self._results.items()}
