"""Evaluator over a pre-computed JSON job tree.

Objects whose ``type`` is ``"derivation"`` are jobs and carry ``drvPath`` and
``system``; other objects are attribute sets, ``null`` is an empty node, and
anything else is unsupported. Useful for offline runs and integration tests.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from hydra_eval_jobs.eval_jobs.evaluator.base import (
    MISSING_SYSTEM_MESSAGE,
    EvalError,
    EvaluatorConfig,
    EvaluatorStartupError,
    missing_attribute_message,
    not_a_set_message,
    peak_rss_bytes,
    unsupported_value_message,
)
from hydra_eval_jobs.eval_jobs.models import JobResult, split_attr_path

logger = logging.getLogger(__name__)


class JsonTreeEvaluator:
    """Resolve attribute paths against a JSON document loaded once."""

    def __init__(self, config: EvaluatorConfig) -> None:
        self.config = config
        self._root: Any = None
        self._loaded = False

    def initialize(self) -> None:
        if self.config.flake:
            raise EvaluatorStartupError("flake mode requires the nix evaluator")
        if self.config.auto_args:
            logger.warning(
                "Ignoring %d auto argument(s) for JSON job tree",
                len(self.config.auto_args),
            )
        path = Path(self.config.release_expr)
        try:
            self._root = json.loads(path.read_text("utf-8"))
        except OSError as error:
            raise EvaluatorStartupError(f"cannot read job tree '{path}': {error}") from error
        except json.JSONDecodeError as error:
            raise EvaluatorStartupError(f"job tree '{path}' is not valid JSON: {error}") from error
        self._loaded = True

    def resolve(self, attr_path: str) -> JobResult:
        if not self._loaded:
            raise RuntimeError("Evaluator is not initialized.")

        value = self._root
        selected: list[str] = []
        for name in split_attr_path(attr_path):
            if not isinstance(value, dict) or _is_derivation(value):
                type_name = "derivation" if isinstance(value, dict) else _type_name(value)
                raise EvalError(not_a_set_message(".".join(selected), type_name))
            if name not in value:
                raise EvalError(missing_attribute_message(name, attr_path))
            value = value[name]
            selected.append(name)

        if value is None:
            return JobResult.empty()
        if isinstance(value, dict) and _is_derivation(value):
            return _job_result(value)
        if isinstance(value, dict):
            return JobResult.for_children(sorted(value))
        raise EvalError(unsupported_value_message(attr_path, _type_name(value)))

    def current_memory_usage(self) -> int:
        return peak_rss_bytes()


def _is_derivation(value: dict[str, Any]) -> bool:
    return value.get("type") == "derivation"


def _job_result(value: dict[str, Any]) -> JobResult:
    system = value.get("system")
    if not isinstance(system, str) or not system or system == "unknown":
        raise EvalError(MISSING_SYSTEM_MESSAGE)
    drv_path = value.get("drvPath")
    if not isinstance(drv_path, str) or not drv_path:
        raise EvalError("derivation must have a 'drvPath' attribute")
    return JobResult.for_job(drv_path)


def _type_name(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "float"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "list"
    if isinstance(value, dict):
        return "set"
    return "null"
