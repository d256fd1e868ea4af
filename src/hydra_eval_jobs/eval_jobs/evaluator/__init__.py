"""Evaluator backends wrapped by worker processes."""

from hydra_eval_jobs.eval_jobs.evaluator.base import (
    AutoArg,
    EvalError,
    Evaluator,
    EvaluatorConfig,
    EvaluatorStartupError,
)
from hydra_eval_jobs.eval_jobs.evaluator.json_tree import JsonTreeEvaluator
from hydra_eval_jobs.eval_jobs.evaluator.nix_cli import NixCliEvaluator

__all__ = [
    "AutoArg",
    "EvalError",
    "Evaluator",
    "EvaluatorConfig",
    "EvaluatorStartupError",
    "JsonTreeEvaluator",
    "NixCliEvaluator",
    "create_evaluator",
]


def create_evaluator(backend: str, config: EvaluatorConfig) -> Evaluator:
    """Instantiate the configured backend without initializing it."""

    if backend == "nix":
        return NixCliEvaluator(config)
    if backend == "json":
        return JsonTreeEvaluator(config)
    raise ValueError(f"Unsupported evaluator backend: {backend!r}")
