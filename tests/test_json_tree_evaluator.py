from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import allure
import pytest

from hydra_eval_jobs.eval_jobs.evaluator import (
    AutoArg,
    EvalError,
    EvaluatorConfig,
    EvaluatorStartupError,
    JsonTreeEvaluator,
    create_evaluator,
)
from hydra_eval_jobs.eval_jobs.evaluator.base import clean_error_message
from hydra_eval_jobs.eval_jobs.models import JobResult, ResultKind

pytestmark = [
    allure.epic("Job Evaluation"),
    allure.feature("Evaluators"),
]


def _drv(name: str, system: str | None = "x86_64-linux") -> dict[str, Any]:
    value: dict[str, Any] = {"type": "derivation", "drvPath": f"/nix/store/abc-{name}.drv"}
    if system is not None:
        value["system"] = system
    return value


TREE = {
    "hello": _drv("hello"),
    "pkgs": {"zlib": _drv("zlib"), "curl": _drv("curl")},
    "nothing": None,
    "count": 3,
    "nosystem": _drv("nosystem", system=None),
    "unknownsystem": _drv("unknownsystem", system="unknown"),
}


def _evaluator(path: Path, **overrides: Any) -> JsonTreeEvaluator:
    evaluator = JsonTreeEvaluator(EvaluatorConfig(release_expr=str(path), **overrides))
    evaluator.initialize()
    return evaluator


def test_root_lists_sorted_children(write_tree: Callable[..., Path]) -> None:
    evaluator = _evaluator(write_tree(TREE))

    result = evaluator.resolve("")

    assert result.kind is ResultKind.CHILDREN
    assert result.children == ("count", "hello", "nosystem", "nothing", "pkgs", "unknownsystem")


def test_resolve_job_nested_set_and_null(write_tree: Callable[..., Path]) -> None:
    evaluator = _evaluator(write_tree(TREE))

    assert evaluator.resolve("hello") == JobResult.for_job("/nix/store/abc-hello.drv")
    assert evaluator.resolve("pkgs").children == ("curl", "zlib")
    assert evaluator.resolve("pkgs.zlib").drv_path == "/nix/store/abc-zlib.drv"
    assert evaluator.resolve("nothing").kind is ResultKind.EMPTY


@pytest.mark.parametrize(
    ("attr_path", "match"),
    [
        ("count", "is an integer, which is not supported"),
        ("nosystem", "must have a 'system' attribute"),
        ("unknownsystem", "must have a 'system' attribute"),
        ("missing", "attribute 'missing' in selection path 'missing' not found"),
        ("pkgs.missing", "attribute 'missing' in selection path 'pkgs.missing' not found"),
        ("count.x", "should be a set but is an integer"),
        ("hello.out", "should be a set but is a derivation"),
    ],
)
def test_resolve_reports_node_errors(
    write_tree: Callable[..., Path],
    attr_path: str,
    match: str,
) -> None:
    evaluator = _evaluator(write_tree(TREE))

    with pytest.raises(EvalError, match=match):
        evaluator.resolve(attr_path)


def test_initialize_rejects_unreadable_and_invalid_files(tmp_path: Path) -> None:
    with pytest.raises(EvaluatorStartupError, match="cannot read job tree"):
        _evaluator(tmp_path / "missing.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", "utf-8")
    with pytest.raises(EvaluatorStartupError, match="not valid JSON"):
        _evaluator(broken)


def test_initialize_rejects_flake_mode(write_tree: Callable[..., Path]) -> None:
    with pytest.raises(EvaluatorStartupError, match="flake mode requires the nix evaluator"):
        _evaluator(write_tree(TREE), flake=True)


def test_auto_args_are_ignored_with_warning(
    write_tree: Callable[..., Path],
    caplog: pytest.LogCaptureFixture,
) -> None:
    evaluator = _evaluator(write_tree(TREE), auto_args=(AutoArg(name="system", value="x"),))

    assert evaluator.resolve("hello").kind is ResultKind.JOB
    assert "Ignoring 1 auto argument(s)" in caplog.text


def test_resolve_before_initialize_is_a_programming_error(tmp_path: Path) -> None:
    evaluator = JsonTreeEvaluator(EvaluatorConfig(release_expr=str(tmp_path / "jobs.json")))

    with pytest.raises(RuntimeError, match="not initialized"):
        evaluator.resolve("")


def test_memory_usage_is_positive(write_tree: Callable[..., Path]) -> None:
    assert _evaluator(write_tree(TREE)).current_memory_usage() > 0


def test_create_evaluator_rejects_unknown_backend(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="Unsupported evaluator backend"):
        create_evaluator("guile", EvaluatorConfig(release_expr=str(tmp_path)))


def test_clean_error_message_strips_color_and_prefix() -> None:
    raw = "\x1b[31;1merror:\x1b[0m attribute 'x' missing\r\n"

    assert clean_error_message(raw) == "attribute 'x' missing"
