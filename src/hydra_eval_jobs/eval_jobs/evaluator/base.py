"""Evaluator interface wrapped by one worker process."""

from __future__ import annotations

import re
import resource
import sys
from dataclasses import dataclass
from typing import Protocol

from hydra_eval_jobs.eval_jobs.models import JobResult

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\][^\x07]*(?:\x07|\x1b\\)")


class EvalError(RuntimeError):
    """Evaluation failure local to one attribute path."""


class EvaluatorStartupError(RuntimeError):
    """The job tree root could not be loaded; fatal for the whole run."""


@dataclass(slots=True, frozen=True)
class AutoArg:
    """Argument passed to functions met along a selection path."""

    name: str
    value: str
    is_string: bool = False


@dataclass(slots=True)
class EvaluatorConfig:
    """Explicit startup configuration handed to ``initialize``."""

    release_expr: str
    flake: bool = False
    dry_run: bool = False
    auto_args: tuple[AutoArg, ...] = ()
    search_path: tuple[str, ...] = ()
    nix_bin: str = "nix"


class Evaluator(Protocol):
    """Protocol implemented by evaluator backends."""

    def initialize(self) -> None:
        """Load the root value once; raise ``EvaluatorStartupError`` on failure."""

    def resolve(self, attr_path: str) -> JobResult:
        """Resolve one path to a job, child names or empty; raise ``EvalError`` otherwise."""

    def current_memory_usage(self) -> int:
        """Peak resident memory in bytes attributable to this evaluator."""


def clean_error_message(text: str) -> str:
    """Strip terminal escapes and the leading ``error:`` marker of evaluator output."""

    cleaned = _ANSI_ESCAPE.sub("", text).replace("\r", "").strip()
    if cleaned.startswith("error:"):
        cleaned = cleaned[len("error:") :].strip()
    return cleaned


def peak_rss_bytes(*, include_children: bool = False) -> int:
    """Peak resident set size of this process, optionally of its reaped children."""

    # ru_maxrss is reported in KiB on Linux and in bytes on macOS.
    scale = 1 if sys.platform == "darwin" else 1024
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    if include_children:
        peak = max(peak, resource.getrusage(resource.RUSAGE_CHILDREN).ru_maxrss)
    return int(peak) * scale


_TYPE_DESCRIPTIONS = {
    "int": "an integer",
    "float": "a float",
    "bool": "a Boolean",
    "string": "a string",
    "path": "a path",
    "list": "a list",
    "lambda": "a function",
    "set": "a set",
    "null": "null",
    "derivation": "a derivation",
}


def describe_type(type_name: str) -> str:
    return _TYPE_DESCRIPTIONS.get(type_name, f"a value of type {type_name}")


def unsupported_value_message(attr_path: str, type_name: str) -> str:
    return f"attribute '{attr_path}' is {describe_type(type_name)}, which is not supported"


def missing_attribute_message(name: str, attr_path: str) -> str:
    return f"attribute '{name}' in selection path '{attr_path}' not found"


def not_a_set_message(attr_path: str, type_name: str) -> str:
    return (
        f"the expression selected by the selection path '{attr_path}' "
        f"should be a set but is {describe_type(type_name)}"
    )


MISSING_SYSTEM_MESSAGE = "derivation must have a 'system' attribute"
