"""Evaluator backed by the ``nix`` command line."""

from __future__ import annotations

import json
import logging
import os
import subprocess
from pathlib import Path
from typing import Any

from hydra_eval_jobs.eval_jobs.evaluator.base import (
    MISSING_SYSTEM_MESSAGE,
    EvalError,
    EvaluatorConfig,
    EvaluatorStartupError,
    clean_error_message,
    missing_attribute_message,
    not_a_set_message,
    peak_rss_bytes,
    unsupported_value_message,
)
from hydra_eval_jobs.eval_jobs.models import ROOT_ATTR_PATH, JobResult, split_attr_path

logger = logging.getLogger(__name__)

EXPERIMENTAL_FEATURES = "nix-command flakes"

_RESOLVE_TEMPLATE = """\
let
  autoArgs = {auto_args};
  autoCall = value:
    if builtins.isFunction value
    then value (builtins.intersectAttrs (builtins.functionArgs value) autoArgs)
    else value;
  root = {root};
  walk = builtins.foldl' (acc: name:
    if acc ? failure then acc
    else
      let current = autoCall acc.value; in
      if !(builtins.isAttrs current) then
        {{ failure = "not-a-set"; path = acc.path; type = builtins.typeOf current; }}
      else if !(builtins.hasAttr name current) then
        {{ failure = "missing"; inherit name; }}
      else
        {{
          value = builtins.getAttr name current;
          path = if acc.path == "" then name else "${{acc.path}}.${{name}}";
        }}
  ) {{ value = root; path = ""; }} {segments};
in
  if walk ? failure then walk
  else
    let value = autoCall walk.value; in
    if value == null then {{ kind = "empty"; }}
    else if builtins.isAttrs value && (value.type or null) == "derivation" then
      {{ kind = "job"; drvPath = value.drvPath; system = value.system or "unknown"; }}
    else if builtins.isAttrs value then
      {{ kind = "attrs"; names = builtins.attrNames value; }}
    else
      {{ kind = "unsupported"; type = builtins.typeOf value; }}
"""


class NixCliEvaluator:
    """Resolve attribute paths by running ``nix eval`` on a generated expression.

    Evaluation is restricted, remote builders are disabled and ``NIX_PATH`` is
    dropped from the environment so that jobs cannot depend on the caller's
    channels. Flakes are locked once at startup and evaluated purely.

    Every path is a separate ``nix eval`` that imports the release expression
    again, so evaluator memory is returned when that child exits and nothing
    evaluated for one path is shared with the next. The worker's memory
    ceiling therefore only sees the peak of the largest single evaluation.
    """

    def __init__(self, config: EvaluatorConfig) -> None:
        self.config = config
        self._root_expr: str | None = None
        self._root_payload: Any = None
        self._env = _evaluation_env()

    def initialize(self) -> None:
        if self.config.flake:
            locked_url = self._lock_flake()
            self._root_expr = flake_root_expr(locked_url, self.config.release_expr)
        else:
            self._root_expr = file_root_expr(self.config.release_expr)

        try:
            self._root_payload = self._evaluate(ROOT_ATTR_PATH)
        except EvalError as error:
            raise EvaluatorStartupError(str(error)) from error
        except FileNotFoundError as error:
            raise EvaluatorStartupError(f"cannot run '{self.config.nix_bin}': {error}") from error

    def resolve(self, attr_path: str) -> JobResult:
        if self._root_expr is None:
            raise RuntimeError("Evaluator is not initialized.")
        if attr_path == ROOT_ATTR_PATH and self._root_payload is not None:
            # Only loading the root is fatal; its shape is judged like any node.
            payload, self._root_payload = self._root_payload, None
            return classify_resolution(attr_path, payload)
        return classify_resolution(attr_path, self._evaluate(attr_path))

    def current_memory_usage(self) -> int:
        return peak_rss_bytes(include_children=True)

    def _evaluate(self, attr_path: str) -> Any:
        expr = build_resolve_expr(
            root_expr=self._root_expr or "null",
            attr_path=attr_path,
            auto_args=render_auto_args(self.config),
        )
        return self._run_json(build_eval_argv(self.config, expr))

    def _lock_flake(self) -> str:
        argv = [
            self.config.nix_bin,
            "flake",
            "metadata",
            "--json",
            "--extra-experimental-features",
            EXPERIMENTAL_FEATURES,
            "--no-update-lock-file",
            "--option",
            "use-registries",
            "false",
            self.config.release_expr,
        ]
        try:
            metadata = self._run_json(argv)
        except EvalError as error:
            raise EvaluatorStartupError(
                f"cannot lock flake '{self.config.release_expr}': {error}",
            ) from error
        except FileNotFoundError as error:
            raise EvaluatorStartupError(f"cannot run '{self.config.nix_bin}': {error}") from error
        locked_url = metadata.get("url") if isinstance(metadata, dict) else None
        if not isinstance(locked_url, str) or not locked_url:
            raise EvaluatorStartupError(
                f"flake '{self.config.release_expr}' could not be resolved to a locked reference",
            )
        logger.debug("Locked flake %s as %s", self.config.release_expr, locked_url)
        return locked_url

    def _run_json(self, argv: list[str]) -> Any:
        completed = subprocess.run(  # noqa: S603
            argv,
            env=self._env,
            capture_output=True,
            text=True,
            check=False,
        )
        if completed.returncode != 0:
            message = clean_error_message(completed.stderr) or (
                f"{argv[0]} exited with code {completed.returncode}"
            )
            raise EvalError(message)
        try:
            return json.loads(completed.stdout)
        except json.JSONDecodeError as error:
            snippet = completed.stdout[:200]
            raise EvalError(f"unexpected output from {argv[0]}: {snippet!r}") from error


def classify_resolution(attr_path: str, payload: Any) -> JobResult:
    """Turn the descriptor produced by the resolve expression into a result."""

    if not isinstance(payload, dict):
        raise EvalError(f"unexpected evaluation result for '{attr_path}'")

    failure = payload.get("failure")
    if failure == "missing":
        raise EvalError(missing_attribute_message(str(payload.get("name", "")), attr_path))
    if failure == "not-a-set":
        raise EvalError(not_a_set_message(str(payload.get("path", "")), str(payload.get("type"))))

    kind = payload.get("kind")
    if kind == "empty":
        return JobResult.empty()
    if kind == "job":
        if payload.get("system") in (None, "", "unknown"):
            raise EvalError(MISSING_SYSTEM_MESSAGE)
        return JobResult.for_job(str(payload["drvPath"]))
    if kind == "attrs":
        names = payload.get("names") or []
        return JobResult.for_children([str(name) for name in names])
    raise EvalError(unsupported_value_message(attr_path, str(payload.get("type"))))


def build_eval_argv(config: EvaluatorConfig, expr: str) -> list[str]:
    argv = [
        config.nix_bin,
        "eval",
        "--json",
        "--extra-experimental-features",
        EXPERIMENTAL_FEATURES,
        "--option",
        "restrict-eval",
        "true",
        "--option",
        "builders",
        "",
    ]
    if config.flake:
        argv += ["--option", "pure-eval", "true"]
    else:
        argv.append("--impure")
    if config.dry_run:
        argv.append("--read-only")
    for entry in _search_path(config):
        argv += ["-I", entry]
    argv += ["--expr", expr]
    return argv


def build_resolve_expr(*, root_expr: str, attr_path: str, auto_args: str) -> str:
    segments = " ".join(nix_string(name) for name in split_attr_path(attr_path))
    return _RESOLVE_TEMPLATE.format(
        auto_args=auto_args,
        root=root_expr,
        segments=f"[ {segments} ]" if segments else "[ ]",
    )


def render_auto_args(config: EvaluatorConfig) -> str:
    if not config.auto_args:
        return "{ }"
    bindings = []
    for arg in config.auto_args:
        value = nix_string(arg.value) if arg.is_string else f"({arg.value})"
        bindings.append(f"{nix_string(arg.name)} = {value};")
    return "{ " + " ".join(bindings) + " }"


def file_root_expr(release_expr: str) -> str:
    if release_expr.startswith("<") and release_expr.endswith(">"):
        return f"import {release_expr}"
    path = Path(release_expr).expanduser().resolve()
    return f"import {nix_string(str(path))}"


def flake_root_expr(locked_url: str, flake_ref: str) -> str:
    missing = f"flake '{flake_ref}' does not provide any Hydra jobs or checks"
    return (
        f"(let flake = builtins.getFlake {nix_string(locked_url)}; "
        f"in flake.hydraJobs or (flake.checks or (throw {nix_string(missing)})))"
    )


def nix_string(value: str) -> str:
    """Nix double-quoted string literal."""

    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("${", "\\${")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )
    return f'"{escaped}"'


def _search_path(config: EvaluatorConfig) -> list[str]:
    entries = list(config.search_path)
    if not config.flake and not config.release_expr.startswith("<"):
        # Restricted evaluation only reads files below search path entries.
        parent = str(Path(config.release_expr).expanduser().resolve().parent)
        if parent not in entries:
            entries.append(parent)
    return entries


def _evaluation_env() -> dict[str, str]:
    env = os.environ.copy()
    env.pop("NIX_PATH", None)
    return env
