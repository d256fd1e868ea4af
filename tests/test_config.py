from __future__ import annotations

from pathlib import Path

import allure
import pytest

from hydra_eval_jobs.config import (
    EvaluatorSettings,
    Settings,
    WorkerPoolSettings,
)

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings"),
]

_ENV_NAMES = (
    "HYDRA_EVAL_JOBS_WORKERS",
    "HYDRA_EVAL_JOBS_MAX_MEMORY_SIZE",
    "HYDRA_EVAL_JOBS_GC_ROOTS_DIR",
    "HYDRA_EVAL_JOBS_EVALUATOR",
    "HYDRA_EVAL_JOBS_NIX_BIN",
    "HYDRA_EVAL_JOBS_WORKER_SHUTDOWN_SECONDS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults_match_upstream_tool() -> None:
    settings = Settings.from_env()

    assert settings.pool.workers == 1
    assert settings.pool.max_memory_size_mib == 4096
    assert settings.evaluator.backend == "nix"
    assert settings.evaluator.nix_bin == "nix"
    assert settings.gc_roots_dir is None
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("HYDRA_EVAL_JOBS_WORKERS", " 8 ")
    monkeypatch.setenv("HYDRA_EVAL_JOBS_MAX_MEMORY_SIZE", "2048")
    monkeypatch.setenv("HYDRA_EVAL_JOBS_GC_ROOTS_DIR", str(tmp_path))
    monkeypatch.setenv("HYDRA_EVAL_JOBS_EVALUATOR", "json")
    monkeypatch.setenv("HYDRA_EVAL_JOBS_NIX_BIN", "/opt/nix/bin/nix")
    monkeypatch.setenv("HYDRA_EVAL_JOBS_WORKER_SHUTDOWN_SECONDS", "2.5")

    settings = Settings.from_env()

    assert settings.pool == WorkerPoolSettings(
        workers=8,
        max_memory_size_mib=2048,
        shutdown_seconds=2.5,
    )
    assert settings.evaluator == EvaluatorSettings(backend="json", nix_bin="/opt/nix/bin/nix")
    assert settings.gc_roots_dir == tmp_path


@pytest.mark.parametrize(
    ("name", "value", "match"),
    [
        ("HYDRA_EVAL_JOBS_WORKERS", "many", "Invalid integer value for HYDRA_EVAL_JOBS_WORKERS"),
        ("HYDRA_EVAL_JOBS_MAX_MEMORY_SIZE", "4G", "Invalid integer value"),
        ("HYDRA_EVAL_JOBS_WORKER_SHUTDOWN_SECONDS", "soon", "Invalid number value"),
    ],
)
def test_from_env_rejects_malformed_numbers(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
    match: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=match):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "match"),
    [
        (Settings(pool=WorkerPoolSettings(workers=0)), "Number of workers"),
        (Settings(pool=WorkerPoolSettings(max_memory_size_mib=0)), "Maximum memory size"),
        (Settings(pool=WorkerPoolSettings(shutdown_seconds=0)), "SHUTDOWN_SECONDS"),
        (Settings(evaluator=EvaluatorSettings(backend="guile")), "Unsupported evaluator 'guile'"),
        (Settings(evaluator=EvaluatorSettings(nix_bin="")), "NIX_BIN must not be empty"),
    ],
)
def test_validate_rejects_invalid_settings(settings: Settings, match: str) -> None:
    with pytest.raises(ValueError, match=match):
        settings.validate()
