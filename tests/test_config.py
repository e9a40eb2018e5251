from __future__ import annotations

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from restic_pilot.config import PilotSettings, get_settings


def test_defaults(monkeypatch) -> None:
    for name in ("RESTIC_PATH", "PILOT_MAX_CONCURRENT", "PILOT_CONCURRENCY_POLICY", "PILOT_IDLE_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)

    settings = PilotSettings(_env_file=None)

    assert settings.restic_path == "restic"
    assert settings.max_concurrent_processes == 4
    assert settings.concurrency_policy == "queue"
    assert settings.idle_output_timeout is None
    assert settings.volume_size_mb == 25.0
    assert settings.output_buffer_limit == 1024 * 1000


def test_environment_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PILOT_JOB_PATHS", os.pathsep.join([str(tmp_path / "a"), str(tmp_path / "b")]))
    monkeypatch.setenv("PILOT_CONCURRENCY_POLICY", "Reject")
    monkeypatch.setenv("PILOT_IDLE_TIMEOUT", "90")
    monkeypatch.setenv("PILOT_SCRATCH_DIR", str(tmp_path / "scratch"))

    settings = PilotSettings(_env_file=None)

    assert settings.job_paths == (tmp_path / "a", tmp_path / "b")
    assert settings.concurrency_policy == "reject"
    assert settings.idle_output_timeout == 90.0
    assert settings.scratch_dir == tmp_path / "scratch"


@pytest.mark.parametrize(
    "overrides",
    [
        {"PILOT_CONCURRENCY_POLICY": "drop"},
        {"PILOT_LOG_LEVEL": "verbose"},
        {"PILOT_MAX_CONCURRENT": -1},
        {"PILOT_IDLE_TIMEOUT": 0},
        {"PILOT_VOLUME_SIZE_MB": -25},
    ],
)
def test_invalid_values_rejected(overrides) -> None:
    with pytest.raises(ValidationError):
        PilotSettings(_env_file=None, **overrides)


def test_get_settings_resolves_paths(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CHROMA_PERSIST_PATH", str(tmp_path / "chroma" / ".." / "chroma"))
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.chroma_persist_path == (tmp_path / "chroma").resolve()
        assert all(path.is_absolute() for path in settings.job_paths)
    finally:
        get_settings.cache_clear()
