from __future__ import annotations

import json
from pathlib import Path

import pytest

from restic_pilot import server as server_module
from restic_pilot.config import PilotSettings
from restic_pilot.jobs import JobConfigLoader, JobController
from restic_pilot.storage import ChromaUnavailableError


class StubChromaStore:
    last_instance: "StubChromaStore | None" = None

    def __init__(self, *_, **__):
        self.runs: list[dict[str, object]] = []
        StubChromaStore.last_instance = self

    def ping(self) -> bool:
        return True

    def record_run(self, *, job_id, action, outcome, history=""):
        self.runs.append({"job_id": job_id, "status": outcome.status.value})


class BrokenChromaStore:
    def __init__(self, *_, **__):
        pass

    def ping(self) -> bool:
        raise ChromaUnavailableError("chromadb package is not installed")


def make_settings(tmp_path: Path, **overrides) -> PilotSettings:
    values = {
        "RESTIC_PATH": "restic",
        "PILOT_JOB_PATHS": str(tmp_path / "jobs"),
        "CHROMA_PERSIST_PATH": str(tmp_path / "chroma"),
    }
    values.update(overrides)
    return PilotSettings(**values)


def test_create_server_loads_jobs_and_reports_status(monkeypatch, tmp_path: Path) -> None:
    jobs_dir = tmp_path / "jobs"
    jobs_dir.mkdir()
    (jobs_dir / "nightly.yaml").write_text(
        "id: nightly\npath: /home/user/work\nurl: /mnt/repo\n", encoding="utf-8"
    )
    monkeypatch.setattr(server_module, "ChromaStore", StubChromaStore)

    settings = make_settings(tmp_path)
    server = server_module.create_server(settings, probe=False)

    controller = getattr(server, "controller")
    assert isinstance(controller, JobController)
    assert controller.job_ids() == ["nightly"]
    assert getattr(server, "tool_handles").loaded_jobs == ["nightly"]
    assert getattr(server, "history_store") is StubChromaStore.last_instance
    assert getattr(server, "chroma_metadata")["available"] is True

    payload = server_module.build_status_payload(
        settings=settings,
        controller=controller,
        restic_metadata=getattr(server, "restic_metadata"),
        chroma_metadata=getattr(server, "chroma_metadata"),
    )
    assert payload["jobs"]["count"] == 1
    assert payload["jobs"]["state_counts"] == {"idle": 1}
    assert payload["jobs"]["running"] == []
    assert payload["concurrency"] == {"max_processes": 4, "policy": "queue", "running": 0}
    assert payload["restic"]["available"] is None
    json.dumps(payload)


def test_create_server_reads_each_job_file_once(monkeypatch, tmp_path: Path) -> None:
    jobs_dir = tmp_path / "jobs"
    jobs_dir.mkdir()
    (jobs_dir / "nightly.yaml").write_text("id: nightly\nurl: /mnt/repo\n", encoding="utf-8")
    monkeypatch.setattr(server_module, "ChromaStore", StubChromaStore)

    reads: list[Path] = []
    original_read = JobConfigLoader.read_file

    def counting_read(self, path):
        reads.append(path)
        return original_read(self, path)

    monkeypatch.setattr(JobConfigLoader, "read_file", counting_read)

    server = server_module.create_server(make_settings(tmp_path), probe=False)

    assert reads == [jobs_dir / "nightly.yaml"]
    assert getattr(server, "tool_handles").loaded_jobs == ["nightly"]


def test_create_server_without_chroma(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(server_module, "ChromaStore", BrokenChromaStore)

    server = server_module.create_server(make_settings(tmp_path), probe=False)

    assert getattr(server, "history_store") is None
    metadata = getattr(server, "chroma_metadata")
    assert metadata["available"] is False
    assert "not installed" in metadata["error"]


def test_create_server_reports_job_load_error(monkeypatch, tmp_path: Path) -> None:
    jobs_dir = tmp_path / "jobs"
    jobs_dir.mkdir()
    (jobs_dir / "broken.yaml").write_text("id: \n", encoding="utf-8")
    monkeypatch.setattr(server_module, "ChromaStore", StubChromaStore)

    server = server_module.create_server(make_settings(tmp_path), probe=False)

    assert getattr(server, "controller").job_ids() == []
    assert getattr(server, "tool_handles").loaded_jobs == []


def test_probe_restic_reports_version(tmp_path: Path) -> None:
    script = tmp_path / "restic"
    script.write_text("#!/bin/sh\necho 'restic 0.16.4 compiled with go1.21'\n", encoding="utf-8")
    script.chmod(0o755)

    metadata = server_module.probe_restic(str(script))

    assert metadata["available"] is True
    assert metadata["version"] == "restic 0.16.4 compiled with go1.21"
    assert metadata["error"] is None


def test_probe_restic_missing_executable(tmp_path: Path) -> None:
    metadata = server_module.probe_restic(str(tmp_path / "absent-restic"))

    assert metadata["available"] is False
    assert "not found" in metadata["error"]


def test_probe_restic_failing_version(tmp_path: Path) -> None:
    script = tmp_path / "restic"
    script.write_text("#!/bin/sh\necho 'broken install' >&2\nexit 3\n", encoding="utf-8")
    script.chmod(0o755)

    metadata = server_module.probe_restic(str(script))

    assert metadata["available"] is False
    assert metadata["error"] == "broken install"


