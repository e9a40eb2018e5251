from __future__ import annotations

import argparse
import importlib.util
import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from restic_pilot.storage import ChromaUnavailableError, RunRecord


def load_diag(name: str):
    module_path = Path(__file__).resolve().parents[1] / "scripts" / "pilot_diag.py"
    spec = importlib.util.spec_from_file_location(name, module_path)
    assert spec and spec.loader
    diag = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(diag)
    return diag


def make_run(job_id: str, status: str, failure: str | None = None, minute: int = 0) -> RunRecord:
    return RunRecord(
        job_id=job_id,
        action="backup",
        status=status,
        failure=failure,
        returncode=0 if status == "succeeded" else None,
        finished_at=datetime(2025, 1, 1, 0, minute, tzinfo=timezone.utc),
        metadata={},
    )


def test_diagnostics_cli_handles_missing_chroma(monkeypatch, capsys, tmp_path: Path) -> None:
    diag = load_diag("pilot_diag_missing_module")

    class BrokenStore:
        def __init__(self, path):
            self.path = path

        def ping(self):
            raise ChromaUnavailableError("chromadb package is not installed")

    monkeypatch.setenv("CHROMA_PERSIST_PATH", str(tmp_path / "chroma"))
    monkeypatch.setattr(diag, "ChromaStore", BrokenStore)

    with pytest.raises(SystemExit) as excinfo:
        diag.main(["runs"])

    assert excinfo.value.code == 1
    assert "Chroma unavailable" in capsys.readouterr().out


def test_runs_lists_outcomes(monkeypatch, capsys) -> None:
    class StubStore:
        def list_runs(self, job_id=None):
            assert job_id == "nightly"
            return [make_run("nightly", "failed", "idle_timeout")]

    diag = load_diag("pilot_diag_runs_module")
    monkeypatch.setattr(diag, "load_store", lambda _settings: StubStore())

    diag.cmd_runs(argparse.Namespace(job_id="nightly", json=False))

    output = capsys.readouterr().out
    assert "nightly backup [failed] (idle_timeout)" in output


def test_runs_json_output(monkeypatch, capsys) -> None:
    class StubStore:
        def list_runs(self, job_id=None):
            return [make_run("nightly", "succeeded")]

    diag = load_diag("pilot_diag_runs_json_module")
    monkeypatch.setattr(diag, "load_store", lambda _settings: StubStore())

    diag.cmd_runs(argparse.Namespace(job_id=None, json=True))

    payload = json.loads(capsys.readouterr().out)
    assert payload == [
        {
            "job_id": "nightly",
            "action": "backup",
            "status": "succeeded",
            "failure": None,
            "returncode": 0,
            "finished_at": "2025-01-01T00:00:00+00:00",
        }
    ]


def test_metrics_counts_outcomes(monkeypatch, capsys) -> None:
    class StubStore:
        def list_runs(self, job_id=None):
            return [
                make_run("nightly", "succeeded"),
                make_run("nightly", "failed", "process_failure"),
                make_run("photos", "failed", "idle_timeout"),
                make_run("photos", "cancelled"),
            ]

    diag = load_diag("pilot_diag_metrics_module")
    monkeypatch.setattr(diag, "load_store", lambda _settings: StubStore())

    diag.cmd_metrics(argparse.Namespace())

    payload = json.loads(capsys.readouterr().out)
    assert payload["runs_total"] == 4
    assert payload["status_counts"] == {"succeeded": 1, "failed": 2, "cancelled": 1}
    assert payload["failure_counts"] == {"process_failure": 1, "idle_timeout": 1}
    assert payload["jobs"]["photos"] == {"failed": 1, "cancelled": 1}
    assert payload["max_concurrent_processes"] == diag.PilotSettings().max_concurrent_processes


def test_events_limit(monkeypatch, capsys) -> None:
    class StubStore:
        def search_events(self):
            base_time = datetime(2025, 1, 1, tzinfo=timezone.utc)
            return [
                argparse.Namespace(
                    id=f"event-{idx}",
                    job_id="nightly",
                    event_type="run_completed",
                    metadata={"status": "succeeded"},
                    timestamp=base_time.replace(minute=idx),
                )
                for idx in (3, 0, 2, 1)
            ]

    diag = load_diag("pilot_diag_events_module")
    monkeypatch.setattr(diag, "load_store", lambda _settings: StubStore())

    diag.cmd_events(argparse.Namespace(job_id=None, limit=2))

    payload = json.loads(capsys.readouterr().out)
    assert [event["event_id"] for event in payload] == ["event-2", "event-3"]
