"""restic-pilot run history diagnostics CLI."""

from __future__ import annotations

import argparse
import json

from restic_pilot.config import PilotSettings
from restic_pilot.storage import ChromaStore, ChromaUnavailableError


def load_store(settings: PilotSettings) -> ChromaStore:
    try:
        store = ChromaStore(settings.chroma_persist_path)
        store.ping()
        return store
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)


def cmd_runs(args: argparse.Namespace) -> None:
    settings = PilotSettings()
    store = load_store(settings)
    try:
        runs = store.list_runs(job_id=args.job_id)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    if args.json:
        payload = [
            {
                "job_id": run.job_id,
                "action": run.action,
                "status": run.status,
                "failure": run.failure,
                "returncode": run.returncode,
                "finished_at": run.finished_at.isoformat(),
            }
            for run in runs
        ]
        print(json.dumps(payload, indent=2))
    else:
        for run in runs:
            print(
                f"{run.finished_at.isoformat()} {run.job_id} {run.action} [{run.status}]"
                + (f" ({run.failure})" if run.failure else "")
            )


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = PilotSettings()
    store = load_store(settings)
    try:
        runs = store.list_runs()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    status_counts: dict[str, int] = {}
    failure_counts: dict[str, int] = {}
    per_job: dict[str, dict[str, int]] = {}
    for run in runs:
        status_counts[run.status] = status_counts.get(run.status, 0) + 1
        if run.failure:
            failure_counts[run.failure] = failure_counts.get(run.failure, 0) + 1
        job_counts = per_job.setdefault(run.job_id, {})
        job_counts[run.status] = job_counts.get(run.status, 0) + 1

    metrics = {
        "runs_total": len(runs),
        "status_counts": status_counts,
        "failure_counts": failure_counts,
        "jobs": per_job,
        "max_concurrent_processes": settings.max_concurrent_processes,
        "concurrency_policy": settings.concurrency_policy,
    }
    print(json.dumps(metrics, indent=2))


def cmd_events(args: argparse.Namespace) -> None:
    settings = PilotSettings()
    store = load_store(settings)
    try:
        if args.job_id:
            events = store.fetch_job_events(args.job_id)
        else:
            events = store.search_events()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    events.sort(key=lambda event: event.timestamp)
    if args.limit is not None and args.limit > 0:
        events = events[-args.limit :]

    payload = [
        {
            "event_id": event.id,
            "job_id": event.job_id,
            "event_type": event.event_type,
            "status": event.metadata.get("status"),
            "timestamp": event.timestamp.isoformat(),
        }
        for event in events
    ]
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="restic-pilot diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_runs = sub.add_parser("runs", help="List recorded run outcomes")
    p_runs.add_argument("--job-id")
    p_runs.add_argument("--json", action="store_true", help="Output JSON")
    p_runs.set_defaults(func=cmd_runs)

    p_metrics = sub.add_parser("metrics", help="Show outcome counts per job and failure kind")
    p_metrics.set_defaults(func=cmd_metrics)

    p_events = sub.add_parser("events", help="List stored job events")
    p_events.add_argument("--job-id")
    p_events.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N events",
    )
    p_events.set_defaults(func=cmd_events)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
