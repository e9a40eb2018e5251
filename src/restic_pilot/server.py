"""FastMCP server bootstrap for restic-pilot."""

import asyncio
import json
import logging
import shutil
from datetime import datetime, timezone
from typing import Any, Optional

from fastmcp import FastMCP

from . import __version__
from .config import PilotSettings, get_settings
from .jobs import JobConfig, JobConfigLoadError, JobConfigLoader, JobController, JobState
from .restic.supervisor import run_to_completion
from .storage import ChromaStore, ChromaUnavailableError
from .tools import register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for the restic-pilot server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def probe_restic(executable: str) -> dict[str, Any]:
    """Return availability and version information for the restic executable."""

    metadata: dict[str, Any] = {"path": executable, "available": False, "version": None, "error": None}
    resolved = shutil.which(executable)
    if resolved is None:
        metadata["error"] = f"restic executable '{executable}' not found"
        return metadata

    metadata["path"] = resolved
    outcome = _run_sync(run_to_completion([resolved, "version"]))
    if outcome.ok:
        metadata["available"] = True
        metadata["version"] = outcome.stdout.strip()
    else:
        metadata["error"] = outcome.error or outcome.stderr.strip() or "restic version command failed"
    return metadata


def build_status_payload(
    *,
    settings: PilotSettings,
    controller: JobController,
    restic_metadata: dict[str, Any],
    chroma_metadata: dict[str, Any],
    job_load_error: str | None = None,
) -> dict[str, Any]:
    """Summarize runtime state for the status resource."""

    state_counts: dict[str, int] = {}
    jobs = []
    for job_id in controller.job_ids():
        runtime = controller.runtime(job_id)
        state_counts[runtime.state.value] = state_counts.get(runtime.state.value, 0) + 1
        jobs.append(
            {
                "job_id": job_id,
                "state": runtime.state.value,
                "action": runtime.action.value if runtime.action else None,
                "progress": runtime.progress.value if runtime.progress else None,
                "error_seen": runtime.error_seen,
            }
        )

    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "server_version": __version__,
        "log_level": settings.log_level,
        "restic": restic_metadata,
        "storage": {"chroma": chroma_metadata},
        "concurrency": {
            "max_processes": settings.max_concurrent_processes,
            "policy": settings.concurrency_policy,
            "running": controller.running_count,
        },
        "jobs": {
            "count": len(jobs),
            "state_counts": state_counts,
            "running": [job["job_id"] for job in jobs if job["state"] == JobState.RUNNING.value],
            "items": jobs,
            "load_error": job_load_error,
        },
    }


def create_server(
    settings: Optional[PilotSettings] = None,
    controller: JobController | None = None,
    *,
    probe: bool = True,
) -> FastMCP:
    """Instantiate the FastMCP server with job tools and the status resource."""

    settings = settings or get_settings()
    log = logging.getLogger(__name__)

    restic_metadata: dict[str, Any] = {
        "path": settings.restic_path,
        "available": None,
        "version": None,
        "error": None,
    }
    if probe:
        restic_metadata = probe_restic(settings.restic_path)

    history_store: ChromaStore | None = None
    chroma_metadata = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": "restic_pilot_runs",
        "error": None,
    }
    try:
        history_store = ChromaStore(settings.chroma_persist_path)
        history_store.ping()
        chroma_metadata["available"] = True
    except ChromaUnavailableError as exc:
        chroma_metadata["error"] = str(exc)
        history_store = None

    if controller is None:
        controller = JobController.from_settings(settings, history_store=history_store)

    job_configs: dict[str, JobConfig] = {}
    job_load_error: str | None = None
    try:
        job_configs = JobConfigLoader(settings.job_paths).load_all()
    except JobConfigLoadError as exc:
        job_load_error = str(exc)
        log.warning("Failed to load job definitions", extra={"error": job_load_error})

    server = FastMCP(
        name="restic-pilot",
        version=__version__,
        instructions=(
            "restic-pilot supervises restic backup, restore, listing and snapshot "
            "runs per job. Define jobs, start actions, poll job_status for progress "
            "and cancel runs that should stop."
        ),
    )

    handles = register_tools(
        server,
        controller=controller,
        jobs=job_configs.values(),
        history_store=history_store,
    )

    @server.resource(
        "resource://restic-pilot/status",
        name="restic_pilot_status",
        description="Provides the current runtime status for the restic-pilot server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource() -> str:
        """Return a JSON string summarizing runtime state."""

        payload = build_status_payload(
            settings=settings,
            controller=controller,
            restic_metadata=restic_metadata,
            chroma_metadata=chroma_metadata,
            job_load_error=job_load_error,
        )
        return json.dumps(payload)

    setattr(server, "controller", controller)
    setattr(server, "restic_metadata", restic_metadata)
    setattr(server, "history_store", history_store)
    setattr(server, "chroma_metadata", chroma_metadata)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the restic-pilot server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching restic-pilot server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "restic_available": getattr(server, "restic_metadata", {}).get("available"),
            "chroma_available": getattr(server, "chroma_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
