"""Tool registration for restic-pilot."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from fastmcp import Context, FastMCP

from ..jobs import JobConfig, JobController
from ..restic import Action, RunOutcome
from ..storage import ChromaStore


@dataclass(slots=True)
class ToolHandles:
    list_jobs: Any
    define_job: Any
    start_job: Any
    cancel_job: Any
    delete_job: Any
    job_status: Any
    clear_history: Any
    job_runs: Any
    query_history: Any
    loaded_jobs: list[str]


def _outcome_payload(outcome: RunOutcome | None) -> dict[str, Any] | None:
    if outcome is None:
        return None
    return outcome.summary()


def register_tools(
    server: FastMCP,
    *,
    controller: JobController,
    jobs: Iterable[JobConfig] = (),
    history_store: ChromaStore | None = None,
) -> ToolHandles:
    """Register restic-pilot's MCP tools on the server."""

    loaded_jobs: list[str] = []
    for config in jobs:
        controller.configure(config)
        loaded_jobs.append(config.id)

    def _list_jobs(context: Context | None = None) -> list[dict[str, Any]]:
        """List registered backup jobs with their current state."""

        catalog = []
        for job_id in controller.job_ids():
            runtime = controller.runtime(job_id)
            catalog.append(
                {
                    "job_id": job_id,
                    "title": runtime.config.display_title if runtime.config else None,
                    "state": runtime.state.value,
                    "action": runtime.action.value if runtime.action else None,
                    "last_outcome": runtime.last_outcome.value if runtime.last_outcome else None,
                }
            )
        _emit_log(context, "debug", "Listing backup jobs", extra={"count": len(catalog)})
        return catalog

    def _define_job(
        job_id: str,
        path: str | None = None,
        url: str | None = None,
        *,
        passphrase: str | None = None,
        title: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Register a job or replace its configuration."""

        config = JobConfig(id=job_id, path=path, url=url, passphrase=passphrase, title=title)
        controller.configure(config)
        _emit_log(context, "info", "Defined backup job", extra={"job_id": config.id})
        return controller.describe(config.id)

    async def _start_job(
        job_id: str,
        action: str = Action.BACKUP.value,
        *,
        item_path: str | None = None,
        destination: str | None = None,
        wait: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Start a restic run for a job; optionally wait for it to finish."""

        controller.start(job_id, action, item_path=item_path, destination=destination)
        _emit_log(context, "info", "Started job run", extra={"job_id": job_id, "action": action})

        outcome = None
        if wait:
            outcome = await controller.wait(job_id)
            await controller.flush_history()
        return {"job": controller.describe(job_id), "outcome": _outcome_payload(outcome)}

    async def _cancel_job(job_id: str, context: Context | None = None) -> dict[str, Any]:
        """Request cancellation of a job's running restic process."""

        armed = controller.cancel(job_id)
        _emit_log(
            context,
            "warning" if armed else "debug",
            "Cancellation requested",
            extra={"job_id": job_id, "armed": armed},
        )
        return {"job_id": job_id, "cancelled": armed}

    def _delete_job(job_id: str, context: Context | None = None) -> dict[str, Any]:
        """Delete an idle job."""

        controller.delete(job_id)
        _emit_log(context, "info", "Deleted job", extra={"job_id": job_id})
        return {"job_id": job_id, "state": "deleted"}

    def _job_status(
        job_id: str,
        include_history: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Return state, progress, file tree and snapshot status for a job."""

        payload = controller.describe(job_id)
        if not include_history:
            payload.pop("history", None)
        _emit_log(context, "debug", "Job status", extra={"job_id": job_id, "state": payload["state"]})
        return payload

    def _clear_history(job_id: str, context: Context | None = None) -> dict[str, Any]:
        """Clear the accumulated output history of a job."""

        controller.clear_history(job_id)
        _emit_log(context, "info", "Cleared job history", extra={"job_id": job_id})
        return {"job_id": job_id, "history": ""}

    def _require_store() -> ChromaStore:
        if history_store is None:
            raise RuntimeError("Run history store is unavailable; enable Chroma persistence first")
        return history_store

    def _job_runs(
        job_id: str | None = None,
        limit: int = 20,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """List recorded run outcomes, newest last."""

        store = _require_store()
        runs = store.list_runs(job_id)
        if limit > 0:
            runs = runs[-limit:]
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
        _emit_log(context, "debug", "Listed job runs", extra={"job_id": job_id, "count": len(payload)})
        return payload

    def _query_history(
        query: str,
        *,
        job_id: str | None = None,
        limit: int = 10,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Search recorded run output by keyword."""

        store = _require_store()
        filters = {"job_id": job_id} if job_id else None
        matches = store.search_events(query, filters=filters, limit=limit)
        payload = [
            {
                "event_id": event.id,
                "job_id": event.job_id,
                "event_type": event.event_type,
                "timestamp": event.timestamp.isoformat(),
                "metadata": event.metadata,
                "excerpt": event.document[:200],
            }
            for event in matches
        ]
        _emit_log(context, "debug", "Query history", extra={"query": query, "results": len(payload)})
        return {"matches": payload}

    tool_list = server.tool(
        name="list_jobs",
        description="List configured backup jobs with their state and last outcome.",
    )(_list_jobs)

    tool_define = server.tool(
        name="define_job",
        description="Register a backup job (source path, repository URL, passphrase, title) or replace it.",
    )(_define_job)

    tool_start = server.tool(
        name="start_job",
        description=(
            "Start a restic action for a job: backup, restore-file (needs item_path and "
            "destination), restore-tree (needs destination), list-files or status."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Restores write into the destination directory",
            }
        },
    )(_start_job)

    tool_cancel = server.tool(
        name="cancel_job",
        description="Kill the running restic process of a job. Safe to call repeatedly.",
    )(_cancel_job)

    tool_delete = server.tool(
        name="delete_job",
        description="Delete an idle job. Running jobs must be cancelled first.",
    )(_delete_job)

    tool_status = server.tool(
        name="job_status",
        description="Fetch state, progress, file tree and snapshot summary for a job.",
    )(_job_status)

    tool_clear = server.tool(
        name="clear_history",
        description="Clear the output history of a job.",
    )(_clear_history)

    tool_runs = server.tool(
        name="job_runs",
        description="List persisted run outcomes, optionally for one job.",
    )(_job_runs)

    tool_query = server.tool(
        name="query_history",
        description="Search persisted run output and events by keyword.",
    )(_query_history)

    return ToolHandles(
        list_jobs=tool_list,
        define_job=tool_define,
        start_job=tool_start,
        cancel_job=tool_cancel,
        delete_job=tool_delete,
        job_status=tool_status,
        clear_history=tool_clear,
        job_runs=tool_runs,
        query_history=tool_query,
        loaded_jobs=loaded_jobs,
    )


__all__ = ["register_tools", "ToolHandles"]

logger = logging.getLogger(__name__)


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)
