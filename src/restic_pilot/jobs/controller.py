"""Per-job state machine and registry for supervised restic runs."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from ..errors import (
    CapacityExceededError,
    JobBusyError,
    ParseDegradedError,
    UnknownJobError,
)
from ..restic.commands import build_invocation
from ..restic.models import Action, StreamKind
from ..restic.parsers import (
    BackupProgressState,
    parse_file_listing,
    parse_snapshots,
    scan_backup_chunk,
    tag_stderr,
)
from ..restic.supervisor import DEFAULT_BUFFER_LIMIT, ProcessSupervisor, RunOutcome
from .models import JobConfig, JobRuntimeState, JobState

if TYPE_CHECKING:
    from ..config import PilotSettings
    from ..storage import ChromaStore

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    OUTPUT = "output"
    FILE_TREE = "file_tree"
    STATUS = "status"
    TERMINAL = "terminal"


@dataclass(slots=True, frozen=True)
class JobNotification:
    """Lifecycle event published to subscribers."""

    job_id: str
    kind: NotificationKind
    value: Any = None
    stream: StreamKind | None = None
    history: str | None = None


Listener = Callable[[JobNotification], None]


class JobController:
    """Owns every job's runtime state and at most one supervisor per job."""

    def __init__(
        self,
        *,
        executable: str = "restic",
        scratch_dir: str | Path | None = None,
        max_concurrent: int = 4,
        concurrency_policy: str = "queue",
        idle_timeout: float | None = None,
        buffer_limit: int = DEFAULT_BUFFER_LIMIT,
        volume_size_mb: float | None = 25.0,
        history_store: "ChromaStore | None" = None,
        supervisor_factory: Callable[..., ProcessSupervisor] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if concurrency_policy not in {"queue", "reject"}:
            raise ValueError("concurrency_policy must be 'queue' or 'reject'")
        self._executable = executable
        self._scratch_dir = scratch_dir
        self._max_concurrent = max_concurrent
        self._policy = concurrency_policy
        self._idle_timeout = idle_timeout
        self._buffer_limit = buffer_limit
        self._volume_size_mb = volume_size_mb
        self._history_store = history_store
        self._supervisor_factory = supervisor_factory or ProcessSupervisor
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._jobs: dict[str, JobRuntimeState] = {}
        # Deleted ids are never reused; the set only grows.
        self._deleted: set[str] = set()
        self._listeners: list[Listener] = []
        self._limiter: asyncio.Semaphore | None = None
        self._pending_writes: set[asyncio.Future[None]] = set()

    @classmethod
    def from_settings(
        cls,
        settings: "PilotSettings",
        *,
        history_store: "ChromaStore | None" = None,
    ) -> "JobController":
        return cls(
            executable=settings.restic_path,
            scratch_dir=settings.scratch_dir,
            max_concurrent=settings.max_concurrent_processes,
            concurrency_policy=settings.concurrency_policy,
            idle_timeout=settings.idle_output_timeout,
            buffer_limit=settings.output_buffer_limit,
            volume_size_mb=settings.volume_size_mb,
            history_store=history_store,
        )

    # Registry

    def configure(self, config: JobConfig) -> JobRuntimeState:
        """Register a job or replace its whole configuration record."""

        runtime = self._runtime(config.id, create=True)
        runtime.config = config
        return runtime

    def job_ids(self) -> list[str]:
        return list(self._jobs)

    def runtime(self, job_id: str) -> JobRuntimeState:
        return self._runtime(job_id)

    def state(self, job_id: str) -> JobState:
        if job_id in self._deleted:
            return JobState.DELETED
        return self._runtime(job_id).state

    @property
    def running_count(self) -> int:
        return sum(1 for runtime in self._jobs.values() if runtime.state is JobState.RUNNING)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for every job notification; returns an unsubscribe callable."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # Commands

    def start(
        self,
        job_id: str,
        action: Action | str,
        config: JobConfig | None = None,
        *,
        item_path: str | None = None,
        destination: str | None = None,
    ) -> JobRuntimeState:
        """Start ``action`` for ``job_id`` without waiting for the process.

        Raises :class:`JobBusyError` if the job already has a live process,
        :class:`InvalidConfigError` if the configuration cannot produce an
        invocation and :class:`CapacityExceededError` when the process cap is
        reached under the ``reject`` policy.
        """

        if config is not None and config.id != job_id:
            raise ValueError(f"Config id '{config.id}' does not match job id '{job_id}'")
        runtime = self._runtime(job_id, create=config is not None)
        if runtime.state is JobState.RUNNING:
            raise JobBusyError(job_id, "start")

        effective = config or runtime.config
        if effective is None:
            raise UnknownJobError(f"Job '{job_id}' has no configuration")

        invocation = build_invocation(
            action,
            effective,
            executable=self._executable,
            scratch_dir=self._scratch_dir,
            item_path=item_path,
            destination=destination,
        )

        if (
            self._policy == "reject"
            and self._max_concurrent
            and self.running_count >= self._max_concurrent
        ):
            raise CapacityExceededError(
                f"{self.running_count} restic processes already running (limit {self._max_concurrent})"
            )

        runtime.config = effective
        runtime.state = JobState.RUNNING
        runtime.action = invocation.action
        runtime.cancel_requested = False
        runtime.progress = None
        runtime.progress_state = BackupProgressState()
        runtime.error_seen = False
        runtime.history_cursor = len(runtime.history)

        supervisor = self._supervisor_factory(
            buffer_limit=self._buffer_limit,
            idle_timeout=self._idle_timeout,
            limiter=self._get_limiter(),
        )
        runtime.supervisor = supervisor

        try:
            supervisor.start(
                invocation.argv,
                invocation.env,
                partial(self._on_event, runtime, supervisor),
                partial(self._on_done, runtime, supervisor),
            )
        except Exception:
            runtime.state = JobState.IDLE
            runtime.supervisor = None
            logger.exception(
                "Failed to start job run",
                extra={"job_id": job_id, "action": invocation.action.value},
            )
            raise

        logger.info(
            "Starting job run",
            extra={"job_id": job_id, "action": invocation.action.value},
        )
        self._notify(JobNotification(job_id, NotificationKind.STARTED, invocation.action.value))
        return runtime

    def start_backup(self, job_id: str) -> JobRuntimeState:
        return self.start(job_id, Action.BACKUP)

    def restore_file(self, job_id: str, item_path: str, destination: str) -> JobRuntimeState:
        return self.start(job_id, Action.RESTORE_FILE, item_path=item_path, destination=destination)

    def restore_tree(self, job_id: str, destination: str) -> JobRuntimeState:
        return self.start(job_id, Action.RESTORE_TREE, destination=destination)

    def list_files(self, job_id: str) -> JobRuntimeState:
        return self.start(job_id, Action.LIST_FILES)

    def fetch_status(self, job_id: str) -> JobRuntimeState:
        return self.start(job_id, Action.STATUS)

    def cancel(self, job_id: str) -> bool:
        """Request termination of the job's live process.

        Returns ``False`` when the job has nothing running; repeated calls are safe.
        """

        runtime = self._runtime(job_id)
        supervisor = runtime.supervisor
        if runtime.state is not JobState.RUNNING or supervisor is None:
            return False
        runtime.cancel_requested = True
        logger.info("Cancelling job run", extra={"job_id": job_id})
        return supervisor.cancel()

    def delete(self, job_id: str) -> None:
        runtime = self._runtime(job_id)
        if runtime.state is JobState.RUNNING:
            raise JobBusyError(job_id, "delete")
        runtime.state = JobState.DELETED
        del self._jobs[job_id]
        self._deleted.add(job_id)
        logger.info("Deleted job", extra={"job_id": job_id})

    def clear_history(self, job_id: str) -> None:
        runtime = self._runtime(job_id)
        runtime.history = ""
        runtime.history_cursor = 0
        runtime.error_seen = False

    async def wait(self, job_id: str) -> RunOutcome | None:
        """Wait for the job's current run, if any, and return its outcome."""

        supervisor = self._runtime(job_id).supervisor
        if supervisor is None:
            return None
        return await supervisor.wait()

    async def flush_history(self) -> None:
        """Wait until every scheduled run-history write has finished."""

        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes))

    def describe(self, job_id: str) -> dict[str, Any]:
        runtime = self._runtime(job_id)
        config = runtime.config
        return {
            "job_id": job_id,
            "title": config.display_title if config else None,
            "path": config.path if config else None,
            "url": config.url if config else None,
            "state": runtime.state.value,
            "action": runtime.action.value if runtime.action else None,
            "progress": runtime.progress.as_dict() if runtime.progress else None,
            "error_seen": runtime.error_seen,
            "last_outcome": runtime.last_outcome.value if runtime.last_outcome else None,
            "last_run_at": runtime.last_run_at.isoformat() if runtime.last_run_at else None,
            "file_tree": [entry.as_dict() for entry in runtime.file_tree]
            if runtime.file_tree is not None
            else None,
            "status": runtime.status.as_dict() if runtime.status else None,
            "history": runtime.history,
        }

    # Internals

    def _runtime(self, job_id: str, *, create: bool = False) -> JobRuntimeState:
        if job_id in self._deleted:
            raise UnknownJobError(f"Job '{job_id}' has been deleted")
        runtime = self._jobs.get(job_id)
        if runtime is None:
            if not create:
                raise UnknownJobError(f"Job '{job_id}' is not registered")
            runtime = self._jobs[job_id] = JobRuntimeState(job_id=job_id)
        return runtime

    def _get_limiter(self) -> asyncio.Semaphore | None:
        if self._policy != "queue" or not self._max_concurrent:
            return None
        if self._limiter is None:
            self._limiter = asyncio.Semaphore(self._max_concurrent)
        return self._limiter

    def _notify(self, notification: JobNotification) -> None:
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception:
                logger.exception(
                    "Notification listener failed",
                    extra={"job_id": notification.job_id, "kind": notification.kind.value},
                )

    def _on_event(
        self,
        runtime: JobRuntimeState,
        supervisor: ProcessSupervisor,
        kind: StreamKind,
        text: str,
    ) -> None:
        if runtime.supervisor is not supervisor:
            return
        job_id = runtime.job_id

        if kind is StreamKind.STDERR:
            runtime.history += tag_stderr(text)
            runtime.error_seen = True
            self._notify(JobNotification(job_id, NotificationKind.OUTPUT, text, stream=kind))
            return

        if runtime.action is Action.BACKUP:
            previous: BackupProgressState = runtime.progress_state
            state, text = scan_backup_chunk(text, previous, self._volume_size_mb)
            runtime.progress_state = state
            if state != previous:
                runtime.progress = state.snapshot()
            if state.progress is not None and state.progress != previous.progress:
                self._notify(JobNotification(job_id, NotificationKind.PROGRESS, state.progress))

        if text:
            runtime.history += text
            self._notify(JobNotification(job_id, NotificationKind.OUTPUT, text, stream=kind))

    def _on_done(
        self,
        runtime: JobRuntimeState,
        supervisor: ProcessSupervisor,
        outcome: RunOutcome,
    ) -> None:
        if runtime.supervisor is not supervisor:
            return
        job_id = runtime.job_id
        action = runtime.action

        if outcome.ok and action in {Action.LIST_FILES, Action.STATUS}:
            self._publish_structured(runtime, outcome)

        runtime.state = JobState.IDLE
        runtime.supervisor = None
        runtime.cancel_requested = False
        runtime.last_outcome = outcome.status
        runtime.last_run_at = self._clock()
        delta = runtime.history_delta

        logger.info(
            "Job run finished",
            extra={
                "job_id": job_id,
                "action": action.value if action else None,
                "outcome": outcome.status.value,
                "returncode": outcome.returncode,
            },
        )

        if self._history_store is not None:
            self._schedule_history_write(
                partial(
                    self._write_history,
                    job_id,
                    action.value if action else "unknown",
                    outcome,
                    delta,
                )
            )

        self._notify(
            JobNotification(job_id, NotificationKind.TERMINAL, outcome, history=delta)
        )

    def _schedule_history_write(self, write: Callable[[], None]) -> None:
        # Store writes compute embeddings; keep them off the event loop.
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            write()
            return
        future = loop.run_in_executor(None, write)
        self._pending_writes.add(future)
        future.add_done_callback(self._pending_writes.discard)

    def _write_history(self, job_id: str, action: str, outcome: RunOutcome, history: str) -> None:
        try:
            self._history_store.record_run(
                job_id=job_id,
                action=action,
                outcome=outcome,
                history=history,
            )
        except Exception as exc:
            logger.warning(
                "Failed to record run history",
                extra={"job_id": job_id, "error": str(exc)},
            )

    def _publish_structured(self, runtime: JobRuntimeState, outcome: RunOutcome) -> None:
        job_id = runtime.job_id
        if outcome.truncated:
            logger.warning(
                "Output was truncated; withholding parsed result",
                extra={"job_id": job_id, "action": runtime.action.value if runtime.action else None},
            )
            return
        try:
            if runtime.action is Action.LIST_FILES:
                runtime.file_tree = parse_file_listing(outcome.stdout)
                self._notify(
                    JobNotification(job_id, NotificationKind.FILE_TREE, list(runtime.file_tree))
                )
            else:
                runtime.status = parse_snapshots(outcome.stdout)
                self._notify(JobNotification(job_id, NotificationKind.STATUS, runtime.status))
        except ParseDegradedError as exc:
            logger.warning(
                "Could not parse restic output",
                extra={"job_id": job_id, "error": str(exc)},
            )


__all__ = ["JobController", "JobNotification", "Listener", "NotificationKind"]
