"""Async supervision of a single restic process."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Sequence

from .models import StreamKind
from .utils import sanitize_environment

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_LIMIT = 1024 * 1000
DEFAULT_CHUNK_SIZE = 4096
TRUNCATION_MARKER = "\n[output truncated after {limit} bytes]\n"
_POSIX = os.name == "posix"


class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailureKind(str, Enum):
    SPAWN_FAILURE = "spawn_failure"
    PROCESS_FAILURE = "process_failure"
    IDLE_TIMEOUT = "idle_timeout"


@dataclass(slots=True)
class RunOutcome:
    """Holds the terminal result of one supervised process."""

    status: Outcome
    args: tuple[str, ...]
    returncode: int | None
    stdout: str
    stderr: str
    failure: FailureKind | None = None
    error: str | None = None
    truncated: bool = False

    @property
    def ok(self) -> bool:
        return self.status is Outcome.SUCCEEDED

    def summary(self) -> dict[str, object]:
        return {
            "status": self.status.value,
            "returncode": self.returncode,
            "failure": self.failure.value if self.failure else None,
            "error": self.error,
            "truncated": self.truncated,
        }


EventCallback = Callable[[StreamKind, str], None]
DoneCallback = Callable[[RunOutcome], None]


class ProcessSupervisor:
    """Run one external process to completion or cancellation.

    ``start`` schedules a task on the running event loop and returns at once.
    stdout and stderr are read concurrently and handed to ``on_event`` tagged with
    their stream, in the order they arrive. ``on_done`` is called exactly once,
    after the process has exited and every output event has been delivered.
    """

    def __init__(
        self,
        *,
        buffer_limit: int = DEFAULT_BUFFER_LIMIT,
        idle_timeout: float | None = None,
        limiter: asyncio.Semaphore | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self._buffer_limit = buffer_limit
        self._idle_timeout = idle_timeout
        self._limiter = limiter
        self._chunk_size = chunk_size
        self._task: asyncio.Task[RunOutcome] | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._cancel_event: asyncio.Event | None = None
        self._cancel_requested = False
        self._running = False

    def is_running(self) -> bool:
        return self._running

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def start(
        self,
        argv: Sequence[str],
        env: Mapping[str, str] | None,
        on_event: EventCallback,
        on_done: DoneCallback,
    ) -> asyncio.Task[RunOutcome]:
        if self._running:
            raise RuntimeError("Supervisor is already running a process")
        if not argv:
            raise ValueError("argv must not be empty")

        loop = asyncio.get_running_loop()
        self._running = True
        self._cancel_requested = False
        self._cancel_event = asyncio.Event()
        self._process = None
        self._task = loop.create_task(self._run(tuple(argv), dict(env or {}), on_event, on_done))
        return self._task

    def cancel(self) -> bool:
        """Arm forced termination of the running process.

        Returns ``False`` without side effects when no run is active or the
        current run has already been cancelled.
        """

        if not self._running or self._cancel_requested:
            return False
        self._cancel_requested = True
        if self._cancel_event is not None:
            self._cancel_event.set()
        self._kill()
        return True

    async def wait(self) -> RunOutcome | None:
        if self._task is None:
            return None
        return await asyncio.shield(self._task)

    def _kill(self) -> None:
        process = self._process
        if process is None:
            return
        try:
            if _POSIX:
                # The group outlives the leader while children still hold the pipes.
                os.killpg(process.pid, signal.SIGKILL)
            elif process.returncode is None:
                process.kill()
        except (ProcessLookupError, PermissionError):
            pass

    async def _run(
        self,
        argv: tuple[str, ...],
        env: dict[str, str],
        on_event: EventCallback,
        on_done: DoneCallback,
    ) -> RunOutcome:
        try:
            outcome = await self._execute(argv, env, on_event)
        except asyncio.CancelledError:
            self._kill()
            outcome = RunOutcome(
                status=Outcome.CANCELLED,
                args=argv,
                returncode=None,
                stdout="",
                stderr="",
                error="Supervisor task was cancelled",
            )
            self._finish(outcome, on_done)
            raise
        except Exception as exc:  # pragma: no cover
            logger.exception("Supervisor crashed", extra={"executable": argv[0]})
            self._kill()
            outcome = RunOutcome(
                status=Outcome.CANCELLED if self._cancel_requested else Outcome.FAILED,
                args=argv,
                returncode=None,
                stdout="",
                stderr="",
                failure=None if self._cancel_requested else FailureKind.PROCESS_FAILURE,
                error=str(exc),
            )
        self._finish(outcome, on_done)
        return outcome

    def _finish(self, outcome: RunOutcome, on_done: DoneCallback) -> None:
        self._running = False
        try:
            on_done(outcome)
        except Exception:  # pragma: no cover
            logger.exception("on_done callback failed", extra={"status": outcome.status.value})

    async def _acquire_slot(self) -> bool:
        """Wait for a process slot; return ``False`` if cancelled while waiting."""

        assert self._limiter is not None and self._cancel_event is not None
        acquire = asyncio.ensure_future(self._limiter.acquire())
        cancelled = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({acquire, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            if acquire.done() and not acquire.cancelled():
                self._limiter.release()
            else:
                acquire.cancel()
            raise
        finally:
            cancelled.cancel()
        if acquire.done() and not acquire.cancelled():
            if self._cancel_requested:
                self._limiter.release()
                return False
            return True
        acquire.cancel()
        return False

    async def _execute(
        self,
        argv: tuple[str, ...],
        env: dict[str, str],
        on_event: EventCallback,
    ) -> RunOutcome:
        if self._limiter is not None:
            if not await self._acquire_slot():
                return RunOutcome(
                    status=Outcome.CANCELLED,
                    args=argv,
                    returncode=None,
                    stdout="",
                    stderr="",
                    error="Cancelled before the process started",
                )
        elif self._cancel_requested:
            return RunOutcome(
                status=Outcome.CANCELLED, args=argv, returncode=None, stdout="", stderr=""
            )

        try:
            return await self._spawn_and_stream(argv, env, on_event)
        finally:
            if self._limiter is not None:
                self._limiter.release()

    async def _spawn_and_stream(
        self,
        argv: tuple[str, ...],
        env: dict[str, str],
        on_event: EventCallback,
    ) -> RunOutcome:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment(env),
                start_new_session=_POSIX,
            )
        except OSError as exc:
            logger.warning("Failed to spawn process", extra={"executable": argv[0], "error": str(exc)})
            return RunOutcome(
                status=Outcome.CANCELLED if self._cancel_requested else Outcome.FAILED,
                args=argv,
                returncode=None,
                stdout="",
                stderr="",
                failure=None if self._cancel_requested else FailureKind.SPAWN_FAILURE,
                error=str(exc),
            )

        self._process = process
        logger.debug("Spawned process", extra={"executable": argv[0], "pid": process.pid})
        if self._cancel_requested:
            self._kill()

        queue: asyncio.Queue[tuple[StreamKind, bytes | None]] = asyncio.Queue()
        assert process.stdout is not None and process.stderr is not None
        readers = [
            asyncio.ensure_future(self._pump(process.stdout, StreamKind.STDOUT, queue)),
            asyncio.ensure_future(self._pump(process.stderr, StreamKind.STDERR, queue)),
        ]
        decoders = {
            kind: codecs.getincrementaldecoder("utf-8")(errors="replace") for kind in StreamKind
        }
        captured: dict[StreamKind, list[str]] = {kind: [] for kind in StreamKind}
        delivered = 0
        truncated = False
        timed_out = False
        open_streams = len(readers)

        try:
            while open_streams:
                try:
                    kind, data = await asyncio.wait_for(queue.get(), timeout=self._idle_timeout)
                except asyncio.TimeoutError:
                    if not timed_out:
                        timed_out = True
                        logger.warning(
                            "No output within idle timeout; killing process",
                            extra={"pid": process.pid, "timeout": self._idle_timeout},
                        )
                        self._kill()
                    continue

                if data is None:
                    open_streams -= 1
                    text = decoders[kind].decode(b"", final=True)
                    size = 0
                else:
                    text = decoders[kind].decode(data)
                    size = len(data)
                if not text:
                    continue

                if truncated:
                    continue
                if self._buffer_limit and delivered + size > self._buffer_limit:
                    truncated = True
                    marker = TRUNCATION_MARKER.format(limit=self._buffer_limit)
                    captured[kind].append(marker)
                    self._deliver(on_event, kind, marker)
                    continue

                delivered += size
                captured[kind].append(text)
                self._deliver(on_event, kind, text)

            returncode = await process.wait()
        finally:
            for reader in readers:
                reader.cancel()
            if process.returncode is None:
                self._kill()

        stdout = "".join(captured[StreamKind.STDOUT])
        stderr = "".join(captured[StreamKind.STDERR])
        if self._cancel_requested:
            status, failure = Outcome.CANCELLED, None
        elif timed_out:
            status, failure = Outcome.FAILED, FailureKind.IDLE_TIMEOUT
        elif returncode == 0:
            status, failure = Outcome.SUCCEEDED, None
        else:
            status, failure = Outcome.FAILED, FailureKind.PROCESS_FAILURE

        return RunOutcome(
            status=status,
            args=argv,
            returncode=returncode,
            stdout=stdout,
            stderr=stderr,
            failure=failure,
            error=f"Idle output timeout after {self._idle_timeout}s" if timed_out else None,
            truncated=truncated,
        )

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        kind: StreamKind,
        queue: asyncio.Queue[tuple[StreamKind, bytes | None]],
    ) -> None:
        try:
            while True:
                data = await stream.read(self._chunk_size)
                if not data:
                    break
                queue.put_nowait((kind, data))
        finally:
            queue.put_nowait((kind, None))

    @staticmethod
    def _deliver(on_event: EventCallback, kind: StreamKind, text: str) -> None:
        try:
            on_event(kind, text)
        except Exception:  # pragma: no cover
            logger.exception("on_event callback failed", extra={"stream": kind.value})


async def run_to_completion(
    argv: Sequence[str],
    env: Mapping[str, str] | None = None,
    **supervisor_options,
) -> RunOutcome:
    """Run a process under a fresh supervisor and return its outcome."""

    supervisor = ProcessSupervisor(**supervisor_options)
    supervisor.start(argv, env, lambda kind, text: None, lambda outcome: None)
    outcome = await supervisor.wait()
    assert outcome is not None
    return outcome


__all__ = [
    "DoneCallback",
    "EventCallback",
    "FailureKind",
    "Outcome",
    "ProcessSupervisor",
    "RunOutcome",
    "TRUNCATION_MARKER",
    "run_to_completion",
]
