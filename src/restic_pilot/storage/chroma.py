"""Chroma-based persistence of job run history."""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Protocol

from .models import RunRecord

if TYPE_CHECKING:
    from ..restic.supervisor import RunOutcome

HISTORY_EXCERPT_LIMIT = 4000


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used by restic-pilot."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    """Protocol for the minimal Chroma client API used by restic-pilot."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class ChromaEvent:
    """Represents a stored event in Chroma."""

    id: str
    job_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


def _where(filters: dict[str, Any] | None) -> dict[str, Any] | None:
    # Chroma only accepts a single field per where clause unless wrapped in $and.
    if not filters:
        return None
    if len(filters) == 1:
        return dict(filters)
    return {"$and": [{key: value} for key, value in filters.items()]}


class ChromaStore:
    """Persist job events and run outcomes via ChromaDB."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "restic_pilot_runs",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = defaultdict(int)

    @property
    def path(self) -> Path:
        return self._path

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; install restic-pilot with its dependencies"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[ChromaEvent]:
        events: list[ChromaEvent] = []
        ids = result.get("ids") or []
        documents = result.get("documents") or []
        metadatas = result.get("metadatas") or []
        for event_id, document, metadata in zip(ids, documents, metadatas):
            metadata = dict(metadata or {})
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            events.append(
                ChromaEvent(
                    id=event_id,
                    job_id=metadata.get("job_id", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        job_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> ChromaEvent:
        collection = self._ensure_collection()
        counter = self._counters[job_id] = self._counters[job_id] + 1
        event_id = f"{job_id}:{uuid.uuid4().hex}"
        timestamp = self._clock()

        document = body if isinstance(body, str) else json.dumps(body)
        record_metadata: dict[str, Any] = {
            "job_id": job_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": counter,
        }
        if metadata:
            record_metadata.update(
                {key: value for key, value in metadata.items() if value is not None}
            )

        collection.add(
            documents=[document],
            metadatas=[record_metadata],
            ids=[event_id],
        )

        return ChromaEvent(
            id=event_id,
            job_id=job_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def fetch_job_events(self, job_id: str, *, limit: int | None = None) -> list[ChromaEvent]:
        collection = self._ensure_collection()
        result = collection.get(where={"job_id": job_id}, limit=limit)
        return self._convert_result(result)

    def record_run(
        self,
        *,
        job_id: str,
        action: str,
        outcome: "RunOutcome",
        history: str = "",
    ) -> RunRecord:
        """Store the terminal outcome of one run along with its history excerpt."""

        payload = {
            "job_id": job_id,
            "action": action,
            "status": outcome.status.value,
            "failure": outcome.failure.value if outcome.failure else None,
            "returncode": outcome.returncode,
            "error": outcome.error,
            "truncated": outcome.truncated,
            "history": history[-HISTORY_EXCERPT_LIMIT:],
        }
        event = self.record_event(
            job_id=job_id,
            event_type="run_completed",
            body=payload,
            metadata={
                "action": action,
                "status": outcome.status.value,
                "failure": payload["failure"],
                "returncode": outcome.returncode,
            },
        )
        return RunRecord(
            job_id=job_id,
            action=action,
            status=outcome.status.value,
            failure=payload["failure"],
            returncode=outcome.returncode,
            finished_at=event.timestamp,
            metadata={"error": outcome.error, "truncated": outcome.truncated},
        )

    def list_runs(self, job_id: str | None = None) -> list[RunRecord]:
        filters: dict[str, Any] = {"event_type": "run_completed"}
        if job_id:
            filters["job_id"] = job_id
        runs: list[RunRecord] = []
        for event in self.search_events(filters=filters):
            doc = json.loads(event.document)
            runs.append(
                RunRecord(
                    job_id=doc["job_id"],
                    action=doc.get("action", "unknown"),
                    status=doc.get("status", "unknown"),
                    failure=doc.get("failure"),
                    returncode=doc.get("returncode"),
                    finished_at=event.timestamp,
                    metadata={
                        k: v
                        for k, v in doc.items()
                        if k not in {"job_id", "action", "status", "failure", "returncode", "history"}
                    },
                )
            )
        return runs

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        collection = self._ensure_collection()
        result = collection.get(where=_where(filters))
        events = self._convert_result(result)
        if query:
            needle = query.lower()
            events = [
                event
                for event in events
                if needle in event.document.lower()
                or any(needle in str(value).lower() for value in event.metadata.values())
            ]
        return events[:limit] if limit else events


__all__ = ["ChromaEvent", "ChromaStore", "ChromaUnavailableError"]
