"""Job configuration and runtime state models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from ..restic.models import Action, FileTreeEntry, ProgressSnapshot, StatusRecord

if TYPE_CHECKING:
    from ..restic.supervisor import Outcome, ProcessSupervisor


class JobConfig(BaseModel):
    """Configuration describing one backup target."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Opaque identifier, stable for the job's lifetime.")
    path: str | None = Field(default=None, description="Source directory to back up.")
    url: str | None = Field(default=None, description="Restic repository location.")
    passphrase: SecretStr | None = Field(
        default=None,
        description="Repository passphrase; exported to restic via the environment only.",
    )
    title: str | None = Field(default=None, description="Optional display title.")

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Job id must not be empty")
        return normalized

    @field_validator("path", "url", "title", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any):  # type: ignore[override]
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def display_title(self) -> str:
        return self.title or "Unnamed backup"


class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DELETED = "deleted"


@dataclass(slots=True)
class JobRuntimeState:
    """Mutable per-job state, owned by the controller."""

    job_id: str
    config: JobConfig | None = None
    state: JobState = JobState.IDLE
    supervisor: "ProcessSupervisor | None" = None
    action: Action | None = None
    cancel_requested: bool = False
    progress: ProgressSnapshot | None = None
    history: str = ""
    history_cursor: int = 0
    error_seen: bool = False
    file_tree: list[FileTreeEntry] | None = None
    status: StatusRecord | None = None
    last_outcome: "Outcome | None" = None
    last_run_at: datetime | None = None
    progress_state: Any = field(default=None, repr=False)

    @property
    def history_delta(self) -> str:
        return self.history[self.history_cursor:]


__all__ = ["JobConfig", "JobRuntimeState", "JobState"]
