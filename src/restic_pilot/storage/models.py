"""Data models for persistent run tracking."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class RunRecord:
    job_id: str
    action: str
    status: str
    failure: str | None
    returncode: int | None
    finished_at: datetime
    metadata: dict[str, Any]


__all__ = ["RunRecord"]
