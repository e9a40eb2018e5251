"""Value types derived from restic invocations and output."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

UNAVAILABLE = "unavailable"
ROOT_DIR = "."


class Action(str, Enum):
    """Start-type actions a job can run."""

    BACKUP = "backup"
    RESTORE_FILE = "restore-file"
    RESTORE_TREE = "restore-tree"
    LIST_FILES = "list-files"
    STATUS = "status"


class StreamKind(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(slots=True, frozen=True)
class FileTreeEntry:
    path: str
    dir: str
    name: str

    def as_dict(self) -> dict[str, str]:
        return {"path": self.path, "dir": self.dir, "name": self.name}


@dataclass(slots=True, frozen=True)
class StatusRecord:
    """Summary of the snapshots stored in a repository.

    Metrics restic does not report carry ``UNAVAILABLE`` instead of a number so
    consumers can tell "zero" from "not supported".
    """

    snapshot_count: int
    chain_start: str | None
    chain_end: str | None
    backup_volumes: str = UNAVAILABLE
    source_files: str = UNAVAILABLE
    source_file_size: str = UNAVAILABLE

    @property
    def empty(self) -> bool:
        return self.snapshot_count == 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "snapshot_count": self.snapshot_count,
            "chain_start": self.chain_start,
            "chain_end": self.chain_end,
            "backup_volumes": self.backup_volumes,
            "source_files": self.source_files,
            "source_file_size": self.source_file_size,
        }


@dataclass(slots=True, frozen=True)
class ProgressSnapshot:
    volume_index: int | None
    total_size: int | None
    value: float | None

    def as_dict(self) -> dict[str, Any]:
        return {"volume_index": self.volume_index, "total_size": self.total_size, "value": self.value}


__all__ = [
    "Action",
    "FileTreeEntry",
    "ProgressSnapshot",
    "ROOT_DIR",
    "StatusRecord",
    "StreamKind",
    "UNAVAILABLE",
]
