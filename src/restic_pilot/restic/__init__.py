"""restic CLI orchestration: invocations, output parsing and process supervision."""

from .commands import Invocation, build_invocation, describe_invocation
from .models import Action, FileTreeEntry, ProgressSnapshot, StatusRecord, StreamKind
from .supervisor import FailureKind, Outcome, ProcessSupervisor, RunOutcome

__all__ = [
    "Action",
    "FailureKind",
    "FileTreeEntry",
    "Invocation",
    "Outcome",
    "ProcessSupervisor",
    "ProgressSnapshot",
    "RunOutcome",
    "StatusRecord",
    "StreamKind",
    "build_invocation",
    "describe_invocation",
]
