"""Exception hierarchy shared by the restic-pilot core."""

from __future__ import annotations


class PilotError(RuntimeError):
    """Base class for restic-pilot errors."""


class InvalidConfigError(PilotError):
    """Raised when a job configuration cannot produce a valid invocation."""


class UnknownJobError(PilotError):
    """Raised when an operation references a job id that is not registered."""


class JobBusyError(PilotError):
    """Raised when a job already has a live process."""

    def __init__(self, job_id: str, operation: str) -> None:
        super().__init__(f"Job '{job_id}' is running; cannot {operation} until it finishes")
        self.job_id = job_id
        self.operation = operation


class CapacityExceededError(PilotError):
    """Raised when the process cap is reached and the policy rejects new runs."""


class ParseDegradedError(PilotError):
    """Raised by parsers when tool output does not match the expected shape."""


__all__ = [
    "CapacityExceededError",
    "InvalidConfigError",
    "JobBusyError",
    "ParseDegradedError",
    "PilotError",
    "UnknownJobError",
]
