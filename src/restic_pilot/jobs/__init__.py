"""Job models, loader and controller exports."""

from .controller import JobController, JobNotification, NotificationKind
from .loader import JobConfigLoadError, JobConfigLoader, load_job_configs
from .models import JobConfig, JobRuntimeState, JobState

__all__ = [
    "JobConfig",
    "JobConfigLoadError",
    "JobConfigLoader",
    "JobController",
    "JobNotification",
    "JobRuntimeState",
    "JobState",
    "NotificationKind",
    "load_job_configs",
]
