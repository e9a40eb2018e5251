"""Utility helpers for running restic."""

from __future__ import annotations

import os
from typing import Mapping

_SANITIZED_VARS = {
    "RESTIC_PASSWORD",
    "RESTIC_PASSWORD_FILE",
    "RESTIC_PASSWORD_COMMAND",
    "RESTIC_REPOSITORY",
    "RESTIC_REPOSITORY_FILE",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return the process environment minus inherited restic credentials, plus ``additional``.

    Inherited repository and password variables are dropped so a job only ever
    talks to the repository its own configuration names.
    """

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env
