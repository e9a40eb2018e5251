"""Map job configurations to restic invocations."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Sequence

from ..errors import InvalidConfigError
from .models import Action

if TYPE_CHECKING:
    from ..jobs.models import JobConfig

PASSWORD_ENV = "RESTIC_PASSWORD"
SCRATCH_ENV = "TMPDIR"


@dataclass(slots=True, frozen=True)
class Invocation:
    """Argument vector plus environment overlay for one restic run."""

    action: Action
    argv: tuple[str, ...]
    env: dict[str, str] = field(repr=False, compare=False)


def _require(value: str | None, name: str, action: Action, job_id: str) -> str:
    if value is None or not str(value).strip():
        raise InvalidConfigError(f"Job '{job_id}' is missing '{name}' required for {action.value}")
    return str(value)


def _positional(value: str, name: str, job_id: str) -> str:
    # restic reads any token starting with "-" as an option.
    if value.lstrip().startswith("-"):
        raise InvalidConfigError(f"Job '{job_id}' has a '{name}' that starts with '-': {value!r}")
    return value


def build_invocation(
    action: Action | str,
    config: "JobConfig",
    *,
    executable: str = "restic",
    scratch_dir: str | Path | None = None,
    item_path: str | None = None,
    destination: str | None = None,
) -> Invocation:
    """Return the restic invocation for ``action`` on the job described by ``config``.

    Paths are passed as single argv tokens and are never interpolated into a shell
    command line.
    """

    try:
        action = Action(action)
    except ValueError as exc:
        raise InvalidConfigError(f"Unsupported action '{action}'") from exc

    url = _require(config.url, "url", action, config.id)

    if action is Action.BACKUP:
        source = _positional(_require(config.path, "path", action, config.id), "path", config.id)
        args: list[str] = ["backup", source, "-r", url]
    elif action is Action.RESTORE_FILE:
        item = _require(item_path, "item_path", action, config.id)
        target = _require(destination, "destination", action, config.id)
        args = ["restore", "latest", "-r", url, "-i", item, "-t", target]
    elif action is Action.RESTORE_TREE:
        target = _require(destination, "destination", action, config.id)
        args = ["restore", "latest", "-r", url, "-t", target]
    elif action is Action.LIST_FILES:
        args = ["ls", "latest", "-r", url]
    else:
        args = ["snapshots", "-r", url]

    env: dict[str, str] = {}
    if config.passphrase is not None:
        env[PASSWORD_ENV] = config.passphrase.get_secret_value()
    if scratch_dir is not None:
        env[SCRATCH_ENV] = str(scratch_dir)

    return Invocation(action=action, argv=(str(executable), *args), env=env)


def describe_invocation(argv: Sequence[str]) -> dict[str, Any]:
    """Recover the action and targets from an argv built by :func:`build_invocation`."""

    args = list(argv[1:])
    if not args:
        raise InvalidConfigError("Empty restic invocation")

    description: dict[str, Any] = {
        "action": None,
        "source": None,
        "repository": None,
        "item_path": None,
        "destination": None,
    }
    flags = {"-r": "repository", "-i": "item_path", "-t": "destination"}
    positional: list[str] = []
    index = 1
    while index < len(args):
        token = args[index]
        if token in flags and index + 1 < len(args):
            description[flags[token]] = args[index + 1]
            index += 2
            continue
        positional.append(token)
        index += 1

    command = args[0]
    if command == "backup":
        description["action"] = Action.BACKUP
        description["source"] = positional[0] if positional else None
    elif command == "restore":
        description["action"] = (
            Action.RESTORE_FILE if description["item_path"] is not None else Action.RESTORE_TREE
        )
    elif command == "ls":
        description["action"] = Action.LIST_FILES
    elif command == "snapshots":
        description["action"] = Action.STATUS
    else:
        raise InvalidConfigError(f"Unrecognized restic command '{command}'")
    return description


__all__ = ["Invocation", "PASSWORD_ENV", "SCRATCH_ENV", "build_invocation", "describe_invocation"]
