from __future__ import annotations

import pytest

from restic_pilot.errors import InvalidConfigError
from restic_pilot.jobs import JobConfig
from restic_pilot.restic import Action, build_invocation, describe_invocation
from restic_pilot.restic.commands import PASSWORD_ENV, SCRATCH_ENV


def make_config(**overrides) -> JobConfig:
    values = {
        "id": "b-1",
        "path": "/home/user/My Documents",
        "url": "/mnt/backups/repo",
        "passphrase": "hunter2",
        "title": "Documents",
    }
    values.update(overrides)
    return JobConfig(**values)


def test_backup_invocation_shape() -> None:
    invocation = build_invocation(Action.BACKUP, make_config(), scratch_dir="/tmp/scratch")

    assert invocation.argv == ("restic", "backup", "/home/user/My Documents", "-r", "/mnt/backups/repo")
    assert invocation.env == {PASSWORD_ENV: "hunter2", SCRATCH_ENV: "/tmp/scratch"}


def test_backup_round_trip_recovers_source_and_repository() -> None:
    config = make_config(path="/data/with; rm -rf /", url="sftp:user@host:/srv/repo")
    invocation = build_invocation("backup", config)

    description = describe_invocation(invocation.argv)

    assert description["action"] is Action.BACKUP
    assert description["source"] == config.path
    assert description["repository"] == config.url


@pytest.mark.parametrize(
    ("action", "kwargs", "expected"),
    [
        (
            Action.RESTORE_FILE,
            {"item_path": "/a/b.txt", "destination": "/restore"},
            ["restore", "latest", "-r", "/mnt/backups/repo", "-i", "/a/b.txt", "-t", "/restore"],
        ),
        (
            Action.RESTORE_TREE,
            {"destination": "/restore"},
            ["restore", "latest", "-r", "/mnt/backups/repo", "-t", "/restore"],
        ),
        (Action.LIST_FILES, {}, ["ls", "latest", "-r", "/mnt/backups/repo"]),
        (Action.STATUS, {}, ["snapshots", "-r", "/mnt/backups/repo"]),
    ],
)
def test_action_argument_shapes(action, kwargs, expected) -> None:
    invocation = build_invocation(action, make_config(), executable="/usr/bin/restic", **kwargs)

    assert invocation.argv == ("/usr/bin/restic", *expected)
    assert describe_invocation(invocation.argv)["action"] is action


def test_backup_requires_path() -> None:
    with pytest.raises(InvalidConfigError):
        build_invocation(Action.BACKUP, make_config(path=None))


def test_every_action_requires_repository() -> None:
    with pytest.raises(InvalidConfigError):
        build_invocation(Action.STATUS, make_config(url="  "))


@pytest.mark.parametrize("path", ["--password-command=touch /tmp/pwned", "-x", " --exclude=*"])
def test_backup_rejects_option_like_source(path: str) -> None:
    with pytest.raises(InvalidConfigError, match="starts with '-'"):
        build_invocation(Action.BACKUP, make_config(path=path))


def test_backup_accepts_dash_inside_source() -> None:
    invocation = build_invocation(Action.BACKUP, make_config(path="/srv/data-2024/-archive"))
    assert invocation.argv[2] == "/srv/data-2024/-archive"


def test_restore_requires_destination() -> None:
    with pytest.raises(InvalidConfigError):
        build_invocation(Action.RESTORE_TREE, make_config())
    with pytest.raises(InvalidConfigError):
        build_invocation(Action.RESTORE_FILE, make_config(), destination="/restore")


def test_unknown_action_rejected() -> None:
    with pytest.raises(InvalidConfigError):
        build_invocation("prune", make_config())


def test_passphrase_not_in_repr() -> None:
    config = make_config()
    invocation = build_invocation(Action.BACKUP, config)

    assert "hunter2" not in repr(config)
    assert "hunter2" not in repr(invocation)
    assert "hunter2" not in " ".join(invocation.argv)


def test_missing_passphrase_leaves_env_without_password() -> None:
    invocation = build_invocation(Action.STATUS, make_config(passphrase=None))
    assert PASSWORD_ENV not in invocation.env
