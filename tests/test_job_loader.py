from __future__ import annotations

from pathlib import Path
import textwrap

import pytest

from restic_pilot.jobs import JobConfigLoadError, JobConfigLoader, load_job_configs


def write_yaml(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(body).strip() + "\n", encoding="utf-8")
    return path


def test_later_directory_replaces_whole_job(tmp_path: Path) -> None:
    write_yaml(
        tmp_path / "system" / "nightly.yaml",
        """
        id: nightly
        path: /home/user/work
        url: sftp:backup@host:/srv/restic
        passphrase: hunter2
        title: Nightly
        """,
    )
    write_yaml(
        tmp_path / "user" / "nightly.yml",
        """
        id: nightly
        path: /home/user/work
        url: /mnt/usb/restic
        """,
    )

    jobs = JobConfigLoader([tmp_path / "system", tmp_path / "user"]).load_all()

    assert jobs["nightly"].url == "/mnt/usb/restic"
    assert jobs["nightly"].passphrase is None
    assert jobs["nightly"].title is None


def test_list_and_jobs_key_documents(tmp_path: Path) -> None:
    write_yaml(
        tmp_path / "a.yaml",
        """
        - id: photos
          path: /home/user/photos
          url: /mnt/repo
        - id: docs
          path: /home/user/docs
          url: /mnt/repo
          title: ""
        """,
    )
    write_yaml(
        tmp_path / "b.yml",
        """
        jobs:
          - id: mail
            path: /var/mail
            url: /mnt/repo
        """,
    )

    jobs = load_job_configs([tmp_path])

    assert sorted(jobs) == ["docs", "mail", "photos"]
    assert jobs["docs"].display_title == "Unnamed backup"


def test_empty_files_and_missing_directories(tmp_path: Path) -> None:
    (tmp_path / "empty.yaml").write_text("", encoding="utf-8")
    write_yaml(tmp_path / "none.yaml", "jobs:")

    loader = JobConfigLoader([tmp_path, tmp_path / "absent"])

    assert loader.search_paths == [tmp_path]
    assert loader.load_all() == {}


def test_duplicate_id_in_one_directory_is_rejected(tmp_path: Path) -> None:
    write_yaml(tmp_path / "a.yaml", "id: nightly\nurl: /mnt/a")
    write_yaml(tmp_path / "b.yaml", "id: nightly\nurl: /mnt/b")

    with pytest.raises(JobConfigLoadError, match="defined in both"):
        JobConfigLoader([tmp_path]).load_all()


def test_duplicate_id_in_one_file_is_rejected(tmp_path: Path) -> None:
    write_yaml(
        tmp_path / "jobs.yaml",
        """
        - id: nightly
          url: /mnt/a
        - id: nightly
          url: /mnt/b
        """,
    )

    with pytest.raises(JobConfigLoadError) as excinfo:
        JobConfigLoader([tmp_path]).load_all()

    assert len(excinfo.value.problems) == 1


def test_validation_error_does_not_echo_passphrase(tmp_path: Path) -> None:
    write_yaml(
        tmp_path / "broken.yaml",
        """
        id: "   "
        url: /mnt/repo
        passphrase: correct-horse-battery
        """,
    )

    with pytest.raises(JobConfigLoadError) as excinfo:
        JobConfigLoader([tmp_path]).load_all()

    message = str(excinfo.value)
    assert "broken.yaml entry 0" in message
    assert "id:" in message
    assert "correct-horse-battery" not in message


def test_problems_from_several_files_are_collected(tmp_path: Path) -> None:
    write_yaml(tmp_path / "a.yaml", "id: [unclosed")
    write_yaml(tmp_path / "b.yaml", "just a string")
    write_yaml(tmp_path / "c.yaml", "id: fine\nurl: /mnt/repo")

    with pytest.raises(JobConfigLoadError) as excinfo:
        JobConfigLoader([tmp_path]).load_all()

    problems = excinfo.value.problems
    assert len(problems) == 2
    assert "Failed to parse YAML" in problems[0]
    assert "expected a job mapping" in problems[1]


def test_get_unknown_job(tmp_path: Path) -> None:
    write_yaml(tmp_path / "a.yaml", "id: nightly\nurl: /mnt/repo")
    loader = JobConfigLoader([tmp_path])

    assert loader.get("nightly").url == "/mnt/repo"
    with pytest.raises(JobConfigLoadError, match="not found"):
        loader.get("weekly")
