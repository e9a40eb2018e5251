"""Read backup job definitions from YAML files."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Iterator

import yaml
from pydantic import ValidationError

from .models import JobConfig

logger = logging.getLogger(__name__)

JOB_FILE_PATTERNS = ("*.yml", "*.yaml")


class JobConfigLoadError(RuntimeError):
    """Raised when job definition files cannot be read or validated.

    ``problems`` lists one message per offending file or entry.
    """

    def __init__(self, problems: list[str]) -> None:
        super().__init__("; ".join(problems))
        self.problems = problems


def _describe_validation_error(exc: ValidationError) -> str:
    # pydantic's default rendering echoes input values, passphrases included.
    parts = []
    for error in exc.errors(include_url=False, include_input=False):
        location = ".".join(str(part) for part in error["loc"]) or "entry"
        parts.append(f"{location}: {error['msg']}")
    return ", ".join(parts)


def _job_entries(document: Any, source: Path) -> list[Any]:
    """Accept a single job mapping, a list of them, or ``{"jobs": [...]}``."""

    if isinstance(document, dict) and "jobs" in document:
        document = document["jobs"]
    if document is None:
        return []
    if isinstance(document, dict):
        return [document]
    if isinstance(document, list):
        return document
    raise JobConfigLoadError(
        [f"{source}: expected a job mapping or a list of jobs, got {type(document).__name__}"]
    )


class JobConfigLoader:
    """Loads job definitions from the configured directories.

    Within one directory every job id must be unique. A later directory may
    redefine a job from an earlier one, replacing it as a whole.
    """

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.is_dir()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def job_files(self, base: Path) -> Iterator[Path]:
        seen: set[Path] = set()
        for pattern in JOB_FILE_PATTERNS:
            for path in sorted(base.glob(pattern)):
                if path not in seen:
                    seen.add(path)
                    yield path

    def read_file(self, path: Path) -> list[JobConfig]:
        """Parse and validate every job in ``path``."""

        try:
            document = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise JobConfigLoadError([f"Failed to parse YAML in {path}: {exc}"]) from exc

        configs: list[JobConfig] = []
        problems: list[str] = []
        for index, entry in enumerate(_job_entries(document, path)):
            try:
                configs.append(JobConfig.model_validate(entry))
            except ValidationError as exc:
                problems.append(f"{path} entry {index}: {_describe_validation_error(exc)}")
        if problems:
            raise JobConfigLoadError(problems)
        return configs

    def load_all(self) -> dict[str, JobConfig]:
        configs: dict[str, JobConfig] = {}
        origins: dict[str, Path] = {}
        problems: list[str] = []

        for base in self._search_paths:
            defined_here: dict[str, Path] = {}
            for path in self.job_files(base):
                try:
                    loaded = self.read_file(path)
                except JobConfigLoadError as exc:
                    problems.extend(exc.problems)
                    continue
                for config in loaded:
                    if config.id in defined_here:
                        problems.append(
                            f"Job '{config.id}' is defined in both {defined_here[config.id]} and {path}"
                        )
                        continue
                    defined_here[config.id] = path
                    if config.id in origins:
                        logger.debug(
                            "Job definition overridden",
                            extra={"job_id": config.id, "previous": str(origins[config.id]), "source": str(path)},
                        )
                    configs[config.id] = config
                    origins[config.id] = path

        if problems:
            raise JobConfigLoadError(problems)
        return configs

    def get(self, job_id: str) -> JobConfig:
        try:
            return self.load_all()[job_id]
        except KeyError as exc:
            raise JobConfigLoadError([f"Job '{job_id}' not found in search paths"]) from exc


def load_job_configs(search_paths: Iterable[Path] | None = None) -> dict[str, JobConfig]:
    return JobConfigLoader(search_paths).load_all()


__all__ = ["JobConfigLoadError", "JobConfigLoader", "load_job_configs"]
