"""Configuration management for restic-pilot."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
import os
import tempfile
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class PilotSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    restic_path: str = Field(default="restic", validation_alias="RESTIC_PATH")
    scratch_dir: Path = Field(
        default_factory=lambda: Path(tempfile.gettempdir()), validation_alias="PILOT_SCRATCH_DIR"
    )
    max_concurrent_processes: int = Field(default=4, validation_alias="PILOT_MAX_CONCURRENT")
    concurrency_policy: str = Field(default="queue", validation_alias="PILOT_CONCURRENCY_POLICY")
    idle_output_timeout: float | None = Field(default=None, validation_alias="PILOT_IDLE_TIMEOUT")
    output_buffer_limit: int = Field(
        default=1024 * 1000, validation_alias="PILOT_OUTPUT_BUFFER_LIMIT"
    )
    volume_size_mb: float | None = Field(default=25.0, validation_alias="PILOT_VOLUME_SIZE_MB")
    job_paths: Annotated[tuple[Path, ...], NoDecode] = Field(default=(Path("jobs"),), validation_alias="PILOT_JOB_PATHS")
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    log_level: str = Field(default="INFO", validation_alias="PILOT_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "PILOT_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("concurrency_policy")
    @classmethod
    def _normalize_policy(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"queue", "reject"}:
            raise ValueError("PILOT_CONCURRENCY_POLICY must be 'queue' or 'reject'")
        return normalized

    @field_validator("job_paths", mode="before")
    @classmethod
    def _parse_job_paths(cls, value):
        if value is None or value == "":
            return (Path("jobs"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("jobs"),)
        raise TypeError("PILOT_JOB_PATHS must be a list of paths or a path-separated string")

    @field_validator("max_concurrent_processes", "output_buffer_limit")
    @classmethod
    def _validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("process and buffer limits must be >= 0")
        return value

    @field_validator("idle_output_timeout", "volume_size_mb")
    @classmethod
    def _validate_positive(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("timeouts and volume sizes must be > 0 when set")
        return value


@lru_cache(maxsize=1)
def get_settings() -> PilotSettings:
    """Return cached settings instance."""

    settings = PilotSettings()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.job_paths = tuple(path.expanduser().resolve() for path in settings.job_paths)
    settings.scratch_dir = settings.scratch_dir.expanduser()
    return settings


__all__ = ["PilotSettings", "get_settings"]
