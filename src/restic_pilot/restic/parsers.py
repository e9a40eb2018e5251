"""Parsers for restic's human-readable output.

Every parser takes its state as an argument and returns the new state, so the
same functions work chunk by chunk during a run and on captured output in tests.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace

from ..errors import ParseDegradedError
from .models import ROOT_DIR, FileTreeEntry, ProgressSnapshot, StatusRecord

ERROR_OPEN = "<!--:error-->"
ERROR_CLOSE = "<!--error:-->"

_SOURCE_SIZE_RE = re.compile(r"SourceFileSize ([0-9]+) ")
_VOLUME_RE = re.compile(r"Writing.*\.vol([0-9]+)\.")
_NOISE_PREFIXES = ("A ", ":: :: ")
_FIELD_SEPARATOR_RE = re.compile(r"\s{2,}")
_SEPARATOR_LINE_RE = re.compile(r"^-+$")
_SUMMARY_LINE_RE = re.compile(r"^\d+ snapshots?$")

_MEGABYTE = 1024 * 1024


@dataclass(slots=True, frozen=True)
class BackupProgressState:
    """Signals observed so far during one backup run."""

    total_size: int | None = None
    volume_index: int | None = None
    progress: float | None = None

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            volume_index=self.volume_index, total_size=self.total_size, value=self.progress
        )


def scan_backup_chunk(
    chunk: str,
    state: BackupProgressState,
    volume_size_mb: float | None,
) -> tuple[BackupProgressState, str]:
    """Inspect one stdout chunk of a backup run.

    Returns the updated state and the text to pass through to the history, with
    noise lines removed. Progress is only computed once both a source size and a
    volume index have been seen and the volume size is known; it never decreases
    and may exceed 100 near completion.
    """

    total_size = state.total_size
    volume_index = state.volume_index

    sizes = _SOURCE_SIZE_RE.findall(chunk)
    if sizes:
        total_size = int(sizes[-1])
    volumes = _VOLUME_RE.findall(chunk)
    if volumes:
        volume_index = int(volumes[-1])

    progress = state.progress
    if total_size and volume_index is not None and volume_size_mb:
        computed = (volume_index * 100) / ((total_size / _MEGABYTE) / volume_size_mb)
        if progress is None or computed > progress:
            progress = computed

    new_state = replace(state, total_size=total_size, volume_index=volume_index, progress=progress)
    return new_state, filter_noise(chunk)


def filter_noise(chunk: str) -> str:
    """Drop per-file add markers and ``:: ::`` status lines from ``chunk``."""

    kept = [
        line for line in chunk.splitlines(keepends=True) if not line.startswith(_NOISE_PREFIXES)
    ]
    return "".join(kept)


def parse_file_listing(stdout: str) -> list[FileTreeEntry]:
    """Parse ``restic ls`` output: first line is a header, then one path per line."""

    entries: list[FileTreeEntry] = []
    for line in stdout.split("\n")[1:]:
        line = line.rstrip("\r")
        if not line:
            continue
        separator = line.rfind("/")
        if separator == -1:
            entries.append(FileTreeEntry(path=line, dir=ROOT_DIR, name=line))
        else:
            entries.append(FileTreeEntry(path=line, dir=line[:separator], name=line[separator + 1 :]))
    return entries


def parse_snapshots(stdout: str) -> StatusRecord:
    """Parse ``restic snapshots`` output into a :class:`StatusRecord`.

    The first two lines are the column header and its underline. Dash separator
    lines, the trailing ``N snapshots`` summary and blank lines are ignored.
    """

    rows: list[list[str]] = []
    for line in stdout.split("\n")[2:]:
        stripped = line.strip()
        if not stripped or _SEPARATOR_LINE_RE.match(stripped) or _SUMMARY_LINE_RE.match(stripped):
            continue
        fields = _FIELD_SEPARATOR_RE.split(stripped)
        if len(fields) < 2:
            raise ParseDegradedError(f"Snapshot row has no timestamp field: {stripped!r}")
        rows.append(fields)

    if not rows:
        return StatusRecord(snapshot_count=0, chain_start=None, chain_end=None)
    return StatusRecord(snapshot_count=len(rows), chain_start=rows[0][1], chain_end=rows[-1][1])


def tag_stderr(chunk: str) -> str:
    """Wrap stderr text in markers a renderer can style as an error region."""

    return f"{ERROR_OPEN}{chunk}{ERROR_CLOSE}"


__all__ = [
    "BackupProgressState",
    "ERROR_CLOSE",
    "ERROR_OPEN",
    "filter_noise",
    "parse_file_listing",
    "parse_snapshots",
    "scan_backup_chunk",
    "tag_stderr",
]
