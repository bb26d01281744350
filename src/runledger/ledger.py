"""Reading and writing the plain-text ``progress.txt`` ledger.

The ledger has two regions. The header holds ``- Key: value`` metadata lines
and ends at the ``## Iteration Log`` heading (or, when an executor dropped the
heading, at the first ``- [n]`` record). The body holds the append-only
``- [n] note`` records. Metadata is only read from the header and records are
only read from the body, so a note that happens to look like
``- Target iterations: 9`` never changes the run's target.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from runledger.constants import (
    LEDGER_INITIAL_NOTE,
    LEDGER_LOG_HEADING,
    LEDGER_LOG_HEADING_PATTERN,
    LEDGER_METADATA_PATTERN,
    LEDGER_RECORD_PATTERN,
    LEDGER_REPORT_KEY,
    LEDGER_SESSION_KEY,
    LEDGER_SUMMARY_KEY,
    LEDGER_TARGET_KEY,
    LEDGER_TITLE,
    TASK_SUMMARY_MAX_CHARS,
)
from runledger.models import IterationRecord, StateError
from runledger.utils import _atomic_write_text, _compact_log_text


@dataclass(frozen=True)
class RunState:
    """Parsed ledger text. ``render()`` reproduces the source exactly."""

    header: tuple[str, ...]
    body: tuple[str, ...]
    records: tuple[IterationRecord, ...]

    # -- metadata -----------------------------------------------------------

    def _metadata_line_index(self, key: str) -> int | None:
        for index, line in enumerate(self.header):
            match = LEDGER_METADATA_PATTERN.match(line)
            if match and match.group(1).strip().lower() == key:
                return index
        return None

    def metadata_value(self, key: str) -> str | None:
        index = self._metadata_line_index(key)
        if index is None:
            return None
        match = LEDGER_METADATA_PATTERN.match(self.header[index])
        return match.group(2) if match else None

    @property
    def target(self) -> int | None:
        raw = self.metadata_value(LEDGER_TARGET_KEY)
        if raw is None or not (raw.isascii() and raw.isdigit()):
            return None
        value = int(raw)
        return value if value > 0 else None

    @property
    def session_started(self) -> str | None:
        return self.metadata_value(LEDGER_SESSION_KEY)

    @property
    def report_path(self) -> str | None:
        return self.metadata_value(LEDGER_REPORT_KEY)

    @property
    def task_summary(self) -> str | None:
        return self.metadata_value(LEDGER_SUMMARY_KEY)

    # -- records ------------------------------------------------------------

    @property
    def last_logged_index(self) -> int:
        return max((record.index for record in self.records), default=0)

    def has_record(self, index: int) -> bool:
        return any(record.index == index for record in self.records)

    def logged_indices(self) -> set[int]:
        return {record.index for record in self.records}

    # -- rewriting ----------------------------------------------------------

    def with_target(self, target: int) -> RunState:
        """Return a copy whose header declares *target* iterations.

        The first target line is replaced even when its value is malformed.
        Without one, the line goes right after ``Session started`` or, failing
        that, at the end of the header ahead of any trailing blank lines.
        """
        new_line = f"- Target iterations: {int(target)}"
        header = list(self.header)
        existing = self._metadata_line_index(LEDGER_TARGET_KEY)
        if existing is not None:
            header[existing] = new_line
        else:
            session = self._metadata_line_index(LEDGER_SESSION_KEY)
            if session is not None:
                header.insert(session + 1, new_line)
            else:
                position = len(header)
                while position > 0 and not header[position - 1].strip():
                    position -= 1
                header.insert(position, new_line)
        return RunState(header=tuple(header), body=self.body, records=self.records)

    def render(self) -> str:
        return "\n".join((*self.header, *self.body))


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _split_regions(lines: list[str]) -> int:
    for index, line in enumerate(lines):
        if LEDGER_LOG_HEADING_PATTERN.match(line):
            return index
    for index, line in enumerate(lines):
        if LEDGER_RECORD_PATTERN.match(line):
            return index
    return len(lines)


def parse_ledger(text: str) -> RunState:
    lines = text.split("\n")
    boundary = _split_regions(lines)
    body = tuple(lines[boundary:])
    records: list[IterationRecord] = []
    for line in body:
        match = LEDGER_RECORD_PATTERN.match(line)
        if match:
            records.append(IterationRecord(index=int(match.group(1)), note=match.group(2)))
    return RunState(header=tuple(lines[:boundary]), body=body, records=tuple(records))


def parse_target(text: str) -> int | None:
    return parse_ledger(text).target


def last_logged_index(text: str) -> int:
    return parse_ledger(text).last_logged_index


def load_ledger(path: Path) -> RunState:
    if not path.is_file():
        raise StateError(f"ledger not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise StateError(f"ledger is unreadable: {path}: {exc}") from exc
    return parse_ledger(text)


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------


def render_initial_ledger(
    *,
    session_started: str,
    target: int,
    report_path: Path,
    task_summary: str,
) -> str:
    summary = _compact_log_text(task_summary, limit=TASK_SUMMARY_MAX_CHARS)
    lines = [
        LEDGER_TITLE,
        "",
        f"- Session started: {session_started}",
        f"- Target iterations: {int(target)}",
        f"- Report file: {report_path}",
        f"- Task summary: {summary}",
        "",
        LEDGER_LOG_HEADING,
        f"- [0] {LEDGER_INITIAL_NOTE}",
    ]
    return "\n".join(lines) + "\n"


def update_ledger(path: Path, transform: Callable[[RunState], RunState]) -> RunState:
    """Apply *transform* to the parsed ledger and atomically persist the result."""
    current = load_ledger(path)
    updated = transform(current)
    if updated.render() != current.render():
        _atomic_write_text(path, updated.render())
    return updated


def sync_target(path: Path, target: int) -> RunState:
    return update_ledger(path, lambda state: state.with_target(target))


def append_record(path: Path, index: int, note: str) -> None:
    line = f"- [{int(index)}] {' '.join(str(note).split())}\n"
    needs_newline = False
    if path.exists() and path.stat().st_size > 0:
        with path.open("rb") as handle:
            handle.seek(-1, 2)
            needs_newline = handle.read(1) != b"\n"
    with path.open("a", encoding="utf-8") as handle:
        if needs_newline:
            handle.write("\n")
        handle.write(line)
