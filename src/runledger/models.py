"""Data models, exceptions, and coercion helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from runledger.constants import (
    DEFAULT_MAX_TREE_FILES,
    LEDGER_FILE_NAME,
    LOCK_FILE_NAME,
    LOGS_DIR_NAME,
    MANIFEST_FILE_NAME,
    PROMPTS_DIR_NAME,
    REPORT_FILE_NAME,
    SYSTEM_PROMPT_FILE_NAME,
)


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


def _coerce_positive_int(value: Any, *, default: int) -> int:
    try:
        parsed = int(value)
    except Exception:
        return default
    return parsed if parsed > 0 else default


class UsageError(RuntimeError):
    """Raised when command-line arguments are missing, invalid, or incompatible."""


class StateError(RuntimeError):
    """Raised when run state cannot be loaded or validated."""


class ResumeConflictError(StateError):
    """Raised when the logged history exceeds the effective target."""


class LockError(RuntimeError):
    """Raised when another orchestrator holds the run lock."""


class RunnerError(RuntimeError):
    """Raised when the external runner fails; the failure is already in the ledger."""

    def __init__(self, message: str, *, log_path: Path | None = None) -> None:
        super().__init__(message)
        self.log_path = log_path


@dataclass(frozen=True)
class IterationRecord:
    index: int
    note: str


@dataclass(frozen=True)
class RunnerConfig:
    runner: str
    command: str
    timeout_seconds: float


@dataclass(frozen=True)
class RunledgerConfig:
    runner: RunnerConfig
    fingerprint_method: str
    lock_stale_seconds: int
    output_roots: dict[str, str]
    source_path: Path | None = None


@dataclass(frozen=True)
class RunPaths:
    """Filesystem layout of one run directory."""

    run_dir: Path

    @property
    def report_path(self) -> Path:
        return self.run_dir / REPORT_FILE_NAME

    @property
    def ledger_path(self) -> Path:
        return self.run_dir / LEDGER_FILE_NAME

    @property
    def manifest_path(self) -> Path:
        return self.run_dir / MANIFEST_FILE_NAME

    @property
    def system_prompt_path(self) -> Path:
        return self.run_dir / SYSTEM_PROMPT_FILE_NAME

    @property
    def lock_path(self) -> Path:
        return self.run_dir / LOCK_FILE_NAME

    @property
    def prompts_dir(self) -> Path:
        return self.run_dir / PROMPTS_DIR_NAME

    @property
    def logs_dir(self) -> Path:
        return self.run_dir / LOGS_DIR_NAME


@dataclass(frozen=True)
class FreshRunRequest:
    workflow: str
    task: str
    target: int
    output_root: Path
    task_name: str = ""
    skill_files: tuple[Path, ...] = ()
    context_files: tuple[Path, ...] = ()
    include_codebase: bool = False
    max_tree_files: int = DEFAULT_MAX_TREE_FILES
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResolvedRun:
    """Run identity plus the point from which stages must (re)start."""

    workflow: str
    paths: RunPaths
    target: int
    start_index: int
    last_logged_index: int
    resumed: bool
    task: str
    parameters: dict[str, Any] = field(default_factory=dict)
    target_synced: bool = False

    @property
    def has_remaining_work(self) -> bool:
        return self.start_index <= self.target


@dataclass(frozen=True)
class StageDefinition:
    """One executor call: what to send, where to log, and which file proves progress.

    ``ledger_managed`` stages expect the executor itself to append the
    ``[index]`` record; otherwise the orchestrator records completion.
    ``publish`` pairs are (source, destination) copies applied once the
    stage is complete.
    """

    index: int
    name: str
    title: str
    prompt_text: str
    prompt_path: Path
    log_path: Path
    watch_path: Path
    ledger_managed: bool = False
    output_path: Path | None = None
    dry_run_output: str | None = None
    publish: tuple[tuple[Path, Path], ...] = ()


@dataclass(frozen=True)
class StageOutcome:
    index: int
    status: str  # "completed" | "dry_run" | "no_progress" | "unindexed"
    note: str
    log_path: Path
    recorded: bool = True


@dataclass(frozen=True)
class RunnerResult:
    exit_code: int | None
    timed_out: bool
    log_path: Path
    duration_seconds: float
    error: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.error


@dataclass(frozen=True)
class RunContext:
    """Everything a stage call needs besides the stage itself."""

    run: ResolvedRun
    runner: RunnerConfig
    fingerprint_method: str
    dry_run: bool = False
    workdir: Path = field(default_factory=Path.cwd)
