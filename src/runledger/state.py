"""Run directory state: layout, task artifact, manifest, and the advisory run lock."""

from __future__ import annotations

import json
import os
import socket
import subprocess
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from runledger.constants import MANIFEST_SCHEMA_VERSION, REPORT_TASK_BEGIN, REPORT_TASK_END
from runledger.models import RunPaths, StateError, UsageError
from runledger.utils import (
    _atomic_write_text,
    _is_command_available,
    _parse_utc,
    _read_json,
    _slugify,
    _timestamp_slug,
    _utc_now,
    _write_json,
)


# ---------------------------------------------------------------------------
# Run directory layout
# ---------------------------------------------------------------------------


def _create_run_dir(output_root: Path, label: str) -> RunPaths:
    """Create ``<output_root>/<YYYYmmdd_HHMMSS>_<slug>``, suffixing on collision."""
    output_root.mkdir(parents=True, exist_ok=True)
    base_name = f"{_timestamp_slug()}_{_slugify(label)}"
    candidate = output_root / base_name
    suffix = 1
    while True:
        try:
            candidate.mkdir(parents=False, exist_ok=False)
            return RunPaths(run_dir=candidate)
        except FileExistsError:
            suffix += 1
            candidate = output_root / f"{base_name}_{suffix}"


def _require_run_files(paths: RunPaths, *, needs_system_prompt: bool) -> None:
    if not paths.run_dir.is_dir():
        raise UsageError(f"resume directory does not exist: {paths.run_dir}")
    required = [paths.report_path, paths.ledger_path]
    if needs_system_prompt:
        required.append(paths.system_prompt_path)
    missing = [path.name for path in required if not path.is_file()]
    if missing:
        names = ", ".join(path.name for path in required)
        raise UsageError(
            f"resume directory must contain {names}: {paths.run_dir} (missing {', '.join(missing)})"
        )


# ---------------------------------------------------------------------------
# Task artifact (report.txt)
# ---------------------------------------------------------------------------


def _codebase_snapshot(root: Path, *, max_files: int) -> list[str]:
    if _is_command_available("rg"):
        try:
            completed = subprocess.run(
                ["rg", "--files"],
                cwd=root,
                text=True,
                capture_output=True,
                check=False,
            )
        except OSError:
            completed = None
        if completed is not None and completed.returncode in {0, 1}:
            return completed.stdout.splitlines()[:max_files]

    collected: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(name for name in dirnames if name != ".git")
        for filename in sorted(filenames):
            collected.append(str((Path(dirpath) / filename).relative_to(root)))
            if len(collected) >= max_files:
                return collected
    return collected


def _embedded_file_block(heading: str, path: Path) -> list[str]:
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise UsageError(f"could not read {path}: {exc}") from exc
    return [
        f"{heading}: {path}",
        f"<<<BEGIN_FILE:{path}>>>",
        content.rstrip("\n"),
        f"<<<END_FILE:{path}>>>",
        "",
    ]


def render_report(
    task: str,
    *,
    skill_files: tuple[Path, ...] = (),
    context_files: tuple[Path, ...] = (),
    snapshot: list[str] | None = None,
) -> str:
    lines = [
        "# Report",
        "",
        "## Primary Task",
        "",
        REPORT_TASK_BEGIN,
        task.rstrip("\n"),
        REPORT_TASK_END,
        "",
    ]
    if skill_files:
        lines.extend(["## Skill Files", ""])
        for skill_file in skill_files:
            lines.extend(_embedded_file_block("## Skill Context", skill_file))
    if context_files:
        lines.extend(["## Additional Context Files", ""])
        for context_file in context_files:
            lines.extend(_embedded_file_block("## Context", context_file))
    if snapshot is not None:
        lines.extend(["## Codebase Snapshot", "", *snapshot, ""])
    return "\n".join(lines)


def read_task_text(report_path: Path) -> str:
    """Return the task text recorded in an existing report artifact."""
    try:
        text = report_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise StateError(f"report is unreadable: {report_path}: {exc}") from exc
    lines = text.split("\n")
    if REPORT_TASK_BEGIN in lines:
        start = lines.index(REPORT_TASK_BEGIN) + 1
        if REPORT_TASK_END in lines[start:]:
            return "\n".join(lines[start : lines.index(REPORT_TASK_END, start)]).strip()
    # Hand-written reports: the section runs to the next heading.
    try:
        start = lines.index("## Primary Task") + 1
    except ValueError:
        return text.strip()
    collected: list[str] = []
    for line in lines[start:]:
        if line.startswith("## "):
            break
        collected.append(line)
    return "\n".join(collected).strip()


# ---------------------------------------------------------------------------
# Run manifest (run.json)
# ---------------------------------------------------------------------------


def write_manifest(
    paths: RunPaths,
    *,
    workflow: str,
    task_name: str,
    parameters: dict[str, Any],
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "schema_version": MANIFEST_SCHEMA_VERSION,
        "workflow": workflow,
        "created_at": _utc_now(),
        "task_name": task_name,
        "parameters": dict(parameters),
    }
    _write_json(paths.manifest_path, payload)
    return payload


def load_manifest(paths: RunPaths, *, required: bool) -> dict[str, Any] | None:
    if not paths.manifest_path.exists():
        if required:
            raise StateError(f"run manifest not found: {paths.manifest_path}")
        return None
    payload = _read_json(paths.manifest_path)
    version = payload.get("schema_version")
    if version != MANIFEST_SCHEMA_VERSION:
        raise StateError(
            f"unsupported run manifest schema_version {version!r} in {paths.manifest_path}"
        )
    parameters = payload.get("parameters", {})
    if not isinstance(parameters, dict):
        raise StateError(f"run manifest parameters must be an object: {paths.manifest_path}")
    return payload


# ---------------------------------------------------------------------------
# Run lock
#
# ``<run_dir>/.lock`` is created with O_EXCL and holds a JSON description of
# its holder. A holder on this host is judged by whether its pid is still
# running, however long one runner call keeps it from heartbeating. A holder
# elsewhere can only be judged by heartbeat age.
# ---------------------------------------------------------------------------


def _coerce_pid(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    text = str(value or "").strip()
    if text.isascii() and text.isdigit() and int(text) > 0:
        return int(text)
    return None


def _pid_is_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


@dataclass(frozen=True)
class _LockHolder:
    payload: dict[str, Any]

    @property
    def pid(self) -> int | None:
        return _coerce_pid(self.payload.get("pid"))

    @property
    def host(self) -> str:
        return str(self.payload.get("host", ""))

    @property
    def heartbeat(self) -> datetime | None:
        return _parse_utc(str(self.payload.get("last_heartbeat_at", "")))

    def is_running(self) -> bool | None:
        """Liveness of a holder on this host; None when it cannot be checked."""
        if self.host != socket.gethostname() or self.pid is None:
            return None
        return _pid_is_alive(self.pid)

    def age_seconds(self, now: datetime) -> float | None:
        heartbeat = self.heartbeat
        if heartbeat is None:
            return None
        return max(0.0, (now - heartbeat).total_seconds())

    def is_stale(self, *, now: datetime, stale_seconds: int) -> bool:
        running = self.is_running()
        if running is not None:
            return not running
        age = self.age_seconds(now)
        return age is None or age > stale_seconds

    def describe(self, now: datetime) -> str:
        age = self.age_seconds(now)
        age_text = f"{age:.0f}s" if age is not None else "unknown"
        return (
            f"pid={self.payload.get('pid', '<unknown>')}, host={self.host or '<unknown>'}, "
            f"age={age_text}, command={self.payload.get('command', '<unknown>')}"
        )


def _load_lock_holder(lock_path: Path) -> _LockHolder | None:
    try:
        loaded = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(loaded, dict) or not loaded:
        return None
    return _LockHolder(payload=loaded)


def _create_lock_file(lock_path: Path, payload: dict[str, Any]) -> None:
    fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, indent=2) + "\n")


def _discard_lock_file(lock_path: Path, *, tag: str) -> None:
    moved = lock_path.with_name(f"{lock_path.name}.stale.{tag}")
    try:
        os.replace(lock_path, moved)
    except FileNotFoundError:
        return
    moved.unlink(missing_ok=True)


def _acquire_lock(lock_path: Path, *, run_dir: Path, command: str, stale_seconds: int) -> tuple[bool, str]:
    """Take the run lock, replacing it only when its holder is gone or silent.

    Returns ``(acquired, message)``; the message is meant for the orchestrator log.
    """
    started_at = _utc_now()
    owner_uuid = uuid.uuid4().hex
    payload: dict[str, Any] = {
        "pid": os.getpid(),
        "host": socket.gethostname(),
        "owner_uuid": owner_uuid,
        "started_at": started_at,
        "last_heartbeat_at": started_at,
        "started_monotonic": time.monotonic(),
        "command": command,
        "run_dir": str(run_dir),
    }
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    replaced = False
    for _attempt in range(3):
        try:
            _create_lock_file(lock_path, payload)
        except FileExistsError:
            now = datetime.now(timezone.utc)
            holder = _load_lock_holder(lock_path)
            if holder is not None and not holder.is_stale(now=now, stale_seconds=stale_seconds):
                return (False, f"active lock exists at {lock_path} ({holder.describe(now)})")
            try:
                _discard_lock_file(lock_path, tag=owner_uuid[:8])
            except OSError as exc:
                return (False, f"failed to replace stale lock at {lock_path}: {exc}")
            replaced = True
            continue
        except OSError as exc:
            return (False, f"failed to acquire lock at {lock_path}: {exc}")
        if replaced:
            return (True, f"replaced stale lock at {lock_path}")
        return (True, f"lock acquired at {lock_path}")
    return (False, f"failed to acquire lock at {lock_path} after retries")


def _heartbeat_lock(lock_path: Path) -> None:
    holder = _load_lock_holder(lock_path)
    if holder is None:
        return
    _atomic_write_text(
        lock_path,
        json.dumps({**holder.payload, "last_heartbeat_at": _utc_now()}, indent=2) + "\n",
    )


def _release_lock(lock_path: Path) -> None:
    holder = _load_lock_holder(lock_path)
    if holder is not None and holder.pid not in {None, os.getpid()}:
        return
    lock_path.unlink(missing_ok=True)


def _inspect_lock(lock_path: Path) -> dict[str, Any] | None:
    """Lock payload plus ``age_seconds`` and ``holder_alive``; None without a lock."""
    holder = _load_lock_holder(lock_path)
    if holder is None:
        return None
    return {
        **holder.payload,
        "age_seconds": holder.age_seconds(datetime.now(timezone.utc)),
        "holder_alive": holder.is_running() is not False,
    }


def _force_break_lock(lock_path: Path, *, reason: str) -> str:
    if not lock_path.exists():
        return "no lock to break"
    holder = _load_lock_holder(lock_path) or _LockHolder(payload={})
    lock_path.unlink(missing_ok=True)
    return (
        f"lock broken: pid={holder.payload.get('pid', '<unknown>')}, "
        f"host={holder.host or '<unknown>'}, "
        f"started_at={holder.payload.get('started_at', '<unknown>')}, reason={reason}"
    )
