"""Shared helpers for timestamps, logging, JSON, and atomic text writes."""

from __future__ import annotations

import json
import os
import re
import shlex
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from runledger.constants import (
    LOGS_DIR_NAME,
    ORCHESTRATOR_LOG_NAME,
    SLUG_FALLBACK,
    SLUG_MAX_LENGTH,
)
from runledger.models import StateError


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


def _local_now() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


def _timestamp_slug() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S")


def _parse_utc(value: str) -> datetime | None:
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

_SLUG_SEPARATOR_PATTERN = re.compile(r"[^a-z0-9]+")


def _slugify(value: str) -> str:
    slug = _SLUG_SEPARATOR_PATTERN.sub("-", str(value).lower()).strip("-")
    slug = slug[:SLUG_MAX_LENGTH].strip("-")
    return slug or SLUG_FALLBACK


def _compact_log_text(text: str, limit: int = 240) -> str:
    compact = " ".join(text.strip().split())
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _safe_read_text(path: Path, *, max_chars: int = 2000) -> str:
    if not path.exists():
        return ""
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return ""
    compact = text.strip()
    if len(compact) <= max_chars:
        return compact
    return f"{compact[:max_chars]}..."


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* next to *path* and swap it in with ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


# ---------------------------------------------------------------------------
# JSON helpers
# ---------------------------------------------------------------------------


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")


def _read_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise StateError(f"state file not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise StateError(f"state file is not valid JSON: {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise StateError(f"state file must contain an object: {path}")
    return payload


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def _append_log(run_dir: Path, message: str) -> None:
    log_path = run_dir / LOGS_DIR_NAME / ORCHESTRATOR_LOG_NAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(f"{_utc_now()} {message}\n")


# ---------------------------------------------------------------------------
# Host helpers
# ---------------------------------------------------------------------------


def _is_command_available(command: str) -> bool:
    return shutil.which(command) is not None


def _command_executable(command: str) -> str:
    """Return the program a runner command launches, looking past ``env`` wrappers."""
    try:
        tokens = shlex.split(command)
    except ValueError:
        return ""
    if tokens and Path(tokens[0]).name == "env":
        tokens = tokens[1:]
        while tokens:
            token = tokens[0]
            if token in {"-u", "--unset", "-C", "--chdir"}:
                tokens = tokens[2:]
            elif token.startswith("-") or "=" in token:
                tokens = tokens[1:]
            else:
                break
    return tokens[0] if tokens else ""
