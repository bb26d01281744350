from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml

from runledger.constants import (
    AGENT_RUNNER_PRESETS,
    DEFAULT_AGENT_RUNNER_COMMAND,
    DEFAULT_AGENT_RUNNER_NAME,
    DEFAULT_AGENT_RUNNER_TIMEOUT_SECONDS,
    DEFAULT_CONFIG_PATH,
    DEFAULT_FINGERPRINT_METHOD,
    DEFAULT_OUTPUT_ROOTS,
    LOCK_STALE_SECONDS,
    WORKFLOWS,
)
from runledger.fingerprint import is_supported_method
from runledger.models import RunledgerConfig, RunnerConfig, UsageError


def _load_policy(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    try:
        loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise UsageError(f"config could not be parsed at {config_path}: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise UsageError(f"config must be a mapping: {config_path}")
    return loaded


def _section(policy: dict[str, Any], name: str) -> dict[str, Any]:
    section = policy.get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise UsageError(f"{name} must be a mapping")
    return section


def _load_runner_config(policy: dict[str, Any]) -> RunnerConfig:
    runner_section = _section(policy, "runner")

    runner_name = str(
        os.environ.get("RUNLEDGER_RUNNER")
        or runner_section.get("runner", DEFAULT_AGENT_RUNNER_NAME)
    ).strip()
    valid_runners = set(AGENT_RUNNER_PRESETS) | {"custom"}
    if runner_name not in valid_runners:
        raise UsageError(
            f"runner.runner must be one of {sorted(valid_runners)}, got '{runner_name}'"
        )

    raw_command = os.environ.get("RUNLEDGER_RUNNER_COMMAND") or runner_section.get("command")
    if raw_command is not None:
        command = str(raw_command).strip()
    elif runner_name == "custom":
        command = ""
    else:
        command = AGENT_RUNNER_PRESETS.get(runner_name, DEFAULT_AGENT_RUNNER_COMMAND)
    if not command:
        raise UsageError(f"runner.command must be set when runner.runner is '{runner_name}'")

    raw_timeout = runner_section.get("timeout_seconds", DEFAULT_AGENT_RUNNER_TIMEOUT_SECONDS)
    try:
        timeout_seconds = float(raw_timeout)
    except (TypeError, ValueError) as exc:
        raise UsageError("runner.timeout_seconds must be a non-negative number") from exc
    if timeout_seconds < 0:
        raise UsageError("runner.timeout_seconds must be >= 0")

    return RunnerConfig(runner=runner_name, command=command, timeout_seconds=timeout_seconds)


def _load_fingerprint_method(policy: dict[str, Any]) -> str:
    ledger_section = _section(policy, "ledger")
    method = str(ledger_section.get("fingerprint", DEFAULT_FINGERPRINT_METHOD)).strip().lower()
    if not is_supported_method(method):
        raise UsageError(
            f"ledger.fingerprint must be 'mtime_size' or a hashlib algorithm, got '{method}'"
        )
    return method


def _load_lock_stale_seconds(policy: dict[str, Any]) -> int:
    lock_section = _section(policy, "lock")
    raw_value = lock_section.get("stale_seconds", LOCK_STALE_SECONDS)
    try:
        stale_seconds = int(raw_value)
    except (TypeError, ValueError) as exc:
        raise UsageError("lock.stale_seconds must be a positive integer") from exc
    if stale_seconds < 1:
        raise UsageError("lock.stale_seconds must be >= 1")
    return stale_seconds


def _load_output_roots(policy: dict[str, Any]) -> dict[str, str]:
    roots_section = _section(policy, "output_roots")
    output_roots = dict(DEFAULT_OUTPUT_ROOTS)
    for workflow, raw_root in roots_section.items():
        if workflow not in WORKFLOWS:
            raise UsageError(f"output_roots includes unsupported workflow '{workflow}'")
        root = str(raw_root or "").strip()
        if not root:
            raise UsageError(f"output_roots.{workflow} must be a non-empty path")
        output_roots[workflow] = root
    return output_roots


def load_config(config_path: Path | None = None) -> RunledgerConfig:
    """Load ``.runledger/config.yaml`` (or *config_path*), falling back to defaults.

    An explicitly named file must exist; the default location is optional.
    """
    if config_path is not None and not config_path.exists():
        raise UsageError(f"config file not found: {config_path}")
    resolved = config_path if config_path is not None else DEFAULT_CONFIG_PATH
    policy = _load_policy(resolved)
    return RunledgerConfig(
        runner=_load_runner_config(policy),
        fingerprint_method=_load_fingerprint_method(policy),
        lock_stale_seconds=_load_lock_stale_seconds(policy),
        output_roots=_load_output_roots(policy),
        source_path=resolved if resolved.exists() else None,
    )
