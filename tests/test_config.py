from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from runledger.config import load_config
from runledger.constants import AGENT_RUNNER_PRESETS, DEFAULT_OUTPUT_ROOTS
from runledger.models import UsageError


@pytest.fixture(autouse=True)
def _clear_runner_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("RUNLEDGER_RUNNER", raising=False)
    monkeypatch.delenv("RUNLEDGER_RUNNER_COMMAND", raising=False)


def _write_config(tmp_path: Path, payload: dict) -> Path:
    config_path = tmp_path / ".runledger" / "config.yaml"
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
    return config_path


def test_missing_default_config_uses_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    config = load_config()

    assert config.runner.runner == "codex"
    assert config.runner.command == AGENT_RUNNER_PRESETS["codex"]
    assert config.runner.timeout_seconds == 0.0
    assert config.fingerprint_method == "sha256"
    assert config.lock_stale_seconds == 1800
    assert config.output_roots == DEFAULT_OUTPUT_ROOTS
    assert config.source_path is None


def test_default_location_is_read_from_working_directory(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _write_config(tmp_path, {"runner": {"runner": "claude"}})
    monkeypatch.chdir(tmp_path)

    config = load_config()

    assert config.runner.command == AGENT_RUNNER_PRESETS["claude"]
    assert config.source_path is not None


def test_explicit_config_overrides_every_section(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path,
        {
            "runner": {"runner": "custom", "command": "my-agent --stdin", "timeout_seconds": 30},
            "ledger": {"fingerprint": "mtime_size"},
            "lock": {"stale_seconds": 60},
            "output_roots": {"repeat": "out/repeat"},
        },
    )

    config = load_config(config_path)

    assert config.runner.runner == "custom"
    assert config.runner.command == "my-agent --stdin"
    assert config.runner.timeout_seconds == 30.0
    assert config.fingerprint_method == "mtime_size"
    assert config.lock_stale_seconds == 60
    assert config.output_roots["repeat"] == "out/repeat"
    assert config.output_roots["branch"] == DEFAULT_OUTPUT_ROOTS["branch"]


def test_environment_overrides_runner(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = _write_config(tmp_path, {"runner": {"runner": "codex"}})
    monkeypatch.setenv("RUNLEDGER_RUNNER", "custom")
    monkeypatch.setenv("RUNLEDGER_RUNNER_COMMAND", "fake-agent -")

    config = load_config(config_path)

    assert config.runner.runner == "custom"
    assert config.runner.command == "fake-agent -"


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ({"runner": {"runner": "gpt"}}, "runner.runner must be one of"),
        ({"runner": {"runner": "custom"}}, "runner.command must be set"),
        ({"runner": {"timeout_seconds": -1}}, "timeout_seconds must be >= 0"),
        ({"runner": {"timeout_seconds": "soon"}}, "timeout_seconds must be a non-negative number"),
        ({"runner": "codex"}, "runner must be a mapping"),
        ({"ledger": {"fingerprint": "crc-nope"}}, "ledger.fingerprint"),
        ({"lock": {"stale_seconds": 0}}, "lock.stale_seconds must be >= 1"),
        ({"output_roots": {"unknown": "x"}}, "unsupported workflow"),
    ],
)
def test_invalid_values_raise_usage_error(tmp_path: Path, payload: dict, message: str) -> None:
    config_path = _write_config(tmp_path, payload)

    with pytest.raises(UsageError, match=message):
        load_config(config_path)


def test_explicit_missing_config_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(UsageError, match="config file not found"):
        load_config(tmp_path / "nope.yaml")


def test_non_mapping_config_is_an_error(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(UsageError, match="config must be a mapping"):
        load_config(config_path)
