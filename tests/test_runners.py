from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Callable

import pytest

import runledger.runners as runners
from runledger.ledger import load_ledger
from runledger.models import (
    FreshRunRequest,
    RunContext,
    RunnerConfig,
    RunnerError,
    StageDefinition,
    UsageError,
)
from runledger.pipelines import build_stages
from runledger.prompts import repeat_system_prompt
from runledger.resolver import resolve_fresh_run


class _RecordingStdin:
    def __init__(self) -> None:
        self.written: list[str] = []
        self.closed = False

    def write(self, text: str) -> int:
        self.written.append(text)
        return len(text)

    def flush(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True


def _process_factory(
    *,
    returncode: int = 0,
    action: Callable[[dict], None] | None = None,
    output: str = "",
    calls: list[dict] | None = None,
):
    class _FakeProcess:
        def __init__(self, argv, **kwargs) -> None:
            self.argv = argv
            self.kwargs = kwargs
            self.stdin = _RecordingStdin()
            self.pid = 999999
            if calls is not None:
                calls.append({"argv": argv, "kwargs": kwargs, "stdin": self.stdin})

        def wait(self, timeout: float | None = None) -> int:
            if output:
                self.kwargs["stdout"].write(output)
            if action is not None:
                action(self.kwargs["env"])
            return returncode

        def terminate(self) -> None:
            return None

        def kill(self) -> None:
            return None

    return _FakeProcess


class _HangingProcess:
    def __init__(self, *_args, **_kwargs) -> None:
        self.stdin = _RecordingStdin()
        self.pid = 999999
        self._terminated = False

    def wait(self, timeout: float | None = None) -> int:
        if self._terminated:
            return -15
        raise subprocess.TimeoutExpired(cmd="fake-runner", timeout=timeout or 0.0)

    def terminate(self) -> None:
        self._terminated = True

    def kill(self) -> None:
        self._terminated = True


def _append_to_ledger(line: str) -> Callable[[dict], None]:
    def _action(env: dict) -> None:
        with open(env["RUNLEDGER_LEDGER_PATH"], "a", encoding="utf-8") as handle:
            handle.write(line)

    return _action


def _make_context(
    tmp_path: Path,
    *,
    target: int = 2,
    dry_run: bool = False,
    command: str = "fake-runner --prompt-file {prompt_file} --stage {stage}",
    timeout_seconds: float = 0.0,
) -> tuple[RunContext, list[StageDefinition]]:
    run = resolve_fresh_run(
        FreshRunRequest(
            workflow="repeat",
            task="Keep the tests green",
            target=target,
            output_root=tmp_path / "runs",
        ),
        system_prompt=repeat_system_prompt(),
    )
    context = RunContext(
        run=run,
        runner=RunnerConfig(runner="custom", command=command, timeout_seconds=timeout_seconds),
        fingerprint_method="sha256",
        dry_run=dry_run,
        workdir=tmp_path,
    )
    return context, build_stages(run)


def _notes(context: RunContext) -> dict[int, list[str]]:
    grouped: dict[int, list[str]] = {}
    for record in load_ledger(context.run.paths.ledger_path).records:
        grouped.setdefault(record.index, []).append(record.note)
    return grouped


def _runner_report(context: RunContext) -> dict:
    path = context.run.paths.logs_dir / "runner_report.json"
    return json.loads(path.read_text(encoding="utf-8"))


def test_executor_entry_is_left_alone(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    context, stages = _make_context(tmp_path)
    calls: list[dict] = []
    monkeypatch.setattr(
        runners.subprocess,
        "Popen",
        _process_factory(action=_append_to_ledger("- [1] Added retries to the uploader.\n"), calls=calls),
    )

    outcome = runners.run_stage(context, stages[0])

    assert outcome.status == "completed"
    assert not outcome.recorded
    assert _notes(context)[1] == ["Added retries to the uploader."]
    assert stages[0].prompt_path.read_text(encoding="utf-8") == stages[0].prompt_text
    call = calls[0]
    assert call["argv"] == ["fake-runner", "--prompt-file", str(stages[0].prompt_path), "--stage", "iteration"]
    assert call["stdin"].written == [stages[0].prompt_text]
    assert call["stdin"].closed
    assert call["kwargs"]["cwd"] == tmp_path
    assert call["kwargs"]["env"]["RUNLEDGER_INDEX"] == "1"
    assert call["kwargs"]["env"]["RUNLEDGER_TARGET"] == "2"
    assert _runner_report(context)["status"] == "completed"


def test_unchanged_ledger_gets_no_progress_note(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    context, stages = _make_context(tmp_path)
    monkeypatch.setattr(runners.subprocess, "Popen", _process_factory(output="thinking...\n"))

    outcome = runners.run_stage(context, stages[0])

    assert outcome.status == "no_progress"
    note = _notes(context)[1][0]
    assert note.startswith("System note: runner finished but no progress update was detected at ")
    assert stages[0].log_path.read_text(encoding="utf-8") == "thinking...\n"


def test_ledger_change_without_index_gets_distinct_note(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    context, stages = _make_context(tmp_path)
    monkeypatch.setattr(
        runners.subprocess,
        "Popen",
        _process_factory(action=_append_to_ledger("Worked on the parser.\n")),
    )

    outcome = runners.run_stage(context, stages[0])

    assert outcome.status == "unindexed"
    assert _notes(context)[1][0].startswith(
        "System note: runner updated the ledger without an entry for iteration 1"
    )


def test_non_zero_exit_records_failure_and_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    context, stages = _make_context(tmp_path)
    monkeypatch.setattr(runners.subprocess, "Popen", _process_factory(returncode=3, output="boom\n"))

    with pytest.raises(RunnerError, match="exited with code 3") as excinfo:
        runners.run_stage(context, stages[0])

    assert excinfo.value.log_path == stages[0].log_path
    note = _notes(context)[1][0]
    assert note.startswith("System note: runner failed at ")
    assert note.endswith(f"See {stages[0].log_path} for details.")
    assert _runner_report(context)["status"] == "failed"
    assert _runner_report(context)["exit_code"] == 3


def test_timeout_terminates_and_records_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    context, stages = _make_context(tmp_path, timeout_seconds=5)
    monkeypatch.setattr(runners.subprocess, "Popen", _HangingProcess)

    with pytest.raises(RunnerError, match="timed out after 5s"):
        runners.run_stage(context, stages[0])

    assert _notes(context)[1][0].startswith("System note: runner failed at ")
    assert _runner_report(context)["status"] == "timeout"


def test_launch_error_records_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    context, stages = _make_context(tmp_path)

    def _missing(*_args, **_kwargs):
        raise FileNotFoundError("fake-runner")

    monkeypatch.setattr(runners.subprocess, "Popen", _missing)

    with pytest.raises(RunnerError, match="could not be launched"):
        runners.run_stage(context, stages[0])

    assert "runner could not be launched" in stages[0].log_path.read_text(encoding="utf-8")
    assert _runner_report(context)["status"] == "error"


def test_dry_run_never_launches_the_runner(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    context, stages = _make_context(tmp_path, dry_run=True)

    def _forbidden(*_args, **_kwargs):
        raise AssertionError("runner must not be launched in dry mode")

    monkeypatch.setattr(runners.subprocess, "Popen", _forbidden)

    outcome = runners.run_stage(context, stages[0])

    assert outcome.status == "dry_run"
    assert _notes(context)[1][0].endswith(": prompt generated, runner execution skipped.")
    assert stages[0].log_path.read_text(encoding="utf-8").startswith("Dry run: runner execution skipped")
    assert stages[0].prompt_path.exists()


def test_ensure_runner_available_looks_past_env_wrapper(monkeypatch: pytest.MonkeyPatch) -> None:
    checked: list[str] = []

    def _available(command: str) -> bool:
        checked.append(command)
        return False

    monkeypatch.setattr(runners, "_is_command_available", _available)

    with pytest.raises(UsageError, match="runner executable 'claude' not found on PATH"):
        runners.ensure_runner_available(
            RunnerConfig(runner="claude", command="env -u CLAUDECODE claude -p -", timeout_seconds=0)
        )
    assert checked == ["claude"]


def test_shell_syntax_in_runner_command_is_rejected() -> None:
    with pytest.raises(UsageError, match="shell metacharacters"):
        runners.ensure_runner_available(
            RunnerConfig(runner="custom", command="codex exec - | tee out.log", timeout_seconds=0)
        )


def test_redact_sensitive_text_masks_tokens() -> None:
    redacted = runners._redact_sensitive_text("agent --api-key=abc123 sk-abcdefghijklmnop")

    assert "abc123" not in redacted
    assert "sk-abcdefghijklmnop" not in redacted
    assert "<redacted>" in redacted
