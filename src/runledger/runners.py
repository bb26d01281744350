"""Executor adapter: one blocking runner call per stage, with its outcome recorded.

Every call ends with exactly one outcome in the ledger for its index: the
executor's own ``[index]`` entry, or a note appended here (dry run, failure,
no progress detected, unindexed ledger update, or pipeline completion).
"""

from __future__ import annotations

import json
import os
import re
import shlex
import subprocess
import time
from pathlib import Path
from typing import Any

from runledger.constants import LOGS_DIR_NAME, RUNNER_REPORT_NAME
from runledger.fingerprint import fingerprint
from runledger.ledger import append_record, load_ledger
from runledger.models import (
    RunContext,
    RunnerConfig,
    RunnerError,
    RunnerResult,
    StageDefinition,
    StageOutcome,
    UsageError,
)
from runledger.utils import (
    _append_log,
    _command_executable,
    _compact_log_text,
    _is_command_available,
    _local_now,
    _safe_read_text,
    _utc_now,
)

SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?i)\b(api[_-]?key|token|secret|password)\b\s*[:=]\s*([^\s]+)"),
    re.compile(r"(?i)\b(authorization:\s*bearer)\s+([^\s]+)"),
    re.compile(r"\bsk-[A-Za-z0-9_-]{10,}\b"),
    re.compile(r"\bsk-ant-[A-Za-z0-9_-]{10,}\b"),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bhf_[A-Za-z0-9]{20,}\b"),
)


def _redact_sensitive_text(text: str) -> str:
    redacted = str(text)
    for pattern in SECRET_PATTERNS:
        redacted = pattern.sub(
            lambda match: f"{match.group(1)}=<redacted>" if match.groups() else "<redacted>",
            redacted,
        )
    return redacted


_SHELL_META_PATTERN = re.compile(r"[|&;<>()$`]")


def _command_uses_shell_syntax(command: str) -> bool:
    return bool(_SHELL_META_PATTERN.search(command))


# ---------------------------------------------------------------------------
# Command preparation
# ---------------------------------------------------------------------------


def _split_runner_command(command: str) -> list[str]:
    if _command_uses_shell_syntax(command):
        raise UsageError(
            "runner.command contains shell metacharacters; "
            "configure an argv-safe command without pipes/subshell syntax"
        )
    try:
        argv = shlex.split(command)
    except ValueError as exc:
        raise UsageError(f"runner command could not be parsed: {exc}") from exc
    if not argv:
        raise UsageError("runner command resolved to empty arguments")
    return argv


def ensure_runner_available(runner: RunnerConfig) -> None:
    """Fail before any side effect when the runner cannot be launched."""
    _split_runner_command(runner.command)
    executable = _command_executable(runner.command)
    if not executable or not _is_command_available(executable):
        raise UsageError(
            f"runner executable '{executable or runner.command}' not found on PATH; "
            "install it or run with --dry-run"
        )


def _substitute_runner_argv(
    argv: list[str],
    *,
    prompt_text: str,
    prompt_path: Path,
    run_dir: Path,
    stage: str,
    index: int,
) -> list[str]:
    replacements = {
        "{prompt}": prompt_text,
        "{prompt_file}": str(prompt_path),
        "{run_dir}": str(run_dir),
        "{stage}": stage,
        "{index}": str(index),
    }
    substituted: list[str] = []
    for token in argv:
        for placeholder, value in replacements.items():
            token = token.replace(placeholder, value)
        substituted.append(token)
    return substituted


def _runner_env(context: RunContext, stage: StageDefinition) -> dict[str, str]:
    paths = context.run.paths
    env = os.environ.copy()
    env["RUNLEDGER_WORKFLOW"] = context.run.workflow
    env["RUNLEDGER_RUN_DIR"] = str(paths.run_dir)
    env["RUNLEDGER_STAGE"] = stage.name
    env["RUNLEDGER_INDEX"] = str(stage.index)
    env["RUNLEDGER_TARGET"] = str(context.run.target)
    env["RUNLEDGER_PROMPT_PATH"] = str(stage.prompt_path)
    env["RUNLEDGER_REPORT_PATH"] = str(paths.report_path)
    env["RUNLEDGER_LEDGER_PATH"] = str(paths.ledger_path)
    if stage.output_path is not None:
        env["RUNLEDGER_OUTPUT_PATH"] = str(stage.output_path)
    return env


def _write_runner_execution_report(run_dir: Path, *, payload: dict[str, Any]) -> None:
    report_path = run_dir / LOGS_DIR_NAME / RUNNER_REPORT_NAME
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")


# ---------------------------------------------------------------------------
# Runner invocation
# ---------------------------------------------------------------------------


def invoke_runner(context: RunContext, stage: StageDefinition) -> RunnerResult:
    """Launch the runner once with the prompt on stdin; output goes to the stage log."""
    runner = context.runner
    run_dir = context.run.paths.run_dir
    timeout: float | None = None if runner.timeout_seconds <= 0 else runner.timeout_seconds
    run_report: dict[str, Any] = {
        "generated_at": _utc_now(),
        "workflow": context.run.workflow,
        "stage": stage.name,
        "index": stage.index,
        "target": context.run.target,
        "runner": runner.runner,
        "timeout_seconds": runner.timeout_seconds,
        "prompt_path": str(stage.prompt_path),
        "log_path": str(stage.log_path),
        "status": "starting",
        "command_argv": [],
        "exit_code": None,
        "duration_seconds": None,
    }
    _append_log(
        run_dir,
        (
            f"runner start stage={stage.name} index={stage.index} "
            f"timeout_seconds={runner.timeout_seconds} command={_redact_sensitive_text(runner.command)}"
        ),
    )

    started = time.monotonic()
    stage.log_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        argv = _substitute_runner_argv(
            _split_runner_command(runner.command),
            prompt_text=stage.prompt_text,
            prompt_path=stage.prompt_path,
            run_dir=run_dir,
            stage=stage.name,
            index=stage.index,
        )
        run_report["command_argv"] = [
            _redact_sensitive_text(_compact_log_text(token, limit=120)) for token in argv
        ]
        _write_runner_execution_report(run_dir, payload=run_report)

        with stage.log_path.open("w", encoding="utf-8") as log_handle:
            process = subprocess.Popen(
                argv,
                cwd=context.workdir,
                shell=False,
                text=True,
                stdin=subprocess.PIPE,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                env=_runner_env(context, stage),
            )
            if process.stdin is not None:
                try:
                    process.stdin.write(stage.prompt_text)
                    process.stdin.flush()
                except BrokenPipeError:
                    pass
                finally:
                    process.stdin.close()
            try:
                returncode = process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                process.terminate()
                try:
                    process.wait(timeout=2)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait()
                duration = time.monotonic() - started
                _append_log(
                    run_dir,
                    f"runner timeout stage={stage.name} timeout_seconds={runner.timeout_seconds}",
                )
                run_report.update(status="timeout", duration_seconds=round(duration, 3))
                _write_runner_execution_report(run_dir, payload=run_report)
                return RunnerResult(
                    exit_code=None,
                    timed_out=True,
                    log_path=stage.log_path,
                    duration_seconds=duration,
                )
    except (OSError, UsageError) as exc:
        duration = time.monotonic() - started
        with stage.log_path.open("a", encoding="utf-8") as log_handle:
            log_handle.write(f"runner could not be launched: {exc}\n")
        _append_log(run_dir, f"runner execution error stage={stage.name}: {exc}")
        run_report.update(status="error", error=str(exc), duration_seconds=round(duration, 3))
        _write_runner_execution_report(run_dir, payload=run_report)
        return RunnerResult(
            exit_code=None,
            timed_out=False,
            log_path=stage.log_path,
            duration_seconds=duration,
            error=str(exc),
        )

    duration = time.monotonic() - started
    _append_log(run_dir, f"runner exit stage={stage.name} returncode={returncode}")
    captured = _safe_read_text(stage.log_path, max_chars=2400)
    if captured and returncode != 0:
        _append_log(
            run_dir,
            f"runner output stage={stage.name}: {_compact_log_text(_redact_sensitive_text(captured))}",
        )
    run_report.update(
        status="completed" if returncode == 0 else "failed",
        exit_code=int(returncode),
        duration_seconds=round(duration, 3),
    )
    _write_runner_execution_report(run_dir, payload=run_report)
    return RunnerResult(
        exit_code=int(returncode),
        timed_out=False,
        log_path=stage.log_path,
        duration_seconds=duration,
    )


# ---------------------------------------------------------------------------
# Stage execution
# ---------------------------------------------------------------------------


def _record(context: RunContext, stage: StageDefinition, status: str, note: str) -> StageOutcome:
    append_record(context.run.paths.ledger_path, stage.index, note)
    _append_log(context.run.paths.run_dir, f"stage {status} index={stage.index} name={stage.name}")
    return StageOutcome(index=stage.index, status=status, note=note, log_path=stage.log_path)


def _run_dry(context: RunContext, stage: StageDefinition) -> StageOutcome:
    timestamp = _local_now()
    stage.log_path.parent.mkdir(parents=True, exist_ok=True)
    stage.log_path.write_text(
        f"Dry run: runner execution skipped for {stage.title} at {timestamp}.\n",
        encoding="utf-8",
    )
    if stage.output_path is not None and stage.dry_run_output is not None:
        stage.output_path.parent.mkdir(parents=True, exist_ok=True)
        stage.output_path.write_text(stage.dry_run_output, encoding="utf-8")
    note = f"Dry run at {timestamp}: prompt generated, runner execution skipped."
    return _record(context, stage, "dry_run", note)


def run_stage(context: RunContext, stage: StageDefinition) -> StageOutcome:
    """Execute one stage and make sure the ledger holds an outcome for its index.

    Raises ``RunnerError`` after recording the failure when the runner exits
    non-zero, times out, or cannot be launched.
    """
    paths = context.run.paths
    before = fingerprint(stage.watch_path, method=context.fingerprint_method)

    stage.prompt_path.parent.mkdir(parents=True, exist_ok=True)
    stage.prompt_path.write_text(stage.prompt_text, encoding="utf-8")
    _append_log(
        paths.run_dir,
        f"stage start index={stage.index}/{context.run.target} name={stage.name} dry_run={context.dry_run}",
    )

    if context.dry_run:
        return _run_dry(context, stage)

    result = invoke_runner(context, stage)
    if not result.succeeded:
        if not load_ledger(paths.ledger_path).has_record(stage.index):
            note = f"System note: runner failed at {_local_now()}. See {result.log_path} for details."
            _record(context, stage, "failed", note)
        if result.timed_out:
            reason = f"timed out after {context.runner.timeout_seconds:g}s"
        elif result.error:
            reason = f"could not be launched ({result.error})"
        else:
            reason = f"exited with code {result.exit_code}"
        raise RunnerError(
            f"{stage.title} ({stage.index}/{context.run.target}) failed: runner {reason}; see {result.log_path}",
            log_path=result.log_path,
        )

    after = fingerprint(stage.watch_path, method=context.fingerprint_method)
    state = load_ledger(paths.ledger_path)
    if state.has_record(stage.index):
        _append_log(paths.run_dir, f"stage completed index={stage.index} name={stage.name} recorded_by=executor")
        return StageOutcome(
            index=stage.index,
            status="completed",
            note="",
            log_path=stage.log_path,
            recorded=False,
        )

    timestamp = _local_now()
    if before == after:
        note = f"System note: runner finished but no progress update was detected at {timestamp}."
        return _record(context, stage, "no_progress", note)
    if stage.ledger_managed:
        note = (
            f"System note: runner updated the ledger without an entry for iteration {stage.index} "
            f"at {timestamp}."
        )
        return _record(context, stage, "unindexed", note)
    note = f"{stage.title} completed at {timestamp}: wrote {stage.output_path or stage.watch_path}"
    return _record(context, stage, "completed", note)
