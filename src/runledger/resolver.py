"""Run identity and the index a run must (re)start from.

Fresh runs get a new directory, task artifact, manifest, and ledger. Resumed
runs are reconciled against their ledger: the effective target is the
caller's override or the recorded one, history beyond it is refused, and a
differing override is written back so later resumes inherit it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from runledger.ledger import load_ledger, render_initial_ledger, sync_target
from runledger.models import (
    FreshRunRequest,
    ResolvedRun,
    ResumeConflictError,
    RunPaths,
    UsageError,
)
from runledger.state import (
    _codebase_snapshot,
    _create_run_dir,
    _require_run_files,
    load_manifest,
    read_task_text,
    render_report,
    write_manifest,
)
from runledger.utils import _append_log, _atomic_write_text, _local_now


# ---------------------------------------------------------------------------
# Argument validation
# ---------------------------------------------------------------------------


def resolve_task_text(
    positional: list[str] | None,
    task: str | None,
    task_file: Path | None,
) -> str:
    """Pick the task text from exactly one of the three task inputs."""
    positional_text = " ".join(positional or []).strip()
    sources = [bool(positional_text), task is not None, task_file is not None]
    if sum(sources) == 0:
        raise UsageError("provide task text with --task, --task-file, or positional text")
    if sum(sources) > 1:
        raise UsageError("use only one of --task, --task-file, or positional task text")
    if task_file is not None:
        if not task_file.is_file():
            raise UsageError(f"task file not found: {task_file}")
        try:
            text = task_file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise UsageError(f"could not read task file {task_file}: {exc}") from exc
    elif task is not None:
        text = task
    else:
        text = positional_text
    if not text.strip():
        raise UsageError("task text is empty")
    return text.strip()


def validate_attachments(skill_files: tuple[Path, ...], context_files: tuple[Path, ...]) -> None:
    for label, paths in (("skill file", skill_files), ("context file", context_files)):
        for path in paths:
            if not path.is_file():
                raise UsageError(f"{label} not found: {path}")


def validate_resume_arguments(
    *,
    task_given: bool,
    attachments_given: bool,
    layout_given: bool,
    shaping_options: tuple[str, ...] = (),
) -> None:
    """Reject options that only make sense when a run is created."""
    if task_given:
        raise UsageError(
            "when using --resume, do not pass --task, --task-file, --task-name, "
            "or positional task text"
        )
    if attachments_given:
        raise UsageError("--skill-file, --context-file, and --include-codebase cannot be used with --resume")
    if layout_given:
        raise UsageError("--output-root and --max-tree-files cannot be used with --resume")
    if shaping_options:
        raise UsageError(
            f"{', '.join(shaping_options)} cannot be used with --resume; "
            "the stage plan is fixed when the run is created"
        )


# ---------------------------------------------------------------------------
# Fresh runs
# ---------------------------------------------------------------------------


def resolve_fresh_run(request: FreshRunRequest, *, system_prompt: str | None = None) -> ResolvedRun:
    if request.target < 1:
        raise UsageError("target must be a positive integer")
    if request.max_tree_files < 1:
        raise UsageError("--max-tree-files must be a positive integer")
    validate_attachments(request.skill_files, request.context_files)

    snapshot = (
        _codebase_snapshot(Path.cwd(), max_files=request.max_tree_files)
        if request.include_codebase
        else None
    )
    report_text = render_report(
        request.task,
        skill_files=request.skill_files,
        context_files=request.context_files,
        snapshot=snapshot,
    )

    paths = _create_run_dir(request.output_root, request.task_name or request.task)
    paths.report_path.write_text(report_text, encoding="utf-8")
    write_manifest(
        paths,
        workflow=request.workflow,
        task_name=request.task_name,
        parameters=request.parameters,
    )
    if system_prompt is not None:
        paths.system_prompt_path.write_text(system_prompt, encoding="utf-8")
    _atomic_write_text(
        paths.ledger_path,
        render_initial_ledger(
            session_started=_local_now(),
            target=request.target,
            report_path=paths.report_path,
            task_summary=request.task,
        ),
    )
    _append_log(
        paths.run_dir,
        f"run created workflow={request.workflow} target={request.target} run_dir={paths.run_dir}",
    )
    return ResolvedRun(
        workflow=request.workflow,
        paths=paths,
        target=request.target,
        start_index=1,
        last_logged_index=0,
        resumed=False,
        task=request.task,
        parameters=dict(request.parameters),
    )


# ---------------------------------------------------------------------------
# Resumed runs
# ---------------------------------------------------------------------------


def check_resume_dir(run_dir: Path, *, workflow: str) -> RunPaths:
    paths = RunPaths(run_dir=run_dir)
    _require_run_files(paths, needs_system_prompt=workflow == "repeat")
    return paths


def resolve_resume_run(
    paths: RunPaths,
    *,
    workflow: str,
    target_override: int | None = None,
) -> ResolvedRun:
    """Reconcile the requested target with the ledger of an existing run.

    The consistency check runs before any rewrite, so a refused resume
    leaves ``progress.txt`` byte-for-byte unchanged.
    """
    check_resume_dir(paths.run_dir, workflow=workflow)
    manifest = load_manifest(paths, required=workflow != "repeat")
    if manifest is not None and manifest.get("workflow") != workflow:
        raise UsageError(
            f"{paths.run_dir} was created by workflow '{manifest.get('workflow')}', not '{workflow}'"
        )
    if target_override is not None:
        if workflow != "repeat":
            raise UsageError(f"the target of a {workflow} run is fixed by its stage plan")
        if target_override < 1:
            raise UsageError("--iterations must be a positive integer")

    state = load_ledger(paths.ledger_path)
    ledger_target = state.target
    target = target_override if target_override is not None else ledger_target
    if target is None:
        raise UsageError(
            f"could not determine target iterations from {paths.ledger_path}; "
            "pass --iterations explicitly"
        )

    last_index = state.last_logged_index
    if last_index > target:
        if target_override is not None:
            raise ResumeConflictError(
                f"last logged iteration ({last_index}) exceeds requested --iterations ({target}); "
                f"pass --iterations {last_index} or higher, or omit --iterations to use the ledger target"
            )
        raise ResumeConflictError(
            f"last logged iteration ({last_index}) exceeds the ledger target ({target}); "
            f"pass --iterations {last_index} or higher"
        )

    synced = False
    if target_override is not None and target_override != ledger_target:
        sync_target(paths.ledger_path, target_override)
        synced = True
        _append_log(
            paths.run_dir,
            f"target synced from {ledger_target} to {target_override} in {paths.ledger_path}",
        )

    parameters: dict[str, Any] = dict(manifest.get("parameters", {})) if manifest else {}
    return ResolvedRun(
        workflow=workflow,
        paths=paths,
        target=target,
        start_index=last_index + 1,
        last_logged_index=last_index,
        resumed=True,
        task=read_task_text(paths.report_path),
        parameters=parameters,
        target_synced=synced,
    )
