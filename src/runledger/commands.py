from __future__ import annotations

import argparse
import importlib.metadata as importlib_metadata
import sys
from pathlib import Path
from typing import Any, Callable

from runledger.config import load_config
from runledger.constants import (
    DEFAULT_CRITIQUE_ROUNDS,
    DEFAULT_IDEAS_COUNT,
    DEFAULT_ITERATIONS,
    DEFAULT_MAX_TREE_FILES,
    MAX_CRITIQUE_ROUNDS,
    MAX_IDEAS_COUNT,
    MIN_IDEAS_COUNT,
)
from runledger.ledger import load_ledger
from runledger.models import (
    FreshRunRequest,
    LockError,
    ResolvedRun,
    RunContext,
    RunledgerConfig,
    RunnerError,
    RunPaths,
    StateError,
    UsageError,
)
from runledger.pipelines import build_stages, drive_stages, planned_stage_count, prepare_fresh_run
from runledger.prompts import repeat_system_prompt
from runledger.resolver import (
    check_resume_dir,
    resolve_fresh_run,
    resolve_resume_run,
    resolve_task_text,
    validate_attachments,
    validate_resume_arguments,
)
from runledger.runners import ensure_runner_available
from runledger.state import (
    _acquire_lock,
    _force_break_lock,
    _inspect_lock,
    _release_lock,
    load_manifest,
)
from runledger.utils import _append_log


def _installed_version() -> str:
    try:
        return importlib_metadata.version("runledger")
    except importlib_metadata.PackageNotFoundError:
        return "unknown"


# ---------------------------------------------------------------------------
# Argument types
# ---------------------------------------------------------------------------


def _positive_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got '{raw}'") from exc
    if value < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got '{raw}'")
    return value


def _bounded_int(low: int, high: int) -> Callable[[str], int]:
    def _parse(raw: str) -> int:
        try:
            value = int(raw)
        except ValueError as exc:
            raise argparse.ArgumentTypeError(f"expected an integer between {low} and {high}, got '{raw}'") from exc
        if not low <= value <= high:
            raise argparse.ArgumentTypeError(f"expected an integer between {low} and {high}, got '{raw}'")
        return value

    return _parse


# ---------------------------------------------------------------------------
# Workflow commands
# ---------------------------------------------------------------------------


def _shaping_options(args: argparse.Namespace) -> dict[str, Any]:
    """Pipeline options that fix the stage plan, keyed by their flag."""
    options: dict[str, Any] = {}
    for flag, attr in (
        ("--rounds", "rounds"),
        ("--auto-implement", "auto_implement"),
        ("--ideas-count", "ideas_count"),
    ):
        value = getattr(args, attr, None)
        if value is not None:
            options[flag] = value
    return options


def _fresh_parameters(workflow: str, args: argparse.Namespace) -> dict[str, Any]:
    if workflow == "critique-loop":
        rounds = args.rounds if args.rounds is not None else DEFAULT_CRITIQUE_ROUNDS
        return {"rounds": rounds, "auto_implement": args.auto_implement == "true"}
    if workflow == "branch":
        return {"ideas_count": args.ideas_count if args.ideas_count is not None else DEFAULT_IDEAS_COUNT}
    return {}


def _start_fresh_run(args: argparse.Namespace, workflow: str, config: RunledgerConfig) -> ResolvedRun:
    task = resolve_task_text(
        args.task_text,
        args.task,
        Path(args.task_file).expanduser() if args.task_file else None,
    )
    skill_files = tuple(Path(path).expanduser() for path in args.skill_file or [])
    context_files = tuple(Path(path).expanduser() for path in args.context_file or [])
    validate_attachments(skill_files, context_files)

    parameters = _fresh_parameters(workflow, args)
    if workflow == "repeat":
        target = args.iterations if args.iterations is not None else DEFAULT_ITERATIONS
    else:
        target = planned_stage_count(workflow, parameters)
    if not args.dry_run:
        ensure_runner_available(config.runner)

    request = FreshRunRequest(
        workflow=workflow,
        task=task,
        target=target,
        output_root=Path(args.output_root or config.output_roots[workflow]).expanduser(),
        task_name=getattr(args, "task_name", None) or "",
        skill_files=skill_files,
        context_files=context_files,
        include_codebase=bool(args.include_codebase),
        max_tree_files=args.max_tree_files if args.max_tree_files is not None else DEFAULT_MAX_TREE_FILES,
        parameters=parameters,
    )
    resolved = resolve_fresh_run(
        request,
        system_prompt=repeat_system_prompt() if workflow == "repeat" else None,
    )
    prepare_fresh_run(resolved)
    return resolved


def _check_resume_request(args: argparse.Namespace, workflow: str, config: RunledgerConfig) -> RunPaths:
    validate_resume_arguments(
        task_given=bool(args.task_text) or args.task is not None or args.task_file is not None
        or bool(getattr(args, "task_name", None)),
        attachments_given=bool(args.skill_file) or bool(args.context_file) or bool(args.include_codebase),
        layout_given=args.output_root is not None or args.max_tree_files is not None,
        shaping_options=tuple(_shaping_options(args)),
    )
    paths = check_resume_dir(Path(args.resume).expanduser(), workflow=workflow)
    if not args.dry_run:
        ensure_runner_available(config.runner)
    return paths


def _print_run_header(run: ResolvedRun, *, dry_run: bool) -> None:
    paths = run.paths
    print(f"Run folder: {paths.run_dir}")
    print(f"Workflow: {run.workflow}")
    label = "Iterations" if run.workflow == "repeat" else "Calls"
    print(f"{label}: {run.target}")
    if run.workflow == "repeat":
        print(f"System prompt: {paths.system_prompt_path}")
    print(f"Report: {paths.report_path}")
    print(f"Progress: {paths.ledger_path}")
    if run.resumed:
        print(f"Resuming from iteration: {run.start_index}")
        if run.target_synced:
            print(f"Target iterations updated to: {run.target}")
    if dry_run:
        print("Dry run enabled: runner calls will be skipped.")


def _execute_run(run: ResolvedRun, *, config: RunledgerConfig, dry_run: bool) -> None:
    context = RunContext(
        run=run,
        runner=config.runner,
        fingerprint_method=config.fingerprint_method,
        dry_run=dry_run,
    )
    stages = build_stages(run)
    drive_stages(context, stages)


def _run_workflow(args: argparse.Namespace, workflow: str) -> int:
    label = f"runledger {workflow}"
    dry_run = bool(args.dry_run)
    lock_path: Path | None = None
    try:
        config = load_config(Path(args.config).expanduser() if args.config else None)
        fresh_run: ResolvedRun | None = None
        if args.resume:
            paths = _check_resume_request(args, workflow, config)
        else:
            fresh_run = _start_fresh_run(args, workflow, config)
            paths = fresh_run.paths

        acquired, message = _acquire_lock(
            paths.lock_path,
            run_dir=paths.run_dir,
            command=f"{label} {'resume' if args.resume else 'fresh'}",
            stale_seconds=config.lock_stale_seconds,
        )
        _append_log(paths.run_dir, f"{label}: {message}")
        if not acquired:
            raise LockError(message)
        lock_path = paths.lock_path

        run = fresh_run or resolve_resume_run(
            paths,
            workflow=workflow,
            target_override=getattr(args, "iterations", None),
        )
        _print_run_header(run, dry_run=dry_run)
        if not run.has_remaining_work:
            print("No remaining iterations to run.")
            _append_log(paths.run_dir, f"{label}: no remaining iterations (target={run.target})")
            return 0

        _execute_run(run, config=config, dry_run=dry_run)
    except UsageError as exc:
        print(f"{label}: ERROR {exc}", file=sys.stderr)
        return 2
    except StateError as exc:
        print(f"{label}: ERROR {exc}", file=sys.stderr)
        return 2
    except LockError as exc:
        print(f"{label}: ERROR {exc}", file=sys.stderr)
        return 1
    except RunnerError as exc:
        print(f"{label}: ERROR {exc}", file=sys.stderr)
        return 1
    finally:
        if lock_path is not None:
            _release_lock(lock_path)

    _append_log(run.paths.run_dir, f"{label}: run complete target={run.target}")
    print("All iterations completed." if workflow == "repeat" else "Run complete.")
    print(f"Final progress file: {run.paths.ledger_path}")
    return 0


def _cmd_repeat(args: argparse.Namespace) -> int:
    return _run_workflow(args, "repeat")


def _cmd_critique_loop(args: argparse.Namespace) -> int:
    return _run_workflow(args, "critique-loop")


def _cmd_branch(args: argparse.Namespace) -> int:
    return _run_workflow(args, "branch")


def _cmd_implement_critique(args: argparse.Namespace) -> int:
    return _run_workflow(args, "implement-critique")


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


def _cmd_status(args: argparse.Namespace) -> int:
    paths = RunPaths(run_dir=Path(args.run_dir).expanduser())
    try:
        if not paths.run_dir.is_dir():
            raise UsageError(f"run directory does not exist: {paths.run_dir}")
        manifest = load_manifest(paths, required=False)
        state = load_ledger(paths.ledger_path)
    except (UsageError, StateError) as exc:
        print(f"runledger status: ERROR {exc}", file=sys.stderr)
        return 2

    workflow = str(manifest.get("workflow", "")) if manifest else "repeat"
    target = state.target
    last_index = state.last_logged_index
    print(f"run_dir: {paths.run_dir}")
    print(f"workflow: {workflow}")
    print(f"target: {target if target is not None else '<unknown>'}")
    print(f"last_logged_index: {last_index}")
    if target is not None:
        if last_index > target:
            print("remaining: <inconsistent: history exceeds target>")
        else:
            print(f"remaining: {target - last_index}")
    if manifest:
        for key, value in sorted(dict(manifest.get("parameters", {})).items()):
            print(f"parameter.{key}: {value}")
    if state.records:
        last_record = max(state.records, key=lambda record: record.index)
        print(f"last_note: [{last_record.index}] {last_record.note}")
    lock_info = _inspect_lock(paths.lock_path)
    if lock_info is None:
        print("lock: none")
    else:
        print(f"lock: held by pid={lock_info.get('pid', '<unknown>')} host={lock_info.get('host', '<unknown>')}")
    return 0


# ---------------------------------------------------------------------------
# Lock management
# ---------------------------------------------------------------------------


def _cmd_lock(args: argparse.Namespace) -> int:
    paths = RunPaths(run_dir=Path(args.run_dir).expanduser())
    if not paths.run_dir.is_dir():
        print(f"runledger lock: ERROR run directory does not exist: {paths.run_dir}", file=sys.stderr)
        return 2
    action = args.action

    if action == "status":
        info = _inspect_lock(paths.lock_path)
        if info is None:
            print("runledger lock: no active lock")
            return 0
        print("runledger lock: active")
        for key in ("pid", "host", "owner_uuid", "started_at", "last_heartbeat_at", "command"):
            print(f"  {key}: {info.get(key, '<unknown>')}")
        age = info.get("age_seconds")
        if age is not None:
            print(f"  age: {age:.0f}s")
        if not info.get("holder_alive", True):
            print("  holder: not running (stale)")
        return 0

    if action == "break":
        reason = getattr(args, "reason", "") or "manual break"
        message = _force_break_lock(paths.lock_path, reason=reason)
        _append_log(paths.run_dir, f"lock break: {message}")
        print(f"runledger lock: {message}")
        return 0

    print(f"runledger lock: unknown action '{action}'", file=sys.stderr)
    return 2


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_run_arguments(parser: argparse.ArgumentParser, *, named_task: bool) -> None:
    parser.add_argument("task_text", nargs="*", help="Task text (alternative to --task)")
    task_source = parser.add_mutually_exclusive_group()
    task_source.add_argument("-t", "--task", default=None, help="Task text")
    task_source.add_argument("--task-file", default=None, help="Read task text from a file")
    if named_task:
        parser.add_argument("--task-name", default=None, help="Short name used for the run folder")
    parser.add_argument("--resume", default=None, metavar="DIR", help="Resume an existing run folder")
    parser.add_argument(
        "--skill-file",
        action="append",
        default=None,
        help="Attach a skill file to the task report (repeatable)",
    )
    parser.add_argument(
        "--context-file",
        action="append",
        default=None,
        help="Attach a context file to the task report (repeatable)",
    )
    parser.add_argument("--output-root", default=None, help="Directory that receives new run folders")
    parser.add_argument(
        "--include-codebase",
        action="store_true",
        help="Append a file listing of the current directory to the task report",
    )
    parser.add_argument(
        "--max-tree-files",
        type=_positive_int,
        default=None,
        help=f"Maximum files in the codebase snapshot (default: {DEFAULT_MAX_TREE_FILES})",
    )
    parser.add_argument("--dry-run", action="store_true", help="Write prompts and ledger entries without calling the runner")
    parser.add_argument("--config", default=None, help="Path to config YAML (default: .runledger/config.yaml)")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="runledger",
        description="Resumable, ledger-tracked multi-stage agent workflows",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {_installed_version()}")
    subparsers = parser.add_subparsers(dest="command")

    repeat = subparsers.add_parser("repeat", help="Run the same task for N ledger-tracked iterations")
    _add_run_arguments(repeat, named_task=False)
    repeat.add_argument(
        "-n",
        "--iterations",
        type=_positive_int,
        default=None,
        help=f"Target iterations (default: {DEFAULT_ITERATIONS}; on resume, overrides the ledger target)",
    )
    repeat.set_defaults(handler=_cmd_repeat)

    critique_loop = subparsers.add_parser(
        "critique-loop",
        help="Plan, then alternate devil's advocate critique and revision",
    )
    _add_run_arguments(critique_loop, named_task=True)
    critique_loop.add_argument(
        "--rounds",
        type=_bounded_int(1, MAX_CRITIQUE_ROUNDS),
        default=None,
        help=f"Critique/revise rounds, 1-{MAX_CRITIQUE_ROUNDS} (default: {DEFAULT_CRITIQUE_ROUNDS})",
    )
    critique_loop.add_argument(
        "--auto-implement",
        choices=("true", "false"),
        default=None,
        help="Implement the final plan in an extra call (default: false)",
    )
    critique_loop.set_defaults(handler=_cmd_critique_loop)

    branch = subparsers.add_parser(
        "branch",
        help="Brainstorm distinct approaches, select one, and implement it",
    )
    _add_run_arguments(branch, named_task=True)
    branch.add_argument(
        "--ideas-count",
        type=_bounded_int(MIN_IDEAS_COUNT, MAX_IDEAS_COUNT),
        default=None,
        help=f"Number of ideas, {MIN_IDEAS_COUNT}-{MAX_IDEAS_COUNT} (default: {DEFAULT_IDEAS_COUNT})",
    )
    branch.set_defaults(handler=_cmd_branch)

    implement_critique = subparsers.add_parser(
        "implement-critique",
        help="Implement, critique the result, then implement the critique",
    )
    _add_run_arguments(implement_critique, named_task=True)
    implement_critique.set_defaults(handler=_cmd_implement_critique)

    status = subparsers.add_parser("status", help="Show ledger progress for a run folder")
    status.add_argument("run_dir", help="Run folder")
    status.set_defaults(handler=_cmd_status)

    lock = subparsers.add_parser("lock", help="Inspect or break a run lock")
    lock.add_argument("action", choices=("status", "break"), help="Lock action")
    lock.add_argument("run_dir", help="Run folder")
    lock.add_argument("--reason", default="", help="Reason recorded when breaking the lock")
    lock.set_defaults(handler=_cmd_lock)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2
    return int(handler(args))
