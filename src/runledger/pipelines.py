"""Stage plans for each workflow and the driver that runs them in order.

Every workflow is a fixed, ordered list of ``StageDefinition`` objects whose
indices run 1..target. Later stages name earlier outputs by path, so a
resumed run can rebuild the same plan from ``run.json`` and continue from the
first index missing in the ledger.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any

from runledger.constants import (
    DEFAULT_CRITIQUE_ROUNDS,
    DEFAULT_IDEAS_COUNT,
    MAX_CRITIQUE_ROUNDS,
    MAX_IDEAS_COUNT,
    MIN_IDEAS_COUNT,
)
from runledger.models import (
    ResolvedRun,
    RunContext,
    StageDefinition,
    StageOutcome,
    StateError,
    _coerce_bool,
)
from runledger.prompts import render_iteration_prompt, render_stage_prompt
from runledger.runners import run_stage
from runledger.state import _heartbeat_lock
from runledger.utils import _append_log, _local_now

PLANS_DIR_NAME = "plans"
CRITIQUES_DIR_NAME = "critiques"
FINAL_PLAN_NAME = "final_plan.md"
IMPLEMENTATION_SUMMARY_NAME = "implementation_summary.md"
BRANCH_IDEAS_NAME = "branch_ideas.md"
SELECTED_BRANCH_NAME = "selected_branch.md"
UPDATED_FILES_NAME = "updated_files.txt"
CHANGE_CRITIQUE_NAME = "critique.md"


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------


def _int_parameter(parameters: dict[str, Any], key: str, *, default: int, low: int, high: int) -> int:
    raw_value = parameters.get(key, default)
    try:
        value = int(raw_value)
    except (TypeError, ValueError) as exc:
        raise StateError(f"run parameter '{key}' must be an integer, got {raw_value!r}") from exc
    if not low <= value <= high:
        raise StateError(f"run parameter '{key}' must be between {low} and {high}, got {value}")
    return value


def normalize_parameters(workflow: str, parameters: dict[str, Any]) -> dict[str, Any]:
    if workflow == "critique-loop":
        return {
            "rounds": _int_parameter(
                parameters, "rounds", default=DEFAULT_CRITIQUE_ROUNDS, low=1, high=MAX_CRITIQUE_ROUNDS
            ),
            "auto_implement": _coerce_bool(parameters.get("auto_implement"), default=False),
        }
    if workflow == "branch":
        return {
            "ideas_count": _int_parameter(
                parameters,
                "ideas_count",
                default=DEFAULT_IDEAS_COUNT,
                low=MIN_IDEAS_COUNT,
                high=MAX_IDEAS_COUNT,
            ),
        }
    return {}


def planned_stage_count(workflow: str, parameters: dict[str, Any]) -> int:
    """Number of calls a pipeline workflow makes; this is its ledger target."""
    normalized = normalize_parameters(workflow, parameters)
    if workflow == "critique-loop":
        return 1 + 2 * normalized["rounds"] + (1 if normalized["auto_implement"] else 0)
    if workflow in {"branch", "implement-critique"}:
        return 3
    raise StateError(f"workflow '{workflow}' has no fixed stage plan")


# ---------------------------------------------------------------------------
# Stage builders
# ---------------------------------------------------------------------------


class _StagePlanner:
    """Builds pipeline stages with consistent file naming and prompt framing."""

    def __init__(self, run: ResolvedRun) -> None:
        self.run = run
        self.paths = run.paths
        self.stages: list[StageDefinition] = []

    def add(
        self,
        name: str,
        title: str,
        *,
        role: str | None,
        instruction: str,
        output_path: Path,
        dry_run_output: str,
        inputs: list[tuple[str, Path]] | None = None,
        publish: tuple[tuple[Path, Path], ...] = (),
    ) -> None:
        index = len(self.stages) + 1
        prompt_text = render_stage_prompt(
            role=role,
            task=self.run.task,
            instruction=instruction,
            inputs=inputs or [],
            index=index,
            target=self.run.target,
            stage=name,
            report_path=self.paths.report_path,
            ledger_path=self.paths.ledger_path,
            output_path=output_path,
        )
        self.stages.append(
            StageDefinition(
                index=index,
                name=name,
                title=title,
                prompt_text=prompt_text,
                prompt_path=self.paths.prompts_dir / f"call_{index:02d}_{name}.txt",
                log_path=self.paths.logs_dir / f"call_{index:02d}_{name}.log",
                watch_path=output_path,
                output_path=output_path,
                dry_run_output=dry_run_output,
                publish=publish,
            )
        )

    def log_path_of(self, index: int) -> Path:
        return self.stages[index - 1].log_path


def _build_repeat_stages(run: ResolvedRun) -> list[StageDefinition]:
    paths = run.paths
    try:
        system_prompt = paths.system_prompt_path.read_text(encoding="utf-8").rstrip("\n")
    except (OSError, UnicodeDecodeError) as exc:
        raise StateError(f"system prompt is unreadable: {paths.system_prompt_path}: {exc}") from exc
    stages: list[StageDefinition] = []
    for index in range(1, run.target + 1):
        stages.append(
            StageDefinition(
                index=index,
                name="iteration",
                title=f"Iteration {index}",
                prompt_text=render_iteration_prompt(
                    system_prompt=system_prompt,
                    index=index,
                    target=run.target,
                    report_path=paths.report_path,
                    ledger_path=paths.ledger_path,
                ),
                prompt_path=paths.run_dir / f"iteration_{index:02d}_prompt.txt",
                log_path=paths.run_dir / f"iteration_{index:02d}_output.log",
                watch_path=paths.ledger_path,
                ledger_managed=True,
            )
        )
    return stages


def _placeholder(title: str, *bullets: str) -> str:
    return "\n".join([f"# {title}", "", *bullets]) + "\n"


def _build_critique_loop_stages(run: ResolvedRun, parameters: dict[str, Any]) -> list[StageDefinition]:
    rounds = parameters["rounds"]
    plans_dir = run.paths.run_dir / PLANS_DIR_NAME
    critiques_dir = run.paths.run_dir / CRITIQUES_DIR_NAME
    final_plan_path = run.paths.run_dir / FINAL_PLAN_NAME
    planner = _StagePlanner(run)

    planner.add(
        "initial_plan",
        "Initial plan",
        role="planner",
        instruction=(
            f"Create an in-depth implementation plan for this task and write it to "
            f"{plans_dir / 'plan_round_0.md'} as markdown.\n"
            "The plan should be clear, specific, and implementation-ready."
        ),
        output_path=plans_dir / "plan_round_0.md",
        dry_run_output=_placeholder(
            "Plan Round 0",
            "1. Placeholder initial plan step.",
            "2. Placeholder initial plan step.",
            "3. Placeholder initial plan step.",
        ),
    )
    for round_number in range(1, rounds + 1):
        previous_plan = plans_dir / f"plan_round_{round_number - 1}.md"
        critique_path = critiques_dir / f"critique_round_{round_number}.md"
        revised_plan = plans_dir / f"plan_round_{round_number}.md"
        planner.add(
            f"critique_round_{round_number}",
            f"Critique round {round_number}",
            role="critic",
            inputs=[("Current plan file", previous_plan)],
            instruction=(
                "Critique this plan in relation to the original task. Focus on:\n"
                "- incorrect assumptions\n"
                "- missing detail or ambiguity\n"
                "- misalignment with task goals\n"
                "- risk areas and edge cases\n"
                "- sequencing and dependency issues\n\n"
                f"Write your critique to {critique_path} as markdown with prioritized findings "
                "and concrete corrections."
            ),
            output_path=critique_path,
            dry_run_output=_placeholder(
                f"Critique Round {round_number}",
                f"- Placeholder critique finding for round {round_number}.",
                f"- Placeholder objection for round {round_number}.",
            ),
        )
        planner.add(
            f"revise_round_{round_number}",
            f"Revise round {round_number}",
            role="planner",
            inputs=[
                ("Current plan file", previous_plan),
                ("Devil's advocate critique file", critique_path),
            ],
            instruction=(
                "Revise the plan to address the critique while preserving alignment to the "
                f"original task.\nWrite the revised plan to {revised_plan} as markdown."
            ),
            output_path=revised_plan,
            dry_run_output=_placeholder(
                f"Plan Round {round_number}",
                f"1. Placeholder revised step for round {round_number}.",
                f"2. Placeholder revised step for round {round_number}.",
                f"3. Placeholder revised step for round {round_number}.",
            ),
            publish=((revised_plan, final_plan_path),) if round_number == rounds else (),
        )
    if parameters["auto_implement"]:
        summary_path = run.paths.run_dir / IMPLEMENTATION_SUMMARY_NAME
        planner.add(
            "implement_final_plan",
            "Implement final plan",
            role="implementer",
            inputs=[("Final plan file", final_plan_path)],
            instruction=(
                "Implement the task using the final plan.\n"
                f"When done, write a concise implementation summary to {summary_path} with files "
                "changed, key decisions, and validation performed."
            ),
            output_path=summary_path,
            dry_run_output=_placeholder(
                "Implementation Summary",
                f"- Dry run placeholder summary generated at {_local_now()}.",
                "- No repository changes were made.",
            ),
        )
    return planner.stages


def _build_branch_stages(run: ResolvedRun, parameters: dict[str, Any]) -> list[StageDefinition]:
    ideas_count = parameters["ideas_count"]
    ideas_path = run.paths.run_dir / BRANCH_IDEAS_NAME
    selected_path = run.paths.run_dir / SELECTED_BRANCH_NAME
    summary_path = run.paths.run_dir / IMPLEMENTATION_SUMMARY_NAME
    planner = _StagePlanner(run)

    idea_blocks: list[str] = []
    for number in range(1, ideas_count + 1):
        idea_blocks.extend(
            [
                f"## Idea {number}: Placeholder Branch {number}",
                "- Approach: Placeholder approach for dry run.",
                "- Strengths: Placeholder strengths.",
                "- Risks: Placeholder risks.",
                "- Why it could succeed: Placeholder reasoning.",
                "",
            ]
        )
    planner.add(
        "brainstorm",
        "Brainstorm branches",
        role=None,
        instruction=(
            f"Generate exactly {ideas_count} different ideas (branches) to solve this task, and make "
            "them genuinely distinct from each other to avoid local minima.\n"
            "For each idea, include: branch name, core approach, expected strengths, expected "
            "weaknesses or risks, and why it could succeed.\n"
            f"Write the full output to {ideas_path} as markdown. Do not implement any branch in this call."
        ),
        output_path=ideas_path,
        dry_run_output=_placeholder("Branch Ideas", *idea_blocks).rstrip("\n") + "\n",
    )
    planner.add(
        "evaluate",
        "Evaluate branches",
        role="evaluator",
        inputs=[("Candidate branch ideas file", ideas_path)],
        instruction=(
            "Evaluate all branch ideas and select exactly one best branch.\n"
            f"Write your output to {selected_path} in markdown with:\n"
            "1) selected branch,\n2) selection rationale,\n3) rejected alternatives summary,\n"
            "4) concrete implementation steps.\nDo not implement in this call."
        ),
        output_path=selected_path,
        dry_run_output=_placeholder(
            "Selected Branch",
            "## Winner",
            "- Idea 1 (placeholder)",
            "",
            "## Rationale",
            "- Placeholder rationale for dry run.",
            "",
            "## Rejected Alternatives",
            "- Placeholder alternatives summary.",
            "",
            "## Implementation Steps",
            "1. Placeholder step one.",
            "2. Placeholder step two.",
        ),
    )
    planner.add(
        "implement",
        "Implement selected branch",
        role=None,
        inputs=[
            ("Brainstormed branch set", ideas_path),
            ("Selected branch (implementation plan of record)", selected_path),
        ],
        instruction=(
            "Implement the selected branch now.\n"
            f"When done, write a concise implementation summary to {summary_path}, including files "
            "changed and key outcomes."
        ),
        output_path=summary_path,
        dry_run_output=_placeholder(
            "Implementation Summary",
            f"- Dry run placeholder summary generated at {_local_now()}.",
            "- No repository changes were made.",
        ),
    )
    return planner.stages


def _build_implement_critique_stages(run: ResolvedRun) -> list[StageDefinition]:
    updated_files_path = run.paths.run_dir / UPDATED_FILES_NAME
    critique_path = run.paths.run_dir / CHANGE_CRITIQUE_NAME
    planner = _StagePlanner(run)

    planner.add(
        "implement",
        "Implement",
        role=None,
        inputs=[("Change ledger file", updated_files_path)],
        instruction=(
            f"Implement the task now and keep track of all files you updated in {updated_files_path}.\n"
            f"Before finishing, overwrite {updated_files_path} using one line per file in the format "
            '"- path | what changed".'
        ),
        output_path=updated_files_path,
        dry_run_output=_placeholder(
            "Updated Files",
            f"Updated: {_local_now()}",
            "",
            "Entries:",
            "- dry-run/example_file.txt | Placeholder for first implementation pass.",
        ),
    )
    planner.add(
        "critique",
        "Critique implementation",
        role="reviewer",
        inputs=[
            ("Implementation ledger file", updated_files_path),
            ("Implementation output log from call 1", planner.log_path_of(1)),
        ],
        instruction=(
            "Read the task, implementation ledger, and first-pass output log, then produce a markdown "
            f"critique and write it to {critique_path}.\n"
            "Focus on requirement gaps, quality issues, risk areas, and concrete prioritized next changes."
        ),
        output_path=critique_path,
        dry_run_output=_placeholder(
            "Critique",
            f"- Dry run placeholder critique generated at {_local_now()}.",
            "- No real implementation was executed.",
        ),
    )
    planner.add(
        "implement_feedback",
        "Implement critique feedback",
        role=None,
        inputs=[
            ("Implementation ledger (prior changes)", updated_files_path),
            ("Critique feedback (required follow-up work)", critique_path),
        ],
        instruction=(
            f"Implement the critique feedback now and then overwrite {updated_files_path} so it "
            "reflects the final post-critique implementation state."
        ),
        output_path=updated_files_path,
        dry_run_output=_placeholder(
            "Updated Files",
            f"Updated: {_local_now()}",
            "",
            "Entries:",
            "- dry-run/example_file.txt | Placeholder from call 1.",
            "- dry-run/example_file_2.txt | Placeholder post-critique implementation update.",
        ),
    )
    return planner.stages


def build_stages(run: ResolvedRun) -> list[StageDefinition]:
    """Return the full, ordered stage plan of *run*, completed stages included."""
    if run.workflow == "repeat":
        return _build_repeat_stages(run)
    parameters = normalize_parameters(run.workflow, run.parameters)
    if run.workflow == "critique-loop":
        stages = _build_critique_loop_stages(run, parameters)
    elif run.workflow == "branch":
        stages = _build_branch_stages(run, parameters)
    elif run.workflow == "implement-critique":
        stages = _build_implement_critique_stages(run)
    else:
        raise StateError(f"unknown workflow '{run.workflow}'")
    if len(stages) != run.target:
        raise StateError(
            f"ledger target {run.target} does not match the {len(stages)} stages of this "
            f"{run.workflow} run"
        )
    return stages


def prepare_fresh_run(run: ResolvedRun) -> None:
    """Seed files that a workflow's first stage expects to find."""
    if run.workflow != "implement-critique":
        return
    updated_files_path = run.paths.run_dir / UPDATED_FILES_NAME
    if updated_files_path.exists():
        return
    updated_files_path.write_text(
        _placeholder(
            "Updated Files",
            f"Created: {_local_now()}",
            "",
            "Format:",
            "- path/to/file.ext | short summary of what changed",
            "",
            "Entries:",
            "- (none yet)",
        ),
        encoding="utf-8",
    )


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------


def _publish(context: RunContext, stage: StageDefinition) -> None:
    run_dir = context.run.paths.run_dir
    for source, destination in stage.publish:
        if not source.is_file():
            _append_log(run_dir, f"publish skipped index={stage.index}: {source} is missing")
            continue
        if destination.is_file() and destination.read_bytes() == source.read_bytes():
            continue
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, destination)
        _append_log(run_dir, f"published {source} -> {destination}")


def drive_stages(context: RunContext, stages: list[StageDefinition]) -> list[StageOutcome]:
    """Run every stage at or after the resume point, strictly in order.

    Stops at the first ``RunnerError``. Stages before the resume point are
    not re-run; only their publish copies are re-applied.
    """
    run = context.run
    outcomes: list[StageOutcome] = []
    for stage in stages:
        if stage.index < run.start_index:
            _publish(context, stage)
            continue
        _heartbeat_lock(run.paths.lock_path)
        print(f"Starting {stage.title} ({stage.index}/{run.target})...")
        outcome = run_stage(context, stage)
        _publish(context, stage)
        outcomes.append(outcome)
        if outcome.status in {"no_progress", "unindexed"}:
            print(f"  note: {outcome.note}")
    return outcomes
