from __future__ import annotations

import re
from pathlib import Path

from runledger.constants import PACKAGE_TEMPLATE_DIR, PROMPT_TOKEN_PATTERN
from runledger.models import StateError

_BLANK_RUN_PATTERN = re.compile(r"\n{3,}")


def _resolve_template_path(name: str) -> Path:
    candidate = PACKAGE_TEMPLATE_DIR / f"{name}.md"
    if not candidate.exists():
        raise StateError(f"prompt template is missing: {candidate}")
    return candidate


def load_template(name: str) -> str:
    path = _resolve_template_path(name)
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise StateError(f"prompt template could not be read at {path}: {exc}") from exc


def render_text(template_text: str, values: dict[str, object], *, template_name: str = "<inline>") -> str:
    """Substitute ``{{token}}`` placeholders; unknown tokens are an error."""
    tokens_in_template = sorted(
        {match.group(1).strip() for match in PROMPT_TOKEN_PATTERN.finditer(template_text)}
    )
    unsupported = [token for token in tokens_in_template if token not in values]
    if unsupported:
        raise StateError(
            f"prompt template '{template_name}' has unsupported token(s): {', '.join(unsupported)}"
        )

    def _replace_token(match: re.Match[str]) -> str:
        return str(values[match.group(1).strip()]).strip()

    rendered = PROMPT_TOKEN_PATTERN.sub(_replace_token, template_text)
    rendered = _BLANK_RUN_PATTERN.sub("\n\n", rendered).strip()
    return f"{rendered}\n"


def render_template(name: str, values: dict[str, object]) -> str:
    return render_text(load_template(name), values, template_name=name)


# ---------------------------------------------------------------------------
# Prompt builders
# ---------------------------------------------------------------------------


def repeat_system_prompt() -> str:
    return load_template("repeat_system").strip() + "\n"


def render_iteration_prompt(
    *,
    system_prompt: str,
    index: int,
    target: int,
    report_path: Path,
    ledger_path: Path,
) -> str:
    return render_template(
        "repeat_iteration",
        {
            "system_prompt": system_prompt,
            "index": index,
            "target": target,
            "report_path": report_path,
            "ledger_path": ledger_path,
        },
    )


def render_stage_prompt(
    *,
    role: str | None,
    task: str,
    instruction: str,
    inputs: list[tuple[str, Path]],
    index: int,
    target: int,
    stage: str,
    report_path: Path,
    ledger_path: Path,
    output_path: Path,
) -> str:
    """Render one pipeline call: role, task, input files, instruction, and run rules."""
    role_text = load_template(f"{role}_role").strip() if role else ""
    input_lines = "\n".join(f"{label}: {path}" for label, path in inputs)
    return render_template(
        "stage_frame",
        {
            "role": role_text,
            "task": task,
            "inputs": input_lines,
            "instruction": instruction,
            "index": index,
            "target": target,
            "stage": stage,
            "report_path": report_path,
            "ledger_path": ledger_path,
            "output_path": output_path,
        },
    )
