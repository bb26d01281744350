"""File names, patterns, defaults, and runner presets."""

from __future__ import annotations

import re
from pathlib import Path

PACKAGE_TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"

WORKFLOWS = ("repeat", "critique-loop", "branch", "implement-critique")

REPORT_FILE_NAME = "report.txt"
LEDGER_FILE_NAME = "progress.txt"
MANIFEST_FILE_NAME = "run.json"
SYSTEM_PROMPT_FILE_NAME = "system_prompt.txt"
LOCK_FILE_NAME = ".lock"
LOGS_DIR_NAME = "logs"
PROMPTS_DIR_NAME = "prompts"
ORCHESTRATOR_LOG_NAME = "orchestrator.log"
RUNNER_REPORT_NAME = "runner_report.json"

MANIFEST_SCHEMA_VERSION = 1

DEFAULT_CONFIG_PATH = Path(".runledger") / "config.yaml"
DEFAULT_OUTPUT_ROOTS: dict[str, str] = {
    "repeat": ".runledger/reports/repeat_n_times",
    "critique-loop": ".runledger/reports/critique_loop",
    "branch": ".runledger/reports/branch_elevate_and_merge",
    "implement-critique": ".runledger/reports/implement_then_critique",
}

DEFAULT_ITERATIONS = 5
DEFAULT_MAX_TREE_FILES = 250
DEFAULT_CRITIQUE_ROUNDS = 3
MAX_CRITIQUE_ROUNDS = 10
DEFAULT_IDEAS_COUNT = 7
MIN_IDEAS_COUNT = 5
MAX_IDEAS_COUNT = 10
SLUG_MAX_LENGTH = 60
SLUG_FALLBACK = "task"
TASK_SUMMARY_MAX_CHARS = 240
REPORT_TASK_BEGIN = "<<<BEGIN_TASK>>>"
REPORT_TASK_END = "<<<END_TASK>>>"

LOCK_STALE_SECONDS = 30 * 60

AGENT_RUNNER_PRESETS: dict[str, str] = {
    "codex": "codex exec --full-auto -",
    "claude": "env -u CLAUDECODE claude -p --output-format text --verbose -",
}
DEFAULT_AGENT_RUNNER_NAME = "codex"
DEFAULT_AGENT_RUNNER_COMMAND = AGENT_RUNNER_PRESETS[DEFAULT_AGENT_RUNNER_NAME]
DEFAULT_AGENT_RUNNER_TIMEOUT_SECONDS = 0.0
RUNNER_COMMAND_TOKENS = ("{prompt}", "{prompt_file}", "{run_dir}", "{stage}", "{index}")

FINGERPRINT_FALLBACK_METHOD = "mtime_size"
DEFAULT_FINGERPRINT_METHOD = "sha256"
ABSENT_FINGERPRINT = "absent"

# ---------------------------------------------------------------------------
# Ledger grammar
# ---------------------------------------------------------------------------

LEDGER_TITLE = "# Progress"
LEDGER_LOG_HEADING = "## Iteration Log"
LEDGER_LOG_HEADING_PATTERN = re.compile(r"^##\s+Iteration Log\s*$", re.IGNORECASE)
LEDGER_METADATA_PATTERN = re.compile(r"^-\s+([A-Za-z][A-Za-z ]*?):\s*(.*?)\s*$")
LEDGER_RECORD_PATTERN = re.compile(r"^-\s+\[(\d+)\]\s?(.*?)\s*$")
LEDGER_TARGET_KEY = "target iterations"
LEDGER_SESSION_KEY = "session started"
LEDGER_REPORT_KEY = "report file"
LEDGER_SUMMARY_KEY = "task summary"
LEDGER_INITIAL_NOTE = "Session initialized."

PROMPT_TOKEN_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")
