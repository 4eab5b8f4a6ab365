"""Ralphie constants — tool categories, task sizing, exit codes, and defaults."""

from __future__ import annotations

import re
from pathlib import Path

RALPHIE_DIR_NAME = ".ralphie"
ACTIVE_SPECS_RELATIVE = Path(RALPHIE_DIR_NAME) / "specs" / "active"
COMPLETED_SPECS_RELATIVE = Path(RALPHIE_DIR_NAME) / "specs" / "completed"
LEGACY_ACTIVE_SPECS_RELATIVE = Path("specs") / "active"
CONFIG_RELATIVE = Path(RALPHIE_DIR_NAME) / "config.yaml"
LOG_RELATIVE = Path(RALPHIE_DIR_NAME) / "logs" / "ralphie.log"
ITERATION_LEDGER_RELATIVE = Path(RALPHIE_DIR_NAME) / "iterations.jsonl"
RUN_SUMMARY_RELATIVE = Path(RALPHIE_DIR_NAME) / "run_summary.json"
PROMPT_OVERRIDE_RELATIVE = Path(RALPHIE_DIR_NAME) / "prompt.md"
GREEDY_PROMPT_OVERRIDE_RELATIVE = Path(RALPHIE_DIR_NAME) / "prompt.greedy.md"
PROMPT_TOKEN_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")
CONFIG_SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "config.schema.json"

# ---------------------------------------------------------------------------
# Tool categories
# ---------------------------------------------------------------------------

TOOL_CATEGORY_READ = "read"
TOOL_CATEGORY_WRITE = "write"
TOOL_CATEGORY_COMMAND = "command"
TOOL_CATEGORY_META = "meta"
TOOL_CATEGORIES: dict[str, str] = {
    "Read": TOOL_CATEGORY_READ,
    "Grep": TOOL_CATEGORY_READ,
    "Glob": TOOL_CATEGORY_READ,
    "LS": TOOL_CATEGORY_READ,
    "WebFetch": TOOL_CATEGORY_READ,
    "WebSearch": TOOL_CATEGORY_READ,
    "LSP": TOOL_CATEGORY_READ,
    "Edit": TOOL_CATEGORY_WRITE,
    "MultiEdit": TOOL_CATEGORY_WRITE,
    "Write": TOOL_CATEGORY_WRITE,
    "NotebookEdit": TOOL_CATEGORY_WRITE,
    "Bash": TOOL_CATEGORY_COMMAND,
    "TodoWrite": TOOL_CATEGORY_META,
    "Task": TOOL_CATEGORY_META,
    "AskUserQuestion": TOOL_CATEGORY_META,
    "EnterPlanMode": TOOL_CATEGORY_META,
    "ExitPlanMode": TOOL_CATEGORY_META,
}
CATEGORY_VERBS: dict[str, str] = {
    TOOL_CATEGORY_READ: "Reading",
    TOOL_CATEGORY_WRITE: "Editing",
    TOOL_CATEGORY_COMMAND: "Running",
    TOOL_CATEGORY_META: "Processing",
}
# Lifecycle `tool` events use the shorter vocabulary of the headless stream.
CATEGORY_EVENT_TYPES: dict[str, str] = {
    TOOL_CATEGORY_READ: "read",
    TOOL_CATEGORY_WRITE: "write",
    TOOL_CATEGORY_COMMAND: "bash",
    TOOL_CATEGORY_META: "meta",
}

# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------

PHASE_IDLE = "idle"
PHASE_READING = "reading"
PHASE_EDITING = "editing"
PHASE_RUNNING = "running"
PHASE_THINKING = "thinking"
PHASE_DONE = "done"

ACTIVITY_LOG_LIMIT = 50
FAILURE_CONTEXT_RECENT_ITEMS = 5
FAILURE_CONTEXT_OUTPUT_CHARS = 500

GIT_COMMIT_COMMAND_PATTERN = re.compile(
    r"(?:^|&&|\|\||;)\s*git(?:\s+-C\s+\S+)?\s+commit(?:\s|$)"
)
GIT_COMMIT_OUTPUT_PATTERN = re.compile(
    r"^\[[\w./-]+(?:\s+\([^)]*\))?\s+([a-f0-9]{7,40})\]\s+(.+)$",
    re.MULTILINE,
)

# ---------------------------------------------------------------------------
# Backlog
# ---------------------------------------------------------------------------

TASK_STATUS_PENDING = "pending"
TASK_STATUS_IN_PROGRESS = "in_progress"
TASK_STATUS_PASSED = "passed"
TASK_STATUS_FAILED = "failed"
TASK_STATUSES = (
    TASK_STATUS_PENDING,
    TASK_STATUS_IN_PROGRESS,
    TASK_STATUS_PASSED,
    TASK_STATUS_FAILED,
)
TASK_OPEN_STATUSES = frozenset({TASK_STATUS_PENDING, TASK_STATUS_IN_PROGRESS})
TASK_RESOLVED_STATUSES = frozenset({TASK_STATUS_PASSED, TASK_STATUS_FAILED})
TASK_STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    TASK_STATUS_PENDING: frozenset({TASK_STATUS_IN_PROGRESS}),
    TASK_STATUS_IN_PROGRESS: frozenset({TASK_STATUS_PASSED, TASK_STATUS_FAILED}),
    TASK_STATUS_PASSED: frozenset(),
    TASK_STATUS_FAILED: frozenset(),
}
SIZE_POINTS: dict[str, int] = {"S": 1, "M": 2, "L": 4}
# Conservative selection stops after one task of these sizes.
CONSERVATIVE_STOP_SIZES = frozenset({"M", "L"})
TASK_ID_PATTERN = re.compile(r"^T(\d{3,})$")
TASK_ID_WIDTH = 3

DEFAULT_BUDGET = 4
SELECTION_STATUS_SELECTED = "selected"
SELECTION_STATUS_NONE_FIT = "none_fit"
SELECTION_STATUS_COMPLETE = "complete"

# ---------------------------------------------------------------------------
# Loop control
# ---------------------------------------------------------------------------

EXIT_CODE_COMPLETE = 0
EXIT_CODE_STUCK = 1
EXIT_CODE_MAX_ITERATIONS = 2
EXIT_CODE_FATAL_ERROR = 3

DEFAULT_MAX_ITERATIONS = 10
MAX_ALL_ITERATIONS = 100
DEFAULT_STUCK_THRESHOLD = 3
DEFAULT_IDLE_TIMEOUT_SECONDS = 120.0

# ---------------------------------------------------------------------------
# Agent harnesses
# ---------------------------------------------------------------------------

HARNESS_CLAUDE = "claude"
HARNESS_CODEX = "codex"
HARNESSES = (HARNESS_CLAUDE, HARNESS_CODEX)
DEFAULT_HARNESS = HARNESS_CLAUDE
AGENT_RUNNER_PRESETS: dict[str, tuple[str, ...]] = {
    HARNESS_CLAUDE: (
        "claude",
        "-p",
        "--dangerously-skip-permissions",
        "--output-format",
        "stream-json",
        "--verbose",
    ),
    HARNESS_CODEX: ("codex", "exec", "--json", "--full-auto", "-"),
}
HARNESS_MODEL_FLAGS: dict[str, str] = {
    HARNESS_CLAUDE: "--model",
    HARNESS_CODEX: "--model",
}

TODO_STUB_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"//\s*TODO:", re.IGNORECASE),
    re.compile(r"//\s*FIXME:", re.IGNORECASE),
    re.compile(r"#\s*TODO:", re.IGNORECASE),
    re.compile(r"#\s*FIXME:", re.IGNORECASE),
    re.compile(r"throw new Error\(['\"]Not implemented", re.IGNORECASE),
    re.compile(r"raise NotImplementedError"),
)
TODO_STUB_SUFFIXES = (".py", ".ts", ".tsx", ".js", ".jsx")
