"""Ralphie data models — exceptions, dataclasses, and coercion helpers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Union

from ralphie.constants import (
    SELECTION_STATUS_COMPLETE,
    SELECTION_STATUS_NONE_FIT,
    TASK_OPEN_STATUSES,
    TASK_RESOLVED_STATUSES,
    TASK_STATUS_FAILED,
    TASK_STATUS_PASSED,
)


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


def _coerce_float(value: Any, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _coerce_positive_int(value: Any, *, default: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _coerce_optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _coerce_optional_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class MalformedSpecError(RuntimeError):
    """Raised when a backlog document violates its structural rules."""


class SpecLocatorError(RuntimeError):
    """Raised when the active spec cannot be located unambiguously."""

    def __init__(self, message: str, *, code: str) -> None:
        super().__init__(message)
        self.code = code


class TaskTransitionError(RuntimeError):
    """Raised when a task status change skips or reverses the lifecycle."""


class SpecArchiveError(RuntimeError):
    """Raised when a spec cannot be moved to the completed directory."""


class ConfigError(RuntimeError):
    """Raised when .ralphie/config.yaml cannot be loaded or validated."""


class AgentInvocationError(RuntimeError):
    """Raised when the agent process cannot be run at all."""


# ---------------------------------------------------------------------------
# Canonical stream events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int
    output_tokens: int

    def as_dict(self) -> dict[str, int]:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}


@dataclass(frozen=True)
class InitEvent:
    kind: ClassVar[str] = "init"
    session_id: str | None = None
    model: str | None = None


@dataclass(frozen=True)
class ToolStartEvent:
    kind: ClassVar[str] = "tool_start"
    correlation_id: str
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolEndEvent:
    """Result of a tool call.

    ``tool_name``, ``input`` and ``duration_ms`` are filled in by the
    correlator; they stay empty for an orphaned result whose start was never
    seen in this invocation.
    """

    kind: ClassVar[str] = "tool_end"
    correlation_id: str
    output: str = ""
    is_error: bool = False
    tool_name: str | None = None
    input: dict[str, Any] = field(default_factory=dict)
    duration_ms: int | None = None

    @property
    def orphaned(self) -> bool:
        return self.tool_name is None


@dataclass(frozen=True)
class TextEvent:
    kind: ClassVar[str] = "text"
    text: str
    is_thinking: bool = False


@dataclass(frozen=True)
class ResultEvent:
    kind: ClassVar[str] = "result"
    is_error: bool = False
    duration_ms: int | None = None
    cost_usd: float | None = None
    usage: TokenUsage | None = None
    num_turns: int | None = None
    session_id: str | None = None
    result_text: str | None = None


@dataclass(frozen=True)
class ErrorEvent:
    kind: ClassVar[str] = "error"
    message: str
    raw_line: str | None = None


CanonicalEvent = Union[InitEvent, ToolStartEvent, ToolEndEvent, TextEvent, ResultEvent, ErrorEvent]


@dataclass(frozen=True)
class PendingTool:
    tool_name: str
    input: dict[str, Any]
    started_at: float


# ---------------------------------------------------------------------------
# Activity state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ActiveTool:
    id: str
    name: str
    category: str
    started_at: float
    input: dict[str, Any]


@dataclass(frozen=True)
class CompletedTool:
    id: str
    name: str
    category: str
    duration_ms: int
    is_error: bool
    input: dict[str, Any]
    output: str = ""


@dataclass
class CompletedToolGroup:
    category: str
    tools: list[CompletedTool] = field(default_factory=list)
    total_duration_ms: int = 0

    @property
    def has_errors(self) -> bool:
        return any(tool.is_error for tool in self.tools)

    def add(self, tool: CompletedTool) -> None:
        self.tools.append(tool)
        self.total_duration_ms += tool.duration_ms


@dataclass(frozen=True)
class ThoughtItem:
    kind: ClassVar[str] = "thought"
    timestamp: float
    text: str


@dataclass(frozen=True)
class ToolStartItem:
    kind: ClassVar[str] = "tool_start"
    timestamp: float
    correlation_id: str
    tool_name: str
    display_name: str
    category: str


@dataclass(frozen=True)
class ToolCompleteItem:
    kind: ClassVar[str] = "tool_complete"
    timestamp: float
    correlation_id: str
    tool_name: str
    display_name: str
    category: str | None
    duration_ms: int | None
    is_error: bool


@dataclass(frozen=True)
class CommitItem:
    kind: ClassVar[str] = "commit"
    timestamp: float
    hash: str
    message: str


ActivityItem = Union[ThoughtItem, ToolStartItem, ToolCompleteItem, CommitItem]


@dataclass(frozen=True)
class LastCommit:
    hash: str
    message: str


@dataclass
class IterationStats:
    tools_started: int = 0
    tools_completed: int = 0
    tools_errored: int = 0
    tools_orphaned: int = 0
    reads: int = 0
    writes: int = 0
    commands: int = 0
    meta_ops: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Backlog
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Task:
    id: str
    title: str
    status: str
    size: str
    points: int
    deliverables: tuple[str, ...] = ()
    verify_command: str | None = None
    depends_on: tuple[str, ...] = ()

    @property
    def is_open(self) -> bool:
        return self.status in TASK_OPEN_STATUSES

    @property
    def is_resolved(self) -> bool:
        return self.status in TASK_RESOLVED_STATUSES


@dataclass(frozen=True)
class Backlog:
    """Parsed spec document. Aggregates are recomputed on every access."""

    title: str
    goal: str
    context: str
    tasks: tuple[Task, ...]
    acceptance_criteria: tuple[str, ...] = ()
    notes: str = ""
    warnings: tuple[str, ...] = ()

    @property
    def total_points(self) -> int:
        return sum(task.points for task in self.tasks)

    @property
    def completed_points(self) -> int:
        return sum(task.points for task in self.tasks if task.status == TASK_STATUS_PASSED)

    @property
    def failed_points(self) -> int:
        return sum(task.points for task in self.tasks if task.status == TASK_STATUS_FAILED)

    @property
    def pending_points(self) -> int:
        return sum(task.points for task in self.tasks if task.is_open)

    @property
    def completed_count(self) -> int:
        return sum(1 for task in self.tasks if task.status == TASK_STATUS_PASSED)

    @property
    def resolved_count(self) -> int:
        return sum(1 for task in self.tasks if task.is_resolved)

    @property
    def is_complete(self) -> bool:
        return all(task.is_resolved for task in self.tasks)

    def get_task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None


@dataclass(frozen=True)
class BudgetSelection:
    budget: int
    selected: tuple[Task, ...]
    total_points: int
    remaining_budget: int
    skipped: tuple[Task, ...] = ()
    blocked: tuple[Task, ...] = ()
    warnings: tuple[str, ...] = ()
    status: str = SELECTION_STATUS_COMPLETE

    @property
    def is_empty(self) -> bool:
        return not self.selected

    @property
    def nothing_fits(self) -> bool:
        return self.status == SELECTION_STATUS_NONE_FIT


# ---------------------------------------------------------------------------
# Invocation and loop results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AgentRunOptions:
    harness: str
    model: str | None = None
    command: tuple[str, ...] = ()
    idle_timeout_seconds: float = 0.0
    save_jsonl: str | None = None
    pricing: dict[str, dict[str, float]] = field(default_factory=dict)
    env: dict[str, str] | None = None


@dataclass(frozen=True)
class AgentRunResult:
    success: bool
    duration_ms: int
    cost_usd: float | None = None
    usage: TokenUsage | None = None
    error_message: str | None = None
    output: str | None = None
    exit_code: int | None = None


@dataclass(frozen=True)
class IterationResult:
    iteration: int
    duration_ms: int
    stats: IterationStats
    error: str | None = None
    commit_hash: str | None = None
    commit_message: str | None = None
    cost_usd: float | None = None
    usage: TokenUsage | None = None
    failure_context: dict[str, Any] | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "iteration": self.iteration,
            "duration_ms": self.duration_ms,
            "stats": self.stats.as_dict(),
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.commit_hash is not None:
            payload["commit"] = {"hash": self.commit_hash, "message": self.commit_message or ""}
        if self.cost_usd is not None:
            payload["cost_usd"] = self.cost_usd
        if self.usage is not None:
            payload["usage"] = self.usage.as_dict()
        if self.failure_context is not None:
            payload["failure_context"] = self.failure_context
        return payload


@dataclass(frozen=True)
class LoopOutcome:
    exit_code: int
    reason: str
    iterations: tuple[IterationResult, ...] = ()
    total_duration_ms: int = 0
    error: str | None = None


@dataclass(frozen=True)
class RunConfig:
    harness: str
    model: str | None
    budget: int
    stuck_threshold: int
    max_iterations: int
    idle_timeout_seconds: float
    greedy: bool = False
    conservative: bool = False
    save_jsonl: str | None = None
    warn_on_todo_stubs: bool = True
    agent_command: tuple[str, ...] = ()
    pricing: dict[str, dict[str, float]] = field(default_factory=dict)
