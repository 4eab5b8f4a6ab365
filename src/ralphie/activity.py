"""Activity tracking for one agent invocation."""

from __future__ import annotations

import json
import time
from collections import deque
from dataclasses import dataclass, replace
from pathlib import PurePosixPath
from typing import Any, Callable

from ralphie.constants import (
    ACTIVITY_LOG_LIMIT,
    CATEGORY_VERBS,
    FAILURE_CONTEXT_OUTPUT_CHARS,
    FAILURE_CONTEXT_RECENT_ITEMS,
    GIT_COMMIT_COMMAND_PATTERN,
    GIT_COMMIT_OUTPUT_PATTERN,
    PHASE_DONE,
    PHASE_EDITING,
    PHASE_IDLE,
    PHASE_READING,
    PHASE_RUNNING,
    PHASE_THINKING,
    TOOL_CATEGORIES,
    TOOL_CATEGORY_COMMAND,
    TOOL_CATEGORY_META,
    TOOL_CATEGORY_READ,
    TOOL_CATEGORY_WRITE,
)
from ralphie.models import (
    ActiveTool,
    ActivityItem,
    CanonicalEvent,
    CommitItem,
    CompletedTool,
    CompletedToolGroup,
    ErrorEvent,
    IterationStats,
    LastCommit,
    ResultEvent,
    TextEvent,
    ThoughtItem,
    ToolCompleteItem,
    ToolEndEvent,
    ToolStartEvent,
    ToolStartItem,
)


# ---------------------------------------------------------------------------
# Tool classification
# ---------------------------------------------------------------------------


def tool_category(tool_name: str) -> str:
    return TOOL_CATEGORIES.get(tool_name, TOOL_CATEGORY_META)


def _shorten(text: str, limit: int = 20) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


def tool_display_name(tool_name: str, tool_input: dict[str, Any] | None) -> str:
    if not tool_input:
        return tool_name
    file_path = tool_input.get("file_path")
    if tool_name in {"Read", "Edit", "MultiEdit", "Write"} and isinstance(file_path, str) and file_path:
        return PurePosixPath(file_path).name or tool_name
    command = tool_input.get("command")
    if tool_name == "Bash" and isinstance(command, str) and command.strip():
        return _shorten(command.strip().split()[0])
    pattern = tool_input.get("pattern")
    if tool_name == "Glob" and isinstance(pattern, str):
        return pattern
    if tool_name == "Grep" and isinstance(pattern, str):
        return _shorten(pattern)
    return tool_name


def is_git_commit_command(command: str) -> bool:
    return bool(GIT_COMMIT_COMMAND_PATTERN.search(command.strip()))


def parse_git_commit_output(output: str) -> LastCommit | None:
    match = GIT_COMMIT_OUTPUT_PATTERN.search(output)
    if match is None:
        return None
    return LastCommit(hash=match.group(1), message=match.group(2).strip())


# ---------------------------------------------------------------------------
# Phase derivation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PhaseSnapshot:
    active_categories: frozenset[str] = frozenset()
    text_seen: bool = False
    result_seen: bool = False
    tools_seen: bool = False


def derive_phase(snapshot: PhaseSnapshot) -> str:
    """done > editing > running > reading > thinking > idle.

    Meta tools never raise the phase on their own.
    """
    if snapshot.result_seen:
        return PHASE_DONE
    if TOOL_CATEGORY_WRITE in snapshot.active_categories:
        return PHASE_EDITING
    if TOOL_CATEGORY_COMMAND in snapshot.active_categories:
        return PHASE_RUNNING
    if TOOL_CATEGORY_READ in snapshot.active_categories:
        return PHASE_READING
    if snapshot.text_seen or snapshot.tools_seen:
        return PHASE_THINKING
    return PHASE_IDLE


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class ActivityStateMachine:
    """Folds canonical events into the activity picture of one invocation.

    ``handle`` returns the activity items appended for that event so callers
    can forward lifecycle notifications without diffing the ring buffer.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        log_limit: int = ACTIVITY_LOG_LIMIT,
    ) -> None:
        self._clock = clock
        self._log_limit = log_limit
        self.reset()

    def reset(self) -> None:
        self.started_at = self._clock()
        self.active_tools: dict[str, ActiveTool] = {}
        self.completed_tools: list[CompletedTool] = []
        self.groups: list[CompletedToolGroup] = []
        self.activity: deque[ActivityItem] = deque(maxlen=self._log_limit)
        self.stats = IterationStats()
        self.last_commit: LastCommit | None = None
        self.commits: list[LastCommit] = []
        self.result: ResultEvent | None = None
        self.errors: list[str] = []
        self.task_text: str | None = None
        self._text_seen = False

    # -- read-only views --------------------------------------------------

    def phase_snapshot(self) -> PhaseSnapshot:
        return PhaseSnapshot(
            active_categories=frozenset(tool.category for tool in self.active_tools.values()),
            text_seen=self._text_seen,
            result_seen=self.result is not None,
            tools_seen=self.stats.tools_started > 0 or self.stats.tools_orphaned > 0,
        )

    @property
    def phase(self) -> str:
        return derive_phase(self.phase_snapshot())

    def elapsed_ms(self) -> int:
        return max(0, int(round((self._clock() - self.started_at) * 1000)))

    def active_tool_names(self) -> list[str]:
        return [tool.name for tool in self.active_tools.values()]

    def stats_snapshot(self) -> IterationStats:
        return replace(self.stats)

    def coalesced_summary(self) -> str:
        phase = self.phase
        if phase == PHASE_DONE:
            return f"Done ({self.stats.tools_completed} tools)"
        if not self.active_tools:
            return "Waiting..." if phase == PHASE_IDLE else "Thinking..."
        by_category: dict[str, list[str]] = {}
        for tool in self.active_tools.values():
            by_category.setdefault(tool.category, []).append(tool_display_name(tool.name, tool.input))
        parts: list[str] = []
        for category, names in by_category.items():
            verb = CATEGORY_VERBS.get(category, CATEGORY_VERBS[TOOL_CATEGORY_META])
            if len(names) <= 3:
                parts.append(f"{verb} {', '.join(names)}")
            else:
                parts.append(f"{verb} {len(names)} items")
        return " • ".join(parts)

    def snapshot(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "elapsed_ms": self.elapsed_ms(),
            "active_tools": self.active_tool_names(),
            "groups": [
                {
                    "category": group.category,
                    "count": len(group.tools),
                    "total_duration_ms": group.total_duration_ms,
                    "has_errors": group.has_errors,
                }
                for group in self.groups
            ],
            "stats": self.stats.as_dict(),
            "last_commit": (
                {"hash": self.last_commit.hash, "message": self.last_commit.message}
                if self.last_commit
                else None
            ),
            "summary": self.coalesced_summary(),
        }

    # -- transitions ------------------------------------------------------

    def handle(self, event: CanonicalEvent) -> list[ActivityItem]:
        if isinstance(event, ToolStartEvent):
            return self._handle_tool_start(event)
        if isinstance(event, ToolEndEvent):
            return self._handle_tool_end(event)
        if isinstance(event, TextEvent):
            return self._handle_text(event)
        if isinstance(event, ResultEvent):
            self.result = event
            return []
        if isinstance(event, ErrorEvent):
            self.errors.append(event.message)
        return []

    def _append(self, item: ActivityItem, appended: list[ActivityItem]) -> None:
        self.activity.append(item)
        appended.append(item)

    def _handle_tool_start(self, event: ToolStartEvent) -> list[ActivityItem]:
        appended: list[ActivityItem] = []
        now = self._clock()
        category = tool_category(event.tool_name)
        self.active_tools[event.correlation_id] = ActiveTool(
            id=event.correlation_id,
            name=event.tool_name,
            category=category,
            started_at=now,
            input=dict(event.input),
        )
        self.stats.tools_started += 1
        self._append(
            ToolStartItem(
                timestamp=now,
                correlation_id=event.correlation_id,
                tool_name=event.tool_name,
                display_name=tool_display_name(event.tool_name, event.input),
                category=category,
            ),
            appended,
        )
        return appended

    def _handle_tool_end(self, event: ToolEndEvent) -> list[ActivityItem]:
        appended: list[ActivityItem] = []
        now = self._clock()
        active = self.active_tools.pop(event.correlation_id, None)
        if active is None:
            name = event.tool_name or "unknown"
            self.stats.tools_orphaned += 1
            self._append(
                ToolCompleteItem(
                    timestamp=now,
                    correlation_id=event.correlation_id,
                    tool_name=name,
                    display_name=tool_display_name(name, event.input),
                    category=tool_category(event.tool_name) if event.tool_name else None,
                    duration_ms=None,
                    is_error=event.is_error,
                ),
                appended,
            )
            return appended

        if event.duration_ms is not None:
            duration_ms = event.duration_ms
        else:
            duration_ms = max(0, int(round((now - active.started_at) * 1000)))
        completed = CompletedTool(
            id=active.id,
            name=active.name,
            category=active.category,
            duration_ms=duration_ms,
            is_error=event.is_error,
            input=active.input,
            output=event.output,
        )
        self.completed_tools.append(completed)
        self._count_completed(completed)
        if self.groups and self.groups[-1].category == completed.category:
            self.groups[-1].add(completed)
        else:
            group = CompletedToolGroup(category=completed.category)
            group.add(completed)
            self.groups.append(group)

        self._append(
            ToolCompleteItem(
                timestamp=now,
                correlation_id=active.id,
                tool_name=active.name,
                display_name=tool_display_name(active.name, active.input),
                category=active.category,
                duration_ms=duration_ms,
                is_error=event.is_error,
            ),
            appended,
        )

        commit = self._detect_commit(completed)
        if commit is not None:
            self.last_commit = commit
            self.commits.append(commit)
            self._append(CommitItem(timestamp=now, hash=commit.hash, message=commit.message), appended)
        return appended

    def _count_completed(self, tool: CompletedTool) -> None:
        self.stats.tools_completed += 1
        if tool.is_error:
            self.stats.tools_errored += 1
        if tool.category == TOOL_CATEGORY_READ:
            self.stats.reads += 1
        elif tool.category == TOOL_CATEGORY_WRITE:
            self.stats.writes += 1
        elif tool.category == TOOL_CATEGORY_COMMAND:
            self.stats.commands += 1
        else:
            self.stats.meta_ops += 1

    @staticmethod
    def _detect_commit(tool: CompletedTool) -> LastCommit | None:
        if tool.category != TOOL_CATEGORY_COMMAND or tool.is_error:
            return None
        command = tool.input.get("command")
        if not isinstance(command, str) or not is_git_commit_command(command):
            return None
        return parse_git_commit_output(tool.output)

    def _handle_text(self, event: TextEvent) -> list[ActivityItem]:
        appended: list[ActivityItem] = []
        text = event.text.strip()
        self._text_seen = True
        if not text:
            return appended
        if self.task_text is None and not event.is_thinking:
            self.task_text = text[:100]
        self._append(ThoughtItem(timestamp=self._clock(), text=text), appended)
        return appended


# ---------------------------------------------------------------------------
# Failure context
# ---------------------------------------------------------------------------


def format_tool_input(tool_input: dict[str, Any]) -> str:
    if tool_input.get("command"):
        return f"command: {str(tool_input['command'])[:200]}"
    if tool_input.get("file_path"):
        return f"file: {tool_input['file_path']}"
    if tool_input.get("pattern"):
        return f"pattern: {tool_input['pattern']}"
    if tool_input.get("prompt"):
        return f"prompt: {str(tool_input['prompt'])[:100]}"
    return json.dumps(tool_input, sort_keys=True, default=str)[:200]


def format_activity_item(item: ActivityItem) -> str:
    if isinstance(item, ThoughtItem):
        return f"thought: {item.text[:100]}"
    if isinstance(item, ToolStartItem):
        return f"start {item.display_name}"
    if isinstance(item, ToolCompleteItem):
        marker = "error" if item.is_error else "done"
        if item.duration_ms is None:
            return f"{marker} {item.display_name}"
        return f"{marker} {item.display_name} ({item.duration_ms / 1000:.1f}s)"
    if isinstance(item, CommitItem):
        return f"commit {item.hash[:7]} {item.message}"
    return ""


def build_failure_context(
    groups: list[CompletedToolGroup],
    activity: list[ActivityItem] | deque[ActivityItem],
) -> dict[str, Any]:
    tools = [tool for group in groups for tool in group.tools]
    culprit = next((tool for tool in tools if tool.is_error), tools[-1] if tools else None)
    recent = [format_activity_item(item) for item in list(activity)[-FAILURE_CONTEXT_RECENT_ITEMS:]]
    return {
        "last_tool_name": culprit.name if culprit else None,
        "last_tool_input": format_tool_input(culprit.input) if culprit and culprit.input else None,
        "last_tool_output": culprit.output[:FAILURE_CONTEXT_OUTPUT_CHARS] if culprit else None,
        "recent_activity": [line for line in recent if line],
    }
