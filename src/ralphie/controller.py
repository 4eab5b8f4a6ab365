"""Iteration loop controller and its exit statuses."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Callable

from ralphie.activity import ActivityStateMachine, build_failure_context
from ralphie.backlog import load_backlog, locate_active_spec
from ralphie.constants import (
    CATEGORY_EVENT_TYPES,
    EXIT_CODE_COMPLETE,
    EXIT_CODE_FATAL_ERROR,
    EXIT_CODE_MAX_ITERATIONS,
    EXIT_CODE_STUCK,
    TASK_STATUS_PASSED,
)
from ralphie.emitter import LifecycleEmitter
from ralphie.models import (
    AgentInvocationError,
    AgentRunOptions,
    AgentRunResult,
    Backlog,
    CanonicalEvent,
    CommitItem,
    IterationResult,
    LoopOutcome,
    RunConfig,
    Task,
    ToolStartItem,
)
from ralphie.prompts import render_prompt
from ralphie.runners import run_agent
from ralphie.utils import (
    _append_iteration_ledger,
    _append_log,
    _files_in_last_commit,
    _find_todo_stubs,
    _utc_now,
    _write_run_summary,
)

AgentInvoker = Callable[[str, Path, Callable[[CanonicalEvent], None]], AgentRunResult]


def _default_invoker(config: RunConfig) -> AgentInvoker:
    options = AgentRunOptions(
        harness=config.harness,
        model=config.model,
        command=config.agent_command,
        idle_timeout_seconds=config.idle_timeout_seconds,
        save_jsonl=config.save_jsonl,
        pricing=dict(config.pricing),
    )

    def _invoke(prompt: str, cwd: Path, on_event: Callable[[CanonicalEvent], None]) -> AgentRunResult:
        return run_agent(prompt, cwd, on_event, options=options)

    return _invoke


def _tool_event_path(tool_input: dict) -> str | None:
    for key in ("file_path", "path", "pattern", "command", "query"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _newly_passed(before: Backlog, after: Backlog) -> list[Task]:
    newly = []
    for task in after.tasks:
        previous = before.get_task(task.id)
        if task.status == TASK_STATUS_PASSED and (previous is None or previous.status != TASK_STATUS_PASSED):
            newly.append(task)
    return newly


class IterationController:
    """Runs the agent until the backlog is resolved, progress stalls, or iterations run out.

    Progress is the number of passed tasks read fresh from the spec file
    after every invocation. A task marked failed resolves the backlog but is
    not progress. The stuck check fires on the
    iteration that completes the ``stuck_threshold``-th consecutive cycle
    without progress.
    """

    def __init__(
        self,
        repo_root: Path,
        config: RunConfig,
        *,
        emitter: LifecycleEmitter | None = None,
        invoke: AgentInvoker | None = None,
        spec_path: Path | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repo_root = repo_root
        self.config = config
        self.emitter = emitter if emitter is not None else LifecycleEmitter()
        self._invoke = invoke if invoke is not None else _default_invoker(config)
        self._spec_path = spec_path
        self._clock = clock

    def run(self) -> LoopOutcome:
        spec_path = self._spec_path or locate_active_spec(self.repo_root)
        backlog = load_backlog(spec_path)
        started_at = _utc_now()
        loop_started = self._clock()
        results: list[IterationResult] = []

        self.emitter.started(
            str(spec_path),
            len(backlog.tasks),
            model=self.config.model,
            harness=self.config.harness,
        )
        _append_log(
            self.repo_root,
            (
                f"loop start spec={spec_path} tasks={len(backlog.tasks)} harness={self.config.harness} "
                f"max_iterations={self.config.max_iterations} stuck_threshold={self.config.stuck_threshold}"
            ),
        )
        for warning in backlog.warnings:
            _append_log(self.repo_root, f"spec warning: {warning}")

        def _finish(exit_code: int, reason: str, error: str | None = None) -> LoopOutcome:
            total_ms = int(round((self._clock() - loop_started) * 1000))
            _write_run_summary(
                self.repo_root,
                exit_code=exit_code,
                reason=reason,
                results=results,
                started_at=started_at,
                total_duration_ms=total_ms,
                spec_path=spec_path,
            )
            _append_log(self.repo_root, f"loop end exit_code={exit_code} reason={reason}")
            return LoopOutcome(
                exit_code=exit_code,
                reason=reason,
                iterations=tuple(results),
                total_duration_ms=total_ms,
                error=error,
            )

        if backlog.is_complete:
            self.emitter.complete(backlog.completed_count, 0)
            return _finish(EXIT_CODE_COMPLETE, "backlog already complete")

        without_progress = 0
        for iteration in range(1, self.config.max_iterations + 1):
            self.emitter.iteration(iteration, "starting")
            passed_before = backlog.completed_count
            try:
                result = self.run_iteration(iteration, spec_path, backlog)
            except AgentInvocationError as exc:
                _append_log(self.repo_root, f"iteration {iteration} fatal: {exc}")
                self.emitter.failed(str(exc))
                return _finish(EXIT_CODE_FATAL_ERROR, "agent invocation failed", error=str(exc))
            results.append(result)
            _append_iteration_ledger(self.repo_root, result)

            current = load_backlog(spec_path)
            self._emit_task_completions(backlog, current)
            if current.completed_count > passed_before:
                without_progress = 0
                self._warn_on_todo_stubs(backlog, current)
            else:
                without_progress += 1

            self.emitter.iteration_done(
                iteration,
                result.duration_ms,
                result.stats,
                error=result.error,
                cost_usd=result.cost_usd,
            )
            _append_log(
                self.repo_root,
                (
                    f"iteration {iteration} done passed={current.completed_count}/{len(current.tasks)} "
                    f"without_progress={without_progress} error={result.error or '-'}"
                ),
            )

            if current.is_complete:
                total_ms = int(round((self._clock() - loop_started) * 1000))
                self.emitter.complete(current.completed_count, total_ms)
                return _finish(EXIT_CODE_COMPLETE, "backlog complete")
            if without_progress >= self.config.stuck_threshold:
                self.emitter.stuck("No task progress", without_progress)
                return _finish(EXIT_CODE_STUCK, f"no progress in {without_progress} consecutive iterations")
            backlog = current

        return _finish(EXIT_CODE_MAX_ITERATIONS, f"reached {self.config.max_iterations} iterations")

    def run_iteration(self, iteration: int, spec_path: Path, backlog: Backlog) -> IterationResult:
        prompt = render_prompt(
            self.repo_root,
            spec_path=spec_path,
            backlog=backlog,
            budget=self.config.budget,
            greedy=self.config.greedy,
            conservative=self.config.conservative,
        )
        machine = ActivityStateMachine(clock=self._clock)

        def _on_event(event: CanonicalEvent) -> None:
            for item in machine.handle(event):
                if isinstance(item, ToolStartItem):
                    tool = machine.active_tools.get(item.correlation_id)
                    self.emitter.tool(
                        CATEGORY_EVENT_TYPES[item.category],
                        name=item.tool_name,
                        path=_tool_event_path(tool.input) if tool else None,
                    )
                elif isinstance(item, CommitItem):
                    self.emitter.commit(item.hash, item.message)

        started = self._clock()
        run_result = self._invoke(prompt, self.repo_root, _on_event)
        elapsed_ms = int(round((self._clock() - started) * 1000))

        error: str | None = None
        failure_context = None
        if not run_result.success:
            error = run_result.error_message or "agent run failed"
            failure_context = build_failure_context(machine.groups, machine.activity)
            if failure_context["last_tool_name"]:
                _append_log(
                    self.repo_root,
                    f"iteration {iteration} failure near {failure_context['last_tool_name']}: "
                    f"{failure_context['last_tool_input'] or '-'}",
                )
        commit = machine.last_commit
        return IterationResult(
            iteration=iteration,
            duration_ms=run_result.duration_ms if run_result.duration_ms else elapsed_ms,
            stats=machine.stats_snapshot(),
            error=error,
            commit_hash=commit.hash if commit else None,
            commit_message=commit.message if commit else None,
            cost_usd=run_result.cost_usd,
            usage=run_result.usage,
            failure_context=failure_context,
        )

    def _emit_task_completions(self, before: Backlog, after: Backlog) -> None:
        index = before.completed_count
        for task in _newly_passed(before, after):
            index += 1
            self.emitter.task_complete(index, task.title, task_id=task.id, status=task.status)

    def _warn_on_todo_stubs(self, before: Backlog, after: Backlog) -> None:
        if not self.config.warn_on_todo_stubs or not _newly_passed(before, after):
            return
        flagged = _find_todo_stubs(self.repo_root, _files_in_last_commit(self.repo_root))
        if flagged:
            _append_log(self.repo_root, f"todo stubs in completed work: {', '.join(flagged)}")
            self.emitter.warning("todo_stub", "Completed tasks contain TODO/FIXME stubs", flagged)
