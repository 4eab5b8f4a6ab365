"""Budgeted task selection over a parsed backlog."""

from __future__ import annotations

from ralphie.constants import (
    CONSERVATIVE_STOP_SIZES,
    DEFAULT_BUDGET,
    SELECTION_STATUS_COMPLETE,
    SELECTION_STATUS_NONE_FIT,
    SELECTION_STATUS_SELECTED,
    TASK_STATUS_IN_PROGRESS,
    TASK_STATUS_PASSED,
    TASK_STATUS_PENDING,
)
from ralphie.models import Backlog, BudgetSelection, Task


def _blocking_reason(task: Task, backlog: Backlog) -> str | None:
    for dependency_id in task.depends_on:
        dependency = backlog.get_task(dependency_id)
        if dependency is None:
            return f"{task.id} depends on unknown task {dependency_id}"
        if dependency.status != TASK_STATUS_PASSED:
            return f"{task.id} blocked: depends on {dependency_id} ({dependency.status})"
    return None


def select_tasks(backlog: Backlog, budget: int = DEFAULT_BUDGET, *, conservative: bool = False) -> BudgetSelection:
    """First-fit selection in declared order, in-progress tasks before pending ones.

    Rejected tasks do not stop the scan, so a later smaller task can still
    use the remaining points. The summed points never exceed ``budget``.

    With ``conservative`` set, no pending task is added after an M or L task:
    the scan stops once one is picked, and pending tasks queued behind an
    in-progress M or L task are skipped.
    """
    if budget < 0:
        raise ValueError(f"budget must be >= 0, got {budget}")

    selected: list[Task] = []
    skipped: list[Task] = []
    blocked: list[Task] = []
    warnings: list[str] = []
    remaining = budget

    for task in backlog.tasks:
        if task.status != TASK_STATUS_IN_PROGRESS:
            continue
        if task.points <= remaining:
            selected.append(task)
            remaining -= task.points
        else:
            skipped.append(task)
            warnings.append(
                f"in-progress task {task.id} ({task.size}={task.points}pts) exceeds remaining budget"
            )

    for task in backlog.tasks:
        if task.status != TASK_STATUS_PENDING:
            continue
        if conservative and selected and selected[-1].size in CONSERVATIVE_STOP_SIZES:
            skipped.append(task)
            continue
        reason = _blocking_reason(task, backlog)
        if reason is not None:
            blocked.append(task)
            warnings.append(reason)
            continue
        if task.points <= remaining:
            selected.append(task)
            remaining -= task.points
            if conservative and task.size in CONSERVATIVE_STOP_SIZES:
                break
        else:
            skipped.append(task)

    if selected:
        status = SELECTION_STATUS_SELECTED
    elif backlog.is_complete:
        status = SELECTION_STATUS_COMPLETE
    else:
        status = SELECTION_STATUS_NONE_FIT

    return BudgetSelection(
        budget=budget,
        selected=tuple(selected),
        total_points=sum(task.points for task in selected),
        remaining_budget=remaining,
        skipped=tuple(skipped),
        blocked=tuple(blocked),
        warnings=tuple(warnings),
        status=status,
    )


def select_all_open(backlog: Backlog) -> BudgetSelection:
    """Greedy mode: every open, unblocked task regardless of points."""
    open_points = sum(task.points for task in backlog.tasks if task.is_open)
    return select_tasks(backlog, budget=open_points)


def _format_task(task: Task) -> str:
    return f"{task.id}({task.size}): {task.title}"


def format_budget_summary(selection: BudgetSelection) -> str:
    lines: list[str] = []
    if not selection.selected:
        lines.append("No tasks selected within budget.")
    else:
        lines.append(f"Selected {len(selection.selected)} task(s) ({selection.total_points} points):")
        for task in selection.selected:
            lines.append(f"  {task.id}: {task.title} [{task.size}] {task.status}")
    if selection.remaining_budget > 0 and selection.skipped:
        lines.append(f"Remaining budget: {selection.remaining_budget} points")
    for warning in selection.warnings:
        lines.append(f"warning: {warning}")
    return "\n".join(lines)


def format_task_context(
    backlog: Backlog,
    budget: int = DEFAULT_BUDGET,
    *,
    include_verify: bool = True,
    conservative: bool = False,
) -> str:
    selection = select_tasks(backlog, budget, conservative=conservative)
    if selection.status == SELECTION_STATUS_COMPLETE:
        return "## Task Selection\n\nAll tasks completed."
    if selection.status == SELECTION_STATUS_NONE_FIT:
        open_points = sorted(task.points for task in backlog.tasks if task.is_open)
        if selection.blocked and len(selection.blocked) == len(open_points):
            detail = "every open task is blocked by an unfinished dependency."
        else:
            smallest = open_points[0] if open_points else "unknown"
            detail = f"smallest open task requires {smallest} points."
        return f"## Task Selection\n\nWarning: no tasks fit in budget {budget}; {detail}"

    lines = [
        "## Task Selection",
        "",
        f"Selected tasks ({selection.total_points} points, budget {budget}):",
    ]
    for task in selection.selected:
        lines.append(f"- {_format_task(task)}")
        if include_verify and task.verify_command:
            lines.append(f"  Verify: `{task.verify_command}`")
    if selection.remaining_budget > 0 and selection.skipped:
        lines.append("")
        lines.append(f"Remaining budget: {selection.remaining_budget} points")
    return "\n".join(lines)
