"""Iteration prompt rendering."""

from __future__ import annotations

from pathlib import Path

from ralphie.budget import format_task_context, select_all_open
from ralphie.constants import (
    GREEDY_PROMPT_OVERRIDE_RELATIVE,
    PROMPT_OVERRIDE_RELATIVE,
    PROMPT_TOKEN_PATTERN,
)
from ralphie.models import Backlog, ConfigError

_TASK_FORMAT = """\
### T001: Task title
- Status: pending | in_progress | passed | failed
- Size: S | M | L

**Deliverables:**
- What to build (outcomes)

**Verify:** `command that proves the task works`"""

DEFAULT_PROMPT_TEMPLATE = f"""\
You are Ralphie, an autonomous coding assistant.

## Your Task
Complete ONE task from {{{{spec_path}}}} per iteration. Tasks are identified by IDs like T001, T002.

## The Loop
1. Read the spec and pick the next task from the selection below.
2. Update the task's Status line: `- Status: pending` -> `- Status: in_progress`
3. Implement the task with tests.
4. Run the task's Verify command.
5. Run the full test suite.
6. Update the task's Status line: `- Status: in_progress` -> `- Status: passed`
   (or `failed` when it cannot be completed).
7. Commit with the task ID in the message (e.g. "feat: T001 add user validation").

## Task Format in Spec
{_TASK_FORMAT}

## Rules
- Run the Verify command BEFORE marking a task passed.
- Commit AFTER each task.
- No TODO/FIXME stubs in completed tasks.

{{{{task_context}}}}
"""

GREEDY_PROMPT_TEMPLATE = f"""\
You are Ralphie, an autonomous coding assistant in GREEDY MODE.

## Your Task
Complete AS MANY tasks as possible from {{{{spec_path}}}} before your context fills up.

## The Loop (repeat until done)
1. Pick the next task from the selection below.
2. Update its Status line to `in_progress`.
3. Implement the task with tests and run its Verify command.
4. Update its Status line to `passed` (or `failed`).
5. Commit with the task ID in the message.
6. CONTINUE to the next task.

## Task Format in Spec
{_TASK_FORMAT}

## Rules
- Commit after EACH task.
- Run the Verify command BEFORE marking a task passed.
- No TODO/FIXME stubs in completed tasks.

{{{{task_context}}}}
"""


def _load_prompt_template(repo_root: Path, *, greedy: bool) -> str:
    override = repo_root / (GREEDY_PROMPT_OVERRIDE_RELATIVE if greedy else PROMPT_OVERRIDE_RELATIVE)
    if override.exists():
        return override.read_text(encoding="utf-8")
    return GREEDY_PROMPT_TEMPLATE if greedy else DEFAULT_PROMPT_TEMPLATE


def render_prompt(
    repo_root: Path,
    *,
    spec_path: Path,
    backlog: Backlog,
    budget: int,
    greedy: bool = False,
    conservative: bool = False,
) -> str:
    if greedy:
        budget = select_all_open(backlog).budget
    try:
        display_path = spec_path.relative_to(repo_root)
    except ValueError:
        display_path = spec_path
    values = {
        "spec_path": str(display_path),
        "spec_title": backlog.title,
        "goal": backlog.goal,
        "task_context": format_task_context(backlog, budget, conservative=conservative),
        "budget": str(budget),
    }
    template = _load_prompt_template(repo_root, greedy=greedy)

    unresolved = sorted(
        {match.group(1) for match in PROMPT_TOKEN_PATTERN.finditer(template) if match.group(1) not in values}
    )
    if unresolved:
        raise ConfigError(f"prompt template has unknown tokens: {', '.join(unresolved)}")
    return PROMPT_TOKEN_PATTERN.sub(lambda match: values[match.group(1)], template).strip() + "\n"
