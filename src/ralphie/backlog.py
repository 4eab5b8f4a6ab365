"""Task backlog parsing, status persistence, active spec discovery and archiving."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from ralphie.constants import (
    ACTIVE_SPECS_RELATIVE,
    COMPLETED_SPECS_RELATIVE,
    LEGACY_ACTIVE_SPECS_RELATIVE,
    SIZE_POINTS,
    TASK_ID_PATTERN,
    TASK_ID_WIDTH,
    TASK_STATUS_TRANSITIONS,
    TASK_STATUSES,
)
from ralphie.models import (
    Backlog,
    MalformedSpecError,
    SpecArchiveError,
    SpecLocatorError,
    Task,
    TaskTransitionError,
)
from ralphie.utils import _append_log, _utc_now

_NORMALIZE_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"^[-*][ \t]*Status[ \t]*:[ \t]*", re.IGNORECASE | re.MULTILINE), "- Status: "),
    (re.compile(r"^[-*][ \t]*Size[ \t]*:[ \t]*", re.IGNORECASE | re.MULTILINE), "- Size: "),
    (re.compile(r"^(###\s+T\d+)\s*:(\S)", re.MULTILINE), r"\1: \2"),
    (re.compile(r"\*\*\s*Deliverables\s*:\s*\*\*", re.IGNORECASE), "**Deliverables:**"),
    (re.compile(r"\*\*\s*Verify\s*:\s*\*\*", re.IGNORECASE), "**Verify:**"),
)

_CHECKBOX_PATTERN = re.compile(r"^-\s*\[\s*[xX ]?\s*\]\s+", re.MULTILINE)
_TASK_HEADING_PATTERN = re.compile(r"^###\s+T\d+\s*:", re.MULTILINE)
_HEADING_PATTERN = re.compile(r"^(#{1,3})\s+(.*)$")
_TASK_TITLE_PATTERN = re.compile(r"^(T\d+)\s*:\s*(.*)$")
_STATUS_LINE_PATTERN = re.compile(r"^-[ \t]*Status:[ \t]*(\S*)", re.MULTILINE)
_SIZE_LINE_PATTERN = re.compile(r"^-[ \t]*Size:[ \t]*(\S*)", re.MULTILINE)
_DEPENDS_PATTERN = re.compile(r"depends on:\s*(T\d+(?:\s*,\s*T\d+)*)", re.IGNORECASE)
_DELIVERABLES_PATTERN = re.compile(r"\*\*Deliverables:\*\*\s*\n(.*?)(?=\n\*\*|\n---|\Z)", re.DOTALL)
_VERIFY_PATTERN = re.compile(r"\*\*Verify:\*\*\s*(.+)$", re.MULTILINE)
_BULLET_PATTERN = re.compile(r"^\s*[-*]\s+(.+)$")


def normalize_spec_text(text: str) -> str:
    """Repair common formatting slips before parsing."""
    normalized = text.replace("\r\n", "\n")
    for pattern, replacement in _NORMALIZE_RULES:
        normalized = pattern.sub(replacement, normalized)
    return normalized


def _section(text: str, heading: str) -> str:
    lines = text.split("\n")
    collected: list[str] = []
    inside = False
    for line in lines:
        match = _HEADING_PATTERN.match(line)
        if match and len(match.group(1)) <= 2:
            if inside:
                break
            inside = len(match.group(1)) == 2 and match.group(2).strip().lower() == heading.lower()
            continue
        if inside:
            if line.strip() == "---":
                break
            collected.append(line)
    return "\n".join(collected).strip()


def _bullets(text: str) -> tuple[str, ...]:
    items: list[str] = []
    for line in text.split("\n"):
        match = _BULLET_PATTERN.match(line)
        if match:
            items.append(match.group(1).strip())
    return tuple(items)


def _task_blocks(text: str) -> list[tuple[str, list[str]]]:
    """Split the document into (heading, body lines) pairs for task blocks.

    Inside a ``## Tasks`` section every ``###`` heading is a task block, so a
    heading without an id is reported instead of skipped. Documents without
    that section only treat ``### T<number>`` headings as tasks.
    """
    lines = text.split("\n")
    has_tasks_section = any(
        re.match(r"^##\s+Tasks\s*$", line, re.IGNORECASE) for line in lines
    )
    blocks: list[tuple[str, list[str]]] = []
    current: tuple[str, list[str]] | None = None
    in_tasks = not has_tasks_section
    for line in lines:
        match = _HEADING_PATTERN.match(line)
        if match:
            level = len(match.group(1))
            title = match.group(2).strip()
            if level <= 2:
                if current is not None:
                    blocks.append(current)
                    current = None
                if has_tasks_section:
                    in_tasks = level == 2 and title.lower() == "tasks"
                continue
            if level == 3:
                if current is not None:
                    blocks.append(current)
                    current = None
                if in_tasks and (has_tasks_section or _TASK_TITLE_PATTERN.match(title)):
                    current = (title, [])
                continue
        if current is not None:
            current[1].append(line)
    if current is not None:
        blocks.append(current)
    return blocks


def _parse_task(heading: str, body: str) -> Task:
    heading_match = _TASK_TITLE_PATTERN.match(heading)
    if heading_match is None or TASK_ID_PATTERN.match(heading_match.group(1)) is None:
        raise MalformedSpecError(f"task heading '### {heading}' is missing an id like T001")
    task_id = heading_match.group(1)
    title = heading_match.group(2).strip()

    status_match = _STATUS_LINE_PATTERN.search(body)
    if status_match is None or not status_match.group(1):
        raise MalformedSpecError(f"task {task_id} is missing a Status line")
    status = status_match.group(1).strip().lower()
    if status not in TASK_STATUSES:
        raise MalformedSpecError(
            f"task {task_id} has invalid status '{status_match.group(1)}', expected one of {', '.join(TASK_STATUSES)}"
        )

    size_match = _SIZE_LINE_PATTERN.search(body)
    if size_match is None or not size_match.group(1):
        raise MalformedSpecError(f"task {task_id} is missing a Size line")
    size = size_match.group(1).strip().upper()
    if size not in SIZE_POINTS:
        raise MalformedSpecError(
            f"task {task_id} has invalid size '{size_match.group(1)}', expected one of {', '.join(SIZE_POINTS)}"
        )

    deliverables: tuple[str, ...] = ()
    deliverables_match = _DELIVERABLES_PATTERN.search(body)
    if deliverables_match:
        deliverables = _bullets(deliverables_match.group(1))

    verify_command: str | None = None
    verify_match = _VERIFY_PATTERN.search(body)
    if verify_match:
        verify_text = verify_match.group(1).strip()
        code_match = re.search(r"`(.+?)`", verify_text)
        verify_command = code_match.group(1) if code_match else verify_text

    depends_on: tuple[str, ...] = ()
    depends_match = _DEPENDS_PATTERN.search(body)
    if depends_match:
        depends_on = tuple(part.strip() for part in depends_match.group(1).split(","))

    return Task(
        id=task_id,
        title=title,
        status=status,
        size=size,
        points=SIZE_POINTS[size],
        deliverables=deliverables,
        verify_command=verify_command,
        depends_on=depends_on,
    )


def _sequence_warnings(tasks: list[Task]) -> list[str]:
    warnings: list[str] = []
    for expected, task in enumerate(tasks, start=1):
        number = int(TASK_ID_PATTERN.match(task.id).group(1))
        if number != expected:
            expected_id = f"T{expected:0{TASK_ID_WIDTH}d}"
            warnings.append(f"task ids are not sequential: expected {expected_id}, found {task.id}")
            break
    return warnings


def parse_backlog(text: str) -> Backlog:
    normalized = normalize_spec_text(text)
    if _CHECKBOX_PATTERN.search(normalized) and not _TASK_HEADING_PATTERN.search(normalized):
        raise MalformedSpecError(
            "legacy checkbox spec detected; migrate to task blocks like '### T001: Title' with Status and Size lines"
        )

    title_match = re.search(r"^#\s+(.+)$", normalized, re.MULTILINE)
    goal_match = re.search(r"^Goal:\s*(.+)$", normalized, re.MULTILINE)

    tasks: list[Task] = []
    seen: set[str] = set()
    for heading, body_lines in _task_blocks(normalized):
        task = _parse_task(heading, "\n".join(body_lines))
        if task.id in seen:
            raise MalformedSpecError(f"duplicate task id {task.id}")
        seen.add(task.id)
        tasks.append(task)

    return Backlog(
        title=title_match.group(1).strip() if title_match else "Untitled Spec",
        goal=goal_match.group(1).strip() if goal_match else "",
        context=_section(normalized, "Context"),
        tasks=tuple(tasks),
        acceptance_criteria=_bullets(_section(normalized, "Acceptance Criteria")),
        notes=_section(normalized, "Notes"),
        warnings=tuple(_sequence_warnings(tasks)),
    )


def load_backlog(path: Path) -> Backlog:
    if not path.exists():
        raise MalformedSpecError(f"spec file not found: {path}")
    return parse_backlog(path.read_text(encoding="utf-8"))


def backlog_progress(backlog: Backlog) -> dict[str, Any]:
    total = len(backlog.tasks)
    resolved = backlog.resolved_count
    return {
        "resolved": resolved,
        "total": total,
        "percentage": round(resolved * 100 / total) if total else 100,
        "completed_points": backlog.completed_points,
        "total_points": backlog.total_points,
    }


# ---------------------------------------------------------------------------
# Status persistence
# ---------------------------------------------------------------------------


def set_task_status(path: Path, task_id: str, status: str) -> bool:
    """Rewrite the Status line of ``task_id`` in place.

    Returns False when the task already has ``status``.
    """
    if status not in TASK_STATUSES:
        raise TaskTransitionError(f"unknown status '{status}'")
    text = path.read_text(encoding="utf-8")
    backlog = parse_backlog(text)
    task = backlog.get_task(task_id)
    if task is None:
        raise TaskTransitionError(f"task {task_id} not found in {path}")
    if task.status == status:
        return False
    if status not in TASK_STATUS_TRANSITIONS[task.status]:
        raise TaskTransitionError(f"task {task_id} cannot move from {task.status} to {status}")

    lines = text.split("\n")
    heading_pattern = re.compile(rf"^###\s+{re.escape(task_id)}\s*:")
    status_pattern = re.compile(r"^([ \t]*)[-*][ \t]*Status[ \t]*:[ \t]*\S*", re.IGNORECASE)
    inside = False
    for index, line in enumerate(lines):
        if heading_pattern.match(line):
            inside = True
            continue
        if inside and _HEADING_PATTERN.match(line):
            break
        if inside:
            match = status_pattern.match(line)
            if match:
                lines[index] = f"{match.group(1)}- Status: {status}{line[match.end():]}"
                path.write_text("\n".join(lines), encoding="utf-8")
                return True
    raise TaskTransitionError(f"could not find the Status line of task {task_id} in {path}")


# ---------------------------------------------------------------------------
# Active spec discovery
# ---------------------------------------------------------------------------


def _markdown_files(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(
        path for path in directory.iterdir() if path.is_file() and path.suffix == ".md" and not path.name.startswith(".")
    )


def locate_active_spec(repo_root: Path) -> Path:
    for relative in (ACTIVE_SPECS_RELATIVE, LEGACY_ACTIVE_SPECS_RELATIVE):
        directory = repo_root / relative
        candidates = _markdown_files(directory)
        if len(candidates) == 1:
            return candidates[0]
        if len(candidates) > 1:
            names = ", ".join(path.name for path in candidates)
            raise SpecLocatorError(
                f"multiple specs found in {directory}: {names}; only one active spec is allowed",
                code="MULTIPLE_SPECS",
            )
    raise SpecLocatorError(
        f"no spec found; create one in {repo_root / ACTIVE_SPECS_RELATIVE}",
        code="NO_SPEC",
    )


# ---------------------------------------------------------------------------
# Archiving
# ---------------------------------------------------------------------------

_ARCHIVE_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}-")
_ARCHIVE_NAME_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]")
_NOTES_HEADING = "## Notes"


def _archived_name(spec_path: Path, date: str) -> str:
    clean = _ARCHIVE_DATE_PREFIX.sub("", spec_path.stem, count=1)
    clean = _ARCHIVE_NAME_UNSAFE.sub("-", clean).lower()
    return f"{date}-{clean}.md"


def _stamp_completion(text: str, timestamp: str) -> str:
    stamp = f"\n\n---\n**Completed:** {timestamp}\n"
    if _NOTES_HEADING in text:
        return text.replace(
            _NOTES_HEADING,
            f"## Completion\n\n**Archived:** {timestamp}{stamp}\n{_NOTES_HEADING}",
            1,
        )
    return text + stamp


def archive_spec(repo_root: Path, spec_path: Path, *, timestamp: str | None = None) -> Path:
    """Move a finished spec to ``.ralphie/specs/completed/`` with a completion stamp.

    The archived file is named ``<date>-<stem>.md``, dropping any date prefix
    the original name already had. Every task must be passed or failed.
    """
    if not spec_path.is_file():
        raise SpecArchiveError(f"spec file not found: {spec_path}")
    text = spec_path.read_text(encoding="utf-8")
    backlog = parse_backlog(text)
    open_ids = [task.id for task in backlog.tasks if task.is_open]
    if open_ids:
        raise SpecArchiveError(f"cannot archive {spec_path}: open tasks {', '.join(open_ids)}")

    stamp_time = timestamp or _utc_now()
    completed_dir = repo_root / COMPLETED_SPECS_RELATIVE
    completed_dir.mkdir(parents=True, exist_ok=True)
    archived_path = completed_dir / _archived_name(spec_path, stamp_time[:10])
    if archived_path.exists() and archived_path.resolve() != spec_path.resolve():
        raise SpecArchiveError(f"archive target already exists: {archived_path}")

    archived_path.write_text(_stamp_completion(text, stamp_time), encoding="utf-8")
    if archived_path.resolve() != spec_path.resolve():
        spec_path.unlink()
    _append_log(repo_root, f"spec archived {spec_path.name} -> {archived_path}")
    return archived_path
