from __future__ import annotations

from ralphie.activity import (
    ActivityStateMachine,
    PhaseSnapshot,
    build_failure_context,
    derive_phase,
    format_tool_input,
    is_git_commit_command,
    parse_git_commit_output,
    tool_category,
    tool_display_name,
)
from ralphie.models import (
    CommitItem,
    ResultEvent,
    TextEvent,
    ToolCompleteItem,
    ToolEndEvent,
    ToolStartEvent,
)


def _start(machine: ActivityStateMachine, tool_id: str, name: str, **tool_input: object) -> None:
    machine.handle(ToolStartEvent(correlation_id=tool_id, tool_name=name, input=dict(tool_input)))


def _end(machine: ActivityStateMachine, tool_id: str, output: str = "", is_error: bool = False) -> list:
    return machine.handle(ToolEndEvent(correlation_id=tool_id, output=output, is_error=is_error))


def test_derive_phase_priority() -> None:
    assert derive_phase(PhaseSnapshot()) == "idle"
    assert derive_phase(PhaseSnapshot(text_seen=True)) == "thinking"
    assert derive_phase(PhaseSnapshot(active_categories=frozenset({"read"}))) == "reading"
    assert derive_phase(PhaseSnapshot(active_categories=frozenset({"read", "command"}))) == "running"
    assert derive_phase(PhaseSnapshot(active_categories=frozenset({"command", "write"}))) == "editing"
    assert derive_phase(PhaseSnapshot(active_categories=frozenset({"write"}), result_seen=True)) == "done"


def test_meta_tools_never_raise_phase_above_thinking() -> None:
    assert derive_phase(PhaseSnapshot(active_categories=frozenset({"meta"}))) == "idle"
    assert derive_phase(PhaseSnapshot(active_categories=frozenset({"meta"}), tools_seen=True)) == "thinking"


def test_phase_follows_events() -> None:
    machine = ActivityStateMachine(clock=lambda: 0.0)
    assert machine.phase == "idle"
    machine.handle(TextEvent(text="Looking around"))
    assert machine.phase == "thinking"
    _start(machine, "r1", "Read", file_path="a.py")
    assert machine.phase == "reading"
    _start(machine, "w1", "Edit", file_path="b.py")
    assert machine.phase == "editing"
    _end(machine, "w1")
    assert machine.phase == "reading"
    _end(machine, "r1")
    assert machine.phase == "thinking"
    machine.handle(ResultEvent())
    assert machine.phase == "done"


def test_same_category_tools_share_one_group() -> None:
    machine = ActivityStateMachine(clock=lambda: 0.0)
    for index in range(4):
        _start(machine, f"r{index}", "Read", file_path=f"f{index}.py")
        _end(machine, f"r{index}")

    assert len(machine.groups) == 1
    assert len(machine.groups[0].tools) == 4
    assert machine.stats.reads == 4


def test_category_change_opens_new_group() -> None:
    machine = ActivityStateMachine(clock=lambda: 0.0)
    _start(machine, "r1", "Read", file_path="a.py")
    _end(machine, "r1")
    _start(machine, "w1", "Write", file_path="b.py")
    _end(machine, "w1")
    _start(machine, "r2", "Grep", pattern="TODO")
    _end(machine, "r2")

    assert [group.category for group in machine.groups] == ["read", "write", "read"]
    assert [len(group.tools) for group in machine.groups] == [1, 1, 1]


def test_group_durations_accumulate() -> None:
    ticks = iter([0.0, 1.0, 2.0, 2.5, 4.0, 5.0, 6.0, 7.0])
    machine = ActivityStateMachine(clock=lambda: next(ticks))
    _start(machine, "r1", "Read", file_path="a.py")
    _end(machine, "r1")
    _start(machine, "r2", "Read", file_path="b.py")
    _end(machine, "r2")

    group = machine.groups[0]
    assert [tool.duration_ms for tool in group.tools] == [1000, 1500]
    assert group.total_duration_ms == 2500


def test_orphaned_tool_end_is_logged_without_duration() -> None:
    machine = ActivityStateMachine(clock=lambda: 0.0)

    appended = machine.handle(ToolEndEvent(correlation_id="missing", output="?", is_error=False))

    assert len(appended) == 1
    item = appended[0]
    assert isinstance(item, ToolCompleteItem)
    assert item.duration_ms is None
    assert item.tool_name == "unknown"
    assert machine.groups == []
    assert machine.stats.tools_orphaned == 1
    assert machine.stats.tools_completed == 0


def test_git_commit_is_detected_from_bash_output() -> None:
    machine = ActivityStateMachine(clock=lambda: 0.0)
    _start(machine, "b1", "Bash", command='git add -A && git commit -m "feat: T001 add parser"')
    appended = _end(machine, "b1", output="[main 1a2b3c4] feat: T001 add parser\n 2 files changed, 10 insertions(+)")

    assert isinstance(appended[-1], CommitItem)
    assert machine.last_commit is not None
    assert machine.last_commit.hash == "1a2b3c4"
    assert machine.last_commit.message == "feat: T001 add parser"
    assert machine.stats.commands == 1


def test_commit_not_detected_for_failed_or_unrelated_commands() -> None:
    machine = ActivityStateMachine(clock=lambda: 0.0)
    _start(machine, "b1", "Bash", command="git commit -m wip")
    _end(machine, "b1", output="[main 1a2b3c4] wip", is_error=True)
    _start(machine, "b2", "Bash", command="echo '[main 1a2b3c4] wip'")
    _end(machine, "b2", output="[main 1a2b3c4] wip")

    assert machine.last_commit is None
    assert not any(isinstance(item, CommitItem) for item in machine.activity)


def test_commit_helpers() -> None:
    assert is_git_commit_command("git commit -m 'x'")
    assert is_git_commit_command("git -C repo commit --amend")
    assert not is_git_commit_command("git status")
    root_commit = parse_git_commit_output("[feature/x (root-commit) abcdef1234] initial import")
    assert root_commit is not None
    assert root_commit.hash == "abcdef1234"
    assert root_commit.message == "initial import"
    assert parse_git_commit_output("nothing to commit") is None


def test_activity_log_is_bounded() -> None:
    machine = ActivityStateMachine(clock=lambda: 0.0, log_limit=50)
    for index in range(60):
        machine.handle(TextEvent(text=f"thought {index}"))

    assert len(machine.activity) == 50
    assert machine.activity[0].text == "thought 10"
    assert machine.task_text == "thought 0"


def test_tool_classification_and_display_names() -> None:
    assert tool_category("Read") == "read"
    assert tool_category("Bash") == "command"
    assert tool_category("SomethingNew") == "meta"
    assert tool_display_name("Read", {"file_path": "/repo/src/app.py"}) == "app.py"
    assert tool_display_name("Bash", {"command": "npm test --silent"}) == "npm"
    assert tool_display_name("Grep", {"pattern": "a" * 30}) == "a" * 20 + "..."
    assert tool_display_name("Glob", {"pattern": "**/*.py"}) == "**/*.py"
    assert tool_display_name("TodoWrite", {"todos": []}) == "TodoWrite"


def test_coalesced_summary() -> None:
    machine = ActivityStateMachine(clock=lambda: 0.0)
    assert machine.coalesced_summary() == "Waiting..."
    _start(machine, "r1", "Read", file_path="a.py")
    _start(machine, "r2", "Read", file_path="b.py")
    _start(machine, "c1", "Bash", command="pytest -q")
    assert machine.coalesced_summary() == "Reading a.py, b.py • Running pytest"
    for index in range(3, 6):
        _start(machine, f"r{index}", "Read", file_path=f"f{index}.py")
    assert machine.coalesced_summary().startswith("Reading 5 items")
    machine.handle(ResultEvent())
    assert machine.coalesced_summary() == "Done (0 tools)"


def test_failure_context_prefers_errored_tool() -> None:
    machine = ActivityStateMachine(clock=lambda: 0.0)
    _start(machine, "c1", "Bash", command="pytest -q")
    _end(machine, "c1", output="E" * 600, is_error=True)
    _start(machine, "r1", "Read", file_path="a.py")
    _end(machine, "r1", output="ok")

    context = build_failure_context(machine.groups, machine.activity)

    assert context["last_tool_name"] == "Bash"
    assert context["last_tool_input"] == "command: pytest -q"
    assert len(context["last_tool_output"]) == 500
    assert len(context["recent_activity"]) == 4
    assert context["recent_activity"][-1] == "done a.py (0.0s)"


def test_failure_context_without_tools() -> None:
    context = build_failure_context([], [])
    assert context == {
        "last_tool_name": None,
        "last_tool_input": None,
        "last_tool_output": None,
        "recent_activity": [],
    }


def test_format_tool_input_fallbacks() -> None:
    assert format_tool_input({"file_path": "x.py"}) == "file: x.py"
    assert format_tool_input({"pattern": "foo"}) == "pattern: foo"
    assert format_tool_input({"prompt": "p" * 150}) == "prompt: " + "p" * 100
    assert format_tool_input({"a": 1}) == '{"a": 1}'
