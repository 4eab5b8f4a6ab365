from __future__ import annotations

import json
import sys
import textwrap
from pathlib import Path
from typing import Any

import pytest

from ralphie.models import AgentInvocationError, AgentRunOptions, ResultEvent, TokenUsage, ToolEndEvent
from ralphie.runners import build_agent_argv, run_agent


def _fake_agent(script: str, **overrides: Any) -> AgentRunOptions:
    values: dict[str, Any] = {
        "harness": "claude",
        "command": (sys.executable, "-c", textwrap.dedent(script)),
        "idle_timeout_seconds": 0.0,
    }
    values.update(overrides)
    return AgentRunOptions(**values)


_STREAMING_AGENT = """
import json, sys
prompt = sys.stdin.read()
records = [
    {"type": "system", "subtype": "init", "session_id": "s1", "model": "claude-sonnet-4"},
    {"type": "assistant", "message": {"content": [
        {"type": "text", "text": "prompt had %d chars" % len(prompt)},
        {"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "ls"}},
    ]}},
    {"type": "user", "message": {"content": [{"type": "tool_result", "tool_use_id": "t1", "content": "a.py"}]}},
    {"type": "result", "subtype": "success", "is_error": False, "duration_ms": 321,
     "usage": {"input_tokens": 1000, "output_tokens": 100}, "result": "done"},
]
for record in records:
    sys.stdout.write(json.dumps(record) + "\\n")
    sys.stdout.flush()
"""


def test_build_agent_argv_presets() -> None:
    claude = build_agent_argv(AgentRunOptions(harness="claude", model="opus"))
    assert claude[:2] == ["claude", "-p"]
    assert claude[-2:] == ["--model", "opus"]

    codex = build_agent_argv(AgentRunOptions(harness="codex", model="o1"))
    assert codex == ["codex", "exec", "--json", "--full-auto", "--model", "o1", "-"]

    custom = build_agent_argv(AgentRunOptions(harness="claude", model="opus", command=("my-agent", "--x")))
    assert custom == ["my-agent", "--x"]


def test_run_agent_streams_events_and_reports_success(tmp_path: Path) -> None:
    events: list[Any] = []

    result = run_agent("do the work", tmp_path, events.append, options=_fake_agent(_STREAMING_AGENT))

    assert result.success is True
    assert result.exit_code == 0
    assert result.duration_ms == 321
    assert result.output == "done"
    assert result.usage == TokenUsage(input_tokens=1000, output_tokens=100)
    assert result.cost_usd == pytest.approx(0.0045)
    assert [event.kind for event in events] == ["init", "text", "tool_start", "tool_end", "result"]
    assert events[1].text == "prompt had 11 chars"
    assert isinstance(events[3], ToolEndEvent)
    assert events[3].tool_name == "Bash"
    assert isinstance(events[-1], ResultEvent)
    log_text = (tmp_path / ".ralphie" / "logs" / "ralphie.log").read_text(encoding="utf-8")
    assert "agent start harness=claude" in log_text
    assert "agent exit code=0 success=True" in log_text


def test_run_agent_saves_raw_stream(tmp_path: Path) -> None:
    options = _fake_agent(_STREAMING_AGENT, save_jsonl="captures/run.jsonl")

    run_agent("x", tmp_path, lambda event: None, options=options)

    lines = (tmp_path / "captures" / "run.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 4
    assert json.loads(lines[-1])["type"] == "result"


def test_invalid_utf8_output_does_not_abort_the_run(tmp_path: Path) -> None:
    script = """
import json, sys
sys.stdin.read()
sys.stdout.buffer.write(b"\\xff\\xfe garbage\\n")
sys.stdout.buffer.write(json.dumps({"type": "result", "is_error": False, "result": "ok"}).encode() + b"\\n")
sys.stdout.flush()
"""
    events: list[Any] = []

    result = run_agent("x", tmp_path, events.append, options=_fake_agent(script))

    assert result.success is True
    assert result.output == "ok"
    assert [event.kind for event in events] == ["result"]
    log_text = (tmp_path / ".ralphie" / "logs" / "ralphie.log").read_text(encoding="utf-8")
    assert "agent stream decode error" in log_text


def test_unwritable_capture_path_fails_before_spawning(tmp_path: Path) -> None:
    (tmp_path / "captures").mkdir()
    script = """
import pathlib, sys
pathlib.Path("spawned.txt").write_text("yes")
sys.stdin.read()
"""
    options = _fake_agent(script, save_jsonl="captures")

    with pytest.raises(AgentInvocationError, match="cannot open stream capture file"):
        run_agent("x", tmp_path, lambda event: None, options=options)

    assert not (tmp_path / "spawned.txt").exists()
    log_text = (tmp_path / ".ralphie" / "logs" / "ralphie.log").read_text(encoding="utf-8")
    assert "agent stream capture unavailable" in log_text
    assert "agent start" not in log_text


def test_missing_result_is_a_soft_failure(tmp_path: Path) -> None:
    script = """
import sys
sys.stdin.read()
print('not json')
sys.stderr.write('boom: model overloaded\\n')
sys.exit(2)
"""
    result = run_agent("x", tmp_path, lambda event: None, options=_fake_agent(script))

    assert result.success is False
    assert result.exit_code == 2
    assert result.error_message == "agent exited with code 2 without a result: boom: model overloaded"
    log_text = (tmp_path / ".ralphie" / "logs" / "ralphie.log").read_text(encoding="utf-8")
    assert "agent stream decode error" in log_text


def test_error_result_is_a_soft_failure(tmp_path: Path) -> None:
    script = """
import json, sys
sys.stdin.read()
print(json.dumps({"type": "result", "subtype": "error_max_turns", "is_error": True, "result": "hit max turns"}))
"""
    result = run_agent("x", tmp_path, lambda event: None, options=_fake_agent(script))

    assert result.success is False
    assert result.error_message == "hit max turns"


def test_nonzero_exit_after_result_is_a_soft_failure(tmp_path: Path) -> None:
    script = """
import json, sys
sys.stdin.read()
print(json.dumps({"type": "result", "is_error": False, "result": "ok", "total_cost_usd": 0.5}))
sys.exit(1)
"""
    result = run_agent("x", tmp_path, lambda event: None, options=_fake_agent(script))

    assert result.success is False
    assert result.error_message == "agent exited with code 1"
    assert result.cost_usd == pytest.approx(0.5)


def test_idle_agent_is_stopped(tmp_path: Path) -> None:
    script = """
import sys, time
sys.stdin.read()
time.sleep(30)
"""
    result = run_agent("x", tmp_path, lambda event: None, options=_fake_agent(script, idle_timeout_seconds=0.5))

    assert result.success is False
    assert result.error_message == "agent produced no output for 0.5s and was stopped"


def test_spawn_failure_raises(tmp_path: Path) -> None:
    options = AgentRunOptions(harness="claude", command=(str(tmp_path / "no-such-agent"),))

    with pytest.raises(AgentInvocationError, match="could not start agent"):
        run_agent("x", tmp_path, lambda event: None, options=options)
