from __future__ import annotations

from pathlib import Path

import pytest

from ralphie.backlog import parse_backlog
from ralphie.constants import PROMPT_TOKEN_PATTERN
from ralphie.models import ConfigError
from ralphie.prompts import DEFAULT_PROMPT_TEMPLATE, GREEDY_PROMPT_TEMPLATE, render_prompt

SPEC_TEXT = """# Demo

Goal: Ship it.

## Tasks

### T001: Small thing
- Status: pending
- Size: S

**Verify:** `pytest -q`

### T002: Large thing
- Status: pending
- Size: L
"""


@pytest.mark.parametrize("template", [DEFAULT_PROMPT_TEMPLATE, GREEDY_PROMPT_TEMPLATE])
def test_builtin_templates_are_ascii_and_use_known_tokens(template: str) -> None:
    template.encode("ascii")
    tokens = {match.group(1) for match in PROMPT_TOKEN_PATTERN.finditer(template)}
    assert tokens == {"spec_path", "task_context"}


def test_render_prompt_inlines_selection(tmp_path: Path) -> None:
    spec_path = tmp_path / ".ralphie" / "specs" / "active" / "demo.md"
    backlog = parse_backlog(SPEC_TEXT)

    prompt = render_prompt(tmp_path, spec_path=spec_path, backlog=backlog, budget=2)

    assert "{{" not in prompt
    assert "Complete ONE task from .ralphie/specs/active/demo.md per iteration." in prompt
    assert "Selected tasks (1 points, budget 2):" in prompt
    assert "- T001(S): Small thing" in prompt
    assert "  Verify: `pytest -q`" in prompt
    assert "T002(L)" not in prompt
    assert prompt.endswith("Remaining budget: 1 points\n")


def test_greedy_prompt_selects_every_open_task(tmp_path: Path) -> None:
    backlog = parse_backlog(SPEC_TEXT)

    prompt = render_prompt(tmp_path, spec_path=tmp_path / "spec.md", backlog=backlog, budget=1, greedy=True)

    assert "GREEDY MODE" in prompt
    assert "Selected tasks (5 points, budget 5):" in prompt
    assert "- T002(L): Large thing" in prompt


def test_spec_outside_repo_keeps_absolute_path(tmp_path: Path) -> None:
    outside = tmp_path.parent / "elsewhere" / "spec.md"
    prompt = render_prompt(tmp_path / "repo", spec_path=outside, backlog=parse_backlog(SPEC_TEXT), budget=4)
    assert str(outside) in prompt


def test_prompt_override_file_is_used(tmp_path: Path) -> None:
    override = tmp_path / ".ralphie" / "prompt.md"
    override.parent.mkdir(parents=True)
    override.write_text("# {{ spec_title }}\nGoal: {{goal}} (budget {{budget}})\n\n{{task_context}}\n", encoding="utf-8")

    prompt = render_prompt(tmp_path, spec_path=tmp_path / "spec.md", backlog=parse_backlog(SPEC_TEXT), budget=4)

    assert prompt.startswith("# Demo\nGoal: Ship it. (budget 4)\n\n## Task Selection")


def test_unknown_token_in_override_is_rejected(tmp_path: Path) -> None:
    override = tmp_path / ".ralphie" / "prompt.md"
    override.parent.mkdir(parents=True)
    override.write_text("{{task_context}} {{stage}} {{run_id}}\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="unknown tokens: run_id, stage"):
        render_prompt(tmp_path, spec_path=tmp_path / "spec.md", backlog=parse_backlog(SPEC_TEXT), budget=4)
