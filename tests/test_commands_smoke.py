from __future__ import annotations

import json
from pathlib import Path

import pytest

import ralphie.commands as commands_module

SPEC_TEXT = """# Smoke

Goal: Check the CLI.

## Tasks

### T001: Done already
- Status: passed
- Size: S

### T002: Still open
- Status: pending
- Size: M
"""


def _write_spec(repo: Path, text: str = SPEC_TEXT) -> Path:
    spec_path = repo / ".ralphie" / "specs" / "active" / "smoke.md"
    spec_path.parent.mkdir(parents=True, exist_ok=True)
    spec_path.write_text(text, encoding="utf-8")
    return spec_path


def test_no_subcommand_prints_help(capsys: pytest.CaptureFixture[str]) -> None:
    assert commands_module.main([]) == 2
    assert "usage:" in capsys.readouterr().out


def test_status_reports_progress_and_next_selection(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_spec(tmp_path)

    assert commands_module.main(["status", "--repo", str(tmp_path)]) == 0

    out = capsys.readouterr().out
    assert "title: Smoke" in out
    assert "progress: 1/2 tasks (50%)" in out
    assert "points: 1 passed, 0 failed, 2 open of 3" in out
    assert "T002: Still open [M] pending" in out


def test_status_shows_last_run_summary(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_spec(tmp_path)
    summary = {"reason": "no progress in 3 consecutive iterations", "exit_code": 1, "iterations": 3, "ended_at": "x"}
    (tmp_path / ".ralphie" / "run_summary.json").write_text(json.dumps(summary), encoding="utf-8")

    assert commands_module.main(["status", "--repo", str(tmp_path)]) == 0

    assert "last run: no progress in 3 consecutive iterations exit_code=1 iterations=3" in capsys.readouterr().out


def test_status_without_spec_fails(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert commands_module.main(["status", "--repo", str(tmp_path)]) == 1
    assert "ralphie status: ERROR no spec found" in capsys.readouterr().err


def test_validate_strict_fails_on_warnings(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_spec(tmp_path, SPEC_TEXT.replace("T002", "T005"))

    assert commands_module.main(["validate", "--repo", str(tmp_path)]) == 0
    assert commands_module.main(["validate", "--repo", str(tmp_path), "--strict"]) == 1
    assert "expected T002, found T005" in capsys.readouterr().out


def test_validate_reports_malformed_spec(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_spec(tmp_path, SPEC_TEXT.replace("- Size: M", "- Size: XXL"))

    assert commands_module.main(["validate", "--repo", str(tmp_path)]) == 1
    assert "invalid size 'XXL'" in capsys.readouterr().err


def test_run_with_malformed_spec_exits_fatal(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_spec(tmp_path, SPEC_TEXT.replace("- Status: pending", "- Status: someday"))

    assert commands_module.main(["run", "--repo", str(tmp_path), "-n", "1"]) == 3

    captured = capsys.readouterr()
    events = [json.loads(line) for line in captured.out.splitlines()]
    assert events[-1]["event"] == "failed"
    assert "invalid status 'someday'" in events[-1]["error"]
    assert "ralphie run: ERROR" in captured.err


def test_run_with_invalid_config_exits_fatal(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_spec(tmp_path)
    (tmp_path / ".ralphie" / "config.yaml").write_text("budget: lots\n", encoding="utf-8")

    assert commands_module.main(["run", "--repo", str(tmp_path)]) == 3
    assert "schema violation at $.budget" in capsys.readouterr().err


def test_run_on_complete_spec_exits_zero(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_spec(tmp_path, SPEC_TEXT.replace("- Status: pending", "- Status: passed"))

    assert commands_module.main(["run", "--repo", str(tmp_path)]) == 0

    events = [json.loads(line)["event"] for line in capsys.readouterr().out.splitlines()]
    assert events == ["started", "complete"]


def test_cost_command(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert commands_module.main(["cost", "--repo", str(tmp_path), "1000", "500", "--model", "sonnet"]) == 0
    assert capsys.readouterr().out.strip() == "tokens: 1,000 in / 500 out | cost: $0.0105"


def test_status_conservative_preview(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_spec(tmp_path, SPEC_TEXT + "\n### T003: Small follow-up\n- Status: pending\n- Size: S\n")

    assert commands_module.main(["status", "--repo", str(tmp_path), "--conservative"]) == 0

    out = capsys.readouterr().out
    assert "next selection (budget 4 conservative):" in out
    assert "T002: Still open [M] pending" in out
    assert "T003: Small follow-up [S] pending" not in out


def test_run_rejects_zero_iterations(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_spec(tmp_path)

    assert commands_module.main(["run", "--repo", str(tmp_path), "--iterations", "0"]) == 3
    assert "--iterations must be >= 1, got 0" in capsys.readouterr().err

    assert commands_module.main(["run", "--repo", str(tmp_path), "--stuck-threshold", "-1"]) == 3
    assert "--stuck-threshold must be >= 1, got -1" in capsys.readouterr().err


def test_archive_command(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    spec_path = _write_spec(tmp_path)

    assert commands_module.main(["archive", "--repo", str(tmp_path)]) == 1
    assert "open tasks T002" in capsys.readouterr().err
    assert spec_path.exists()

    _write_spec(tmp_path, SPEC_TEXT.replace("- Status: pending", "- Status: failed"))
    assert commands_module.main(["archive", "--repo", str(tmp_path)]) == 0

    out = capsys.readouterr().out
    assert out.startswith("archived: ")
    assert out.strip().endswith("-smoke.md")
    assert not spec_path.exists()
    archived = list((tmp_path / ".ralphie" / "specs" / "completed").glob("*-smoke.md"))
    assert len(archived) == 1
    assert "**Completed:**" in archived[0].read_text(encoding="utf-8")
