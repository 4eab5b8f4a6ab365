"""Ralphie utility functions — logging, json io and git helpers."""

from __future__ import annotations

import json
import re
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ralphie.constants import (
    ITERATION_LEDGER_RELATIVE,
    LOG_RELATIVE,
    RUN_SUMMARY_RELATIVE,
    TODO_STUB_PATTERNS,
    TODO_STUB_SUFFIXES,
)
from ralphie.models import IterationResult


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


def _utc_now_ms() -> str:
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


# ---------------------------------------------------------------------------
# JSON I/O helpers
# ---------------------------------------------------------------------------


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")


def _load_json_if_exists(path: Path) -> Any:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def _compact_log_text(text: str, limit: int = 240) -> str:
    compact = " ".join(text.strip().split())
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?i)\b(api[_-]?key|token|secret|password)\b\s*[:=]\s*([^\s]+)"),
    re.compile(r"(?i)\b(authorization:\s*bearer)\s+([^\s]+)"),
    re.compile(r"\bsk-ant-[A-Za-z0-9_-]{10,}\b"),
    re.compile(r"\bsk-[A-Za-z0-9_-]{10,}\b"),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
)


def _redact_sensitive_text(text: str) -> str:
    redacted = str(text)
    for pattern in SECRET_PATTERNS:
        redacted = pattern.sub(
            lambda match: f"{match.group(1)}=<redacted>" if match.groups() else "<redacted>",
            redacted,
        )
    return redacted


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def _append_log(repo_root: Path, message: str) -> None:
    log_path = repo_root / LOG_RELATIVE
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(f"{_utc_now()} {message}\n")


# ---------------------------------------------------------------------------
# Run artefacts
# ---------------------------------------------------------------------------


def _append_iteration_ledger(repo_root: Path, result: IterationResult) -> None:
    ledger_path = repo_root / ITERATION_LEDGER_RELATIVE
    ledger_path.parent.mkdir(parents=True, exist_ok=True)
    entry = {"timestamp": _utc_now(), **result.as_dict()}
    with ledger_path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(entry, sort_keys=True) + "\n")


def _write_run_summary(
    repo_root: Path,
    *,
    exit_code: int,
    reason: str,
    results: list[IterationResult],
    started_at: str,
    total_duration_ms: int,
    spec_path: Path | None = None,
) -> Path:
    total_cost = sum(result.cost_usd or 0.0 for result in results)
    payload: dict[str, Any] = {
        "started_at": started_at,
        "ended_at": _utc_now(),
        "exit_code": exit_code,
        "reason": reason,
        "iterations": len(results),
        "failed_iterations": sum(1 for result in results if not result.succeeded),
        "commits": [
            {"iteration": result.iteration, "hash": result.commit_hash, "message": result.commit_message}
            for result in results
            if result.commit_hash
        ],
        "total_duration_ms": total_duration_ms,
        "total_cost_usd": round(total_cost, 6),
    }
    if spec_path is not None:
        payload["spec"] = str(spec_path)
    summary_path = repo_root / RUN_SUMMARY_RELATIVE
    _write_json(summary_path, payload)
    return summary_path


# ---------------------------------------------------------------------------
# Git helpers
# ---------------------------------------------------------------------------


def _run_git(repo_root: Path, args: list[str]) -> subprocess.CompletedProcess[str]:
    command = ["git", "-C", str(repo_root), *args]
    try:
        return subprocess.run(
            command,
            text=True,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError as exc:
        return subprocess.CompletedProcess(command, 127, "", f"git not found: {exc}")
    except OSError as exc:
        return subprocess.CompletedProcess(command, 1, "", str(exc))


def _files_in_last_commit(repo_root: Path) -> list[str]:
    result = _run_git(repo_root, ["diff", "--name-only", "HEAD~1", "HEAD"])
    if result.returncode != 0:
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def _find_todo_stubs(repo_root: Path, paths: list[str]) -> list[str]:
    """Return the subset of ``paths`` whose contents still carry TODO/FIXME stubs."""
    flagged: list[str] = []
    for relative in paths:
        if not relative.endswith(TODO_STUB_SUFFIXES):
            continue
        path = repo_root / relative
        if not path.is_file():
            continue
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        if any(pattern.search(text) for pattern in TODO_STUB_PATTERNS):
            flagged.append(relative)
    return flagged
