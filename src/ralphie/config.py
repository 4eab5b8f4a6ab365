"""Loading and validation of .ralphie/config.yaml plus CLI/env overrides."""

from __future__ import annotations

import json
import os
import shlex
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml
from jsonschema import Draft202012Validator

from ralphie.constants import (
    CONFIG_RELATIVE,
    CONFIG_SCHEMA_PATH,
    DEFAULT_BUDGET,
    DEFAULT_HARNESS,
    DEFAULT_IDLE_TIMEOUT_SECONDS,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_STUCK_THRESHOLD,
    HARNESSES,
    MAX_ALL_ITERATIONS,
)
from ralphie.models import ConfigError, RunConfig, _coerce_bool, _coerce_float, _coerce_positive_int

_SHELL_META_CHARS = set("|&;<>()$`")


def _format_error_path(error_path: Iterable[Any]) -> str:
    pieces = ["$"]
    for part in error_path:
        if isinstance(part, int):
            pieces.append(f"[{part}]")
        else:
            pieces.append(f".{part}")
    return "".join(pieces)


def _load_config_schema() -> dict[str, Any]:
    return json.loads(CONFIG_SCHEMA_PATH.read_text(encoding="utf-8"))


def _validate_config_document(payload: dict[str, Any], *, path: Path) -> list[str]:
    validator = Draft202012Validator(_load_config_schema())
    failures: list[str] = []
    for error in sorted(validator.iter_errors(payload), key=lambda item: _format_error_path(item.path)):
        failures.append(f"{path} schema violation at {_format_error_path(error.path)}: {error.message}")
    return failures


def _load_config_document(repo_root: Path) -> dict[str, Any]:
    config_path = repo_root / CONFIG_RELATIVE
    if not config_path.exists():
        return {}
    try:
        loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"{config_path} is not valid YAML: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"{config_path} must contain a mapping")
    failures = _validate_config_document(loaded, path=config_path)
    if failures:
        raise ConfigError("; ".join(failures))
    return loaded


def _parse_agent_command(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        if any(char in _SHELL_META_CHARS for char in value):
            raise ConfigError(
                f"agent.command must not use shell syntax ({value!r}); list the argv instead"
            )
        try:
            argv = shlex.split(value)
        except ValueError as exc:
            raise ConfigError(f"agent.command could not be parsed: {exc}") from exc
    else:
        argv = [str(part) for part in value]
    if not argv:
        raise ConfigError("agent.command must not be empty")
    return tuple(argv)


def _resolve_harness(cli_value: str | None, environ: Mapping[str, str], file_value: Any) -> str:
    for source, candidate in (
        ("--harness", cli_value),
        ("RALPHIE_HARNESS", environ.get("RALPHIE_HARNESS")),
        ("config harness", file_value),
    ):
        if candidate is None or not str(candidate).strip():
            continue
        harness = str(candidate).strip().lower()
        if harness not in HARNESSES:
            raise ConfigError(f"{source} '{candidate}' is not supported; expected one of {', '.join(HARNESSES)}")
        return harness
    return DEFAULT_HARNESS


def _load_pricing(value: Any) -> dict[str, dict[str, float]]:
    if not isinstance(value, dict):
        return {}
    pricing: dict[str, dict[str, float]] = {}
    for model_name, entry in value.items():
        if not isinstance(entry, dict):
            continue
        pricing[str(model_name)] = {
            "input": _coerce_float(entry.get("input"), default=0.0),
            "output": _coerce_float(entry.get("output"), default=0.0),
        }
    return pricing


def load_run_config(
    repo_root: Path,
    *,
    harness: str | None = None,
    model: str | None = None,
    budget: int | None = None,
    max_iterations: int | None = None,
    all_iterations: bool = False,
    stuck_threshold: int | None = None,
    idle_timeout_seconds: float | None = None,
    greedy: bool | None = None,
    conservative: bool | None = None,
    save_jsonl: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> RunConfig:
    """Merge CLI flags, environment, config file and defaults, in that order."""
    env = os.environ if environ is None else environ
    document = _load_config_document(repo_root)
    agent_section = document.get("agent") if isinstance(document.get("agent"), dict) else {}

    resolved_model = model or env.get("RALPHIE_MODEL") or document.get("model")
    if budget is None:
        resolved_budget = int(document.get("budget", DEFAULT_BUDGET))
    else:
        if budget < 0:
            raise ConfigError(f"--budget must be >= 0, got {budget}")
        resolved_budget = budget

    if max_iterations is not None and max_iterations < 1:
        raise ConfigError(f"--iterations must be >= 1, got {max_iterations}")
    if stuck_threshold is not None and stuck_threshold < 1:
        raise ConfigError(f"--stuck-threshold must be >= 1, got {stuck_threshold}")
    if idle_timeout_seconds is not None and idle_timeout_seconds < 0:
        raise ConfigError(f"--idle-timeout must be >= 0, got {idle_timeout_seconds:g}")

    if all_iterations:
        resolved_max = MAX_ALL_ITERATIONS
    else:
        resolved_max = _coerce_positive_int(
            max_iterations if max_iterations is not None else document.get("max_iterations"),
            default=DEFAULT_MAX_ITERATIONS,
        )
    resolved_stuck = _coerce_positive_int(
        stuck_threshold if stuck_threshold is not None else document.get("stuck_threshold"),
        default=DEFAULT_STUCK_THRESHOLD,
    )
    resolved_idle = _coerce_float(
        idle_timeout_seconds if idle_timeout_seconds is not None else document.get("idle_timeout_seconds"),
        default=DEFAULT_IDLE_TIMEOUT_SECONDS,
    )

    return RunConfig(
        harness=_resolve_harness(harness, env, document.get("harness")),
        model=str(resolved_model).strip() if resolved_model else None,
        budget=resolved_budget,
        stuck_threshold=resolved_stuck,
        max_iterations=resolved_max,
        idle_timeout_seconds=resolved_idle,
        greedy=greedy if greedy is not None else _coerce_bool(document.get("greedy"), default=False),
        conservative=(
            conservative if conservative is not None else _coerce_bool(document.get("conservative"), default=False)
        ),
        save_jsonl=save_jsonl or document.get("save_jsonl") or None,
        warn_on_todo_stubs=_coerce_bool(document.get("warn_on_todo_stubs", True), default=True),
        agent_command=_parse_agent_command(agent_section.get("command")),
        pricing=_load_pricing(document.get("pricing")),
    )
