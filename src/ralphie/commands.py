"""Ralphie command line interface."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from ralphie.backlog import archive_spec, backlog_progress, load_backlog, locate_active_spec
from ralphie.budget import format_budget_summary, select_tasks
from ralphie.config import load_run_config
from ralphie.constants import EXIT_CODE_FATAL_ERROR, HARNESSES, RUN_SUMMARY_RELATIVE
from ralphie.controller import IterationController
from ralphie.costs import calculate_cost, format_cost
from ralphie.emitter import LifecycleEmitter
from ralphie.models import ConfigError, MalformedSpecError, SpecArchiveError, SpecLocatorError
from ralphie.utils import _append_log, _load_json_if_exists


def _resolve_spec_path(repo_root: Path, spec: str | None) -> Path:
    if spec:
        candidate = Path(spec).expanduser()
        return candidate if candidate.is_absolute() else (repo_root / candidate).resolve()
    return locate_active_spec(repo_root)


def _cmd_run(args: argparse.Namespace) -> int:
    repo_root = Path(args.repo).expanduser().resolve()
    emitter = LifecycleEmitter()
    try:
        config = load_run_config(
            repo_root,
            harness=args.harness,
            model=args.model,
            budget=args.budget,
            max_iterations=args.iterations,
            all_iterations=args.all,
            stuck_threshold=args.stuck_threshold,
            idle_timeout_seconds=args.idle_timeout,
            greedy=True if args.greedy else None,
            conservative=True if args.conservative else None,
            save_jsonl=args.save_jsonl,
        )
        spec_path = _resolve_spec_path(repo_root, args.spec)
        controller = IterationController(repo_root, config, emitter=emitter, spec_path=spec_path)
        outcome = controller.run()
    except (ConfigError, SpecLocatorError, MalformedSpecError) as exc:
        print(f"ralphie run: ERROR {exc}", file=sys.stderr)
        _append_log(repo_root, f"run aborted: {exc}")
        emitter.failed(str(exc))
        return EXIT_CODE_FATAL_ERROR

    if outcome.error:
        print(f"ralphie run: ERROR {outcome.error}", file=sys.stderr)
    else:
        print(f"ralphie run: {outcome.reason} (exit {outcome.exit_code})", file=sys.stderr)
    return outcome.exit_code


def _cmd_status(args: argparse.Namespace) -> int:
    repo_root = Path(args.repo).expanduser().resolve()
    try:
        spec_path = _resolve_spec_path(repo_root, args.spec)
        backlog = load_backlog(spec_path)
        config = load_run_config(
            repo_root,
            budget=args.budget,
            conservative=True if args.conservative else None,
        )
    except (ConfigError, SpecLocatorError, MalformedSpecError) as exc:
        print(f"ralphie status: ERROR {exc}", file=sys.stderr)
        return 1

    progress = backlog_progress(backlog)
    print("ralphie status")
    print(f"spec: {spec_path}")
    print(f"title: {backlog.title}")
    if backlog.goal:
        print(f"goal: {backlog.goal}")
    print(f"progress: {progress['resolved']}/{progress['total']} tasks ({progress['percentage']}%)")
    print(
        f"points: {backlog.completed_points} passed, {backlog.failed_points} failed, "
        f"{backlog.pending_points} open of {backlog.total_points}"
    )
    for task in backlog.tasks:
        print(f"  {task.id} [{task.size}] {task.status:<11} {task.title}")
    for warning in backlog.warnings:
        print(f"warning: {warning}")

    print("")
    mode = " conservative" if config.conservative else ""
    print(f"next selection (budget {config.budget}{mode}):")
    print(format_budget_summary(select_tasks(backlog, config.budget, conservative=config.conservative)))

    summary = _load_json_if_exists(repo_root / RUN_SUMMARY_RELATIVE)
    if isinstance(summary, dict):
        print("")
        print(
            f"last run: {summary.get('reason', '<unknown>')} exit_code={summary.get('exit_code', '<unknown>')} "
            f"iterations={summary.get('iterations', 0)} ended_at={summary.get('ended_at', '<unknown>')}"
        )
        total_cost = summary.get("total_cost_usd")
        if isinstance(total_cost, (int, float)) and total_cost:
            print(f"last run cost: ${total_cost:.4f}")
    return 0


def _cmd_validate(args: argparse.Namespace) -> int:
    repo_root = Path(args.repo).expanduser().resolve()
    failures = 0
    try:
        load_run_config(repo_root)
        print("config: ok")
    except ConfigError as exc:
        print(f"ralphie validate: ERROR {exc}", file=sys.stderr)
        failures += 1

    try:
        spec_path = _resolve_spec_path(repo_root, args.spec)
        backlog = load_backlog(spec_path)
    except (SpecLocatorError, MalformedSpecError) as exc:
        print(f"ralphie validate: ERROR {exc}", file=sys.stderr)
        return 1

    print(f"spec: ok ({len(backlog.tasks)} tasks, {backlog.total_points} points) {spec_path}")
    for warning in backlog.warnings:
        print(f"warning: {warning}")
    if args.strict and backlog.warnings:
        failures += 1
    return 1 if failures else 0


def _cmd_archive(args: argparse.Namespace) -> int:
    repo_root = Path(args.repo).expanduser().resolve()
    try:
        spec_path = _resolve_spec_path(repo_root, args.spec)
        archived_path = archive_spec(repo_root, spec_path)
    except (SpecLocatorError, MalformedSpecError, SpecArchiveError) as exc:
        print(f"ralphie archive: ERROR {exc}", file=sys.stderr)
        return 1
    print(f"archived: {archived_path}")
    return 0


def _cmd_cost(
args: argparse.Namespace) -> int:
    repo_root = Path(args.repo).expanduser().resolve()
    try:
        config = load_run_config(repo_root, model=args.model)
    except ConfigError as exc:
        print(f"ralphie cost: ERROR {exc}", file=sys.stderr)
        return 1
    cost = calculate_cost(args.input_tokens, args.output_tokens, config.model, config.pricing)
    print(format_cost(args.input_tokens, args.output_tokens, cost))
    return 0


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--repo", default=".", help="Project root containing .ralphie/ (default: .)")
    parser.add_argument(
        "--spec",
        default=None,
        help="Spec file to use instead of the single file in .ralphie/specs/active/",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ralphie command line interface")
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Run the agent until the spec is done, stuck, or out of iterations")
    _add_common_arguments(run)
    iterations = run.add_mutually_exclusive_group()
    iterations.add_argument("-n", "--iterations", type=int, default=None, help="Maximum iterations (default: 10)")
    iterations.add_argument("--all", action="store_true", help="Run up to 100 iterations")
    run.add_argument("--stuck-threshold", type=int, default=None, help="Iterations without progress before stopping")
    run.add_argument("--budget", type=int, default=None, help="Task points per iteration (default: 4)")
    run.add_argument("--greedy", action="store_true", help="Ask the agent to finish as many tasks as possible")
    run.add_argument(
        "--conservative",
        action="store_true",
        help="Stop selecting tasks after the first M or L task",
    )
    run.add_argument("--harness", choices=HARNESSES, default=None, help="Agent harness to invoke")
    run.add_argument("--model", default=None, help="Model passed to the agent harness")
    run.add_argument(
        "--idle-timeout",
        type=float,
        default=None,
        help="Seconds without agent output before the invocation is stopped (0 disables)",
    )
    run.add_argument("--save-jsonl", default=None, help="Append the raw agent stream to this file")
    run.set_defaults(handler=_cmd_run)

    status = subparsers.add_parser("status", help="Show spec progress and the next task selection")
    _add_common_arguments(status)
    status.add_argument("--budget", type=int, default=None, help="Budget used for the next selection preview")
    status.add_argument("--conservative", action="store_true", help="Preview the conservative selection")
    status.set_defaults(handler=_cmd_status)

    validate = subparsers.add_parser("validate", help="Check the spec and config for structural errors")
    _add_common_arguments(validate)
    validate.add_argument("--strict", action="store_true", help="Treat spec warnings as failures")
    validate.set_defaults(handler=_cmd_validate)

    archive = subparsers.add_parser("archive", help="Move a finished spec to .ralphie/specs/completed/")
    _add_common_arguments(archive)
    archive.set_defaults(handler=_cmd_archive)

    cost = subparsers.add_parser("cost", help="Estimate the cost of a token count")
    cost.add_argument("--repo", default=".", help="Project root containing .ralphie/ (default: .)")
    cost.add_argument("input_tokens", type=int)
    cost.add_argument("output_tokens", type=int)
    cost.add_argument("--model", default=None, help="Model name used for pricing (default: config or sonnet)")
    cost.set_defaults(handler=_cmd_cost)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2
    return int(handler(args))
