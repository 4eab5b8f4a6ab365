"""Agent process invocation with streamed event delivery."""

from __future__ import annotations

import os
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Callable, TextIO

from ralphie.constants import AGENT_RUNNER_PRESETS, HARNESS_MODEL_FLAGS
from ralphie.costs import calculate_cost
from ralphie.models import (
    AgentInvocationError,
    AgentRunOptions,
    AgentRunResult,
    CanonicalEvent,
    ErrorEvent,
    ResultEvent,
)
from ralphie.stream import DecodeError, StreamPipeline
from ralphie.utils import _append_log, _compact_log_text, _redact_sensitive_text

_IDLE_POLL_SECONDS = 0.25
_MAX_CAPTURE_CHARS = 20000


def build_agent_argv(options: AgentRunOptions) -> list[str]:
    if options.command:
        return list(options.command)
    argv = list(AGENT_RUNNER_PRESETS[options.harness])
    if options.model:
        flag = [HARNESS_MODEL_FLAGS[options.harness], options.model]
        # `-` marks the prompt on stdin and has to stay last.
        if argv and argv[-1] == "-":
            argv[-1:-1] = flag
        else:
            argv.extend(flag)
    return argv


class _IdleWatchdog:
    """Kills the process when no output arrives for ``timeout`` seconds."""

    def __init__(self, process: subprocess.Popen[str], timeout: float) -> None:
        self._process = process
        self._timeout = timeout
        self._last_activity = time.monotonic()
        self._stopped = threading.Event()
        self.fired = False
        self._thread = threading.Thread(target=self._watch, daemon=True)

    def start(self) -> None:
        if self._timeout > 0:
            self._thread.start()

    def touch(self) -> None:
        self._last_activity = time.monotonic()

    def stop(self) -> None:
        self._stopped.set()
        if self._thread.is_alive():
            self._thread.join(timeout=2)

    def _watch(self) -> None:
        while not self._stopped.wait(_IDLE_POLL_SECONDS):
            if self._process.poll() is not None:
                return
            if time.monotonic() - self._last_activity >= self._timeout:
                self.fired = True
                _terminate(self._process)
                return


def _terminate(process: subprocess.Popen[str]) -> None:
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def _pump_stream(stream: Any, captured_chunks: list[str], captured_len: list[int]) -> None:
    if stream is None:
        return
    try:
        for line in iter(stream.readline, ""):
            if captured_len[0] < _MAX_CAPTURE_CHARS:
                snippet = line[: _MAX_CAPTURE_CHARS - captured_len[0]]
                captured_chunks.append(snippet)
                captured_len[0] += len(snippet)
    finally:
        try:
            stream.close()
        except OSError:
            pass


def _write_prompt(process: subprocess.Popen[str], prompt: str) -> None:
    if process.stdin is None:
        return
    try:
        process.stdin.write(prompt)
        process.stdin.flush()
    except BrokenPipeError:
        pass
    finally:
        try:
            process.stdin.close()
        except BrokenPipeError:
            pass


def _open_raw_capture(cwd: Path, save_jsonl: str | None) -> TextIO | None:
    if not save_jsonl:
        return None
    capture_path = Path(save_jsonl)
    if not capture_path.is_absolute():
        capture_path = cwd / capture_path
    try:
        capture_path.parent.mkdir(parents=True, exist_ok=True)
        return capture_path.open("a", encoding="utf-8")
    except OSError as exc:
        _append_log(cwd, f"agent stream capture unavailable path={capture_path}: {exc}")
        raise AgentInvocationError(f"cannot open stream capture file {capture_path}: {exc}") from exc


def run_agent(
    prompt: str,
    cwd: Path,
    on_event: Callable[[CanonicalEvent], None],
    *,
    options: AgentRunOptions,
) -> AgentRunResult:
    """Run one agent invocation, delivering canonical events as they stream.

    Raises ``AgentInvocationError`` when the process cannot be started, when
    the raw capture file cannot be opened, or when its output stream breaks.
    Undecodable bytes are replaced rather than treated as a failure. A run
    that starts but ends without a successful result is returned with
    ``success=False``.
    """
    started = time.monotonic()
    argv = build_agent_argv(options)
    result_event: list[ResultEvent] = []
    errors: list[str] = []

    def _forward(event: CanonicalEvent) -> None:
        if isinstance(event, ResultEvent):
            result_event[:] = [event]
        elif isinstance(event, ErrorEvent):
            errors.append(event.message)
        on_event(event)

    def _on_decode_error(error: DecodeError) -> None:
        _append_log(
            cwd,
            f"agent stream decode error: {error.message} line={_compact_log_text(_redact_sensitive_text(error.line), limit=160)}",
        )

    pipeline = StreamPipeline(_forward, harness=options.harness, on_decode_error=_on_decode_error)
    env = dict(os.environ)
    if options.env:
        env.update(options.env)

    raw_capture = _open_raw_capture(cwd, options.save_jsonl)

    _append_log(cwd, f"agent start harness={options.harness} argv={_redact_sensitive_text(' '.join(argv))}")
    try:
        process = subprocess.Popen(
            argv,
            cwd=cwd,
            shell=False,
            text=True,
            encoding="utf-8",
            errors="replace",
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=1,
            env=env,
        )
    except OSError as exc:
        if raw_capture is not None:
            raw_capture.close()
        _append_log(cwd, f"agent spawn failed argv0={argv[0]}: {exc}")
        raise AgentInvocationError(f"could not start agent '{argv[0]}': {exc}") from exc

    stderr_chunks: list[str] = []
    stderr_len = [0]
    stderr_thread = threading.Thread(
        target=_pump_stream,
        args=(process.stderr, stderr_chunks, stderr_len),
        daemon=True,
    )
    watchdog = _IdleWatchdog(process, options.idle_timeout_seconds)

    try:
        stderr_thread.start()
        _write_prompt(process, prompt)
        watchdog.start()
        while True:
            try:
                line = process.stdout.readline()
            except (OSError, ValueError) as exc:
                _append_log(cwd, f"agent stream read failed: {exc}")
                raise AgentInvocationError(f"lost the agent output stream: {exc}") from exc
            if not line:
                break
            watchdog.touch()
            if raw_capture is not None:
                raw_capture.write(line if line.endswith("\n") else f"{line}\n")
            pipeline.feed(line)
        pipeline.flush()
        exit_code = process.wait()
    finally:
        watchdog.stop()
        _terminate(process)
        if stderr_thread.is_alive():
            stderr_thread.join(timeout=2)
        if raw_capture is not None:
            raw_capture.close()

    elapsed_ms = int(round((time.monotonic() - started) * 1000))
    stderr_text = "".join(stderr_chunks).strip()
    if stderr_text:
        _append_log(cwd, f"agent stderr: {_compact_log_text(_redact_sensitive_text(stderr_text))}")

    result = result_event[0] if result_event else None
    usage = result.usage if result else None
    cost_usd = result.cost_usd if result else None
    if cost_usd is None and usage is not None:
        cost_usd = calculate_cost(usage.input_tokens, usage.output_tokens, options.model, options.pricing)

    error_message: str | None = None
    if watchdog.fired:
        error_message = f"agent produced no output for {options.idle_timeout_seconds:g}s and was stopped"
    elif result is None:
        detail = errors[-1] if errors else _compact_log_text(stderr_text, limit=200)
        error_message = f"agent exited with code {exit_code} without a result"
        if detail:
            error_message = f"{error_message}: {detail}"
    elif result.is_error:
        error_message = result.result_text or (errors[-1] if errors else "agent reported an error result")
    elif exit_code != 0:
        error_message = f"agent exited with code {exit_code}"

    _append_log(
        cwd,
        f"agent exit code={exit_code} success={error_message is None} duration_ms={elapsed_ms}",
    )
    return AgentRunResult(
        success=error_message is None,
        duration_ms=(result.duration_ms if result and result.duration_ms is not None else elapsed_ms),
        cost_usd=cost_usd,
        usage=usage,
        error_message=error_message,
        output=result.result_text if result else None,
        exit_code=exit_code,
    )
