"""Agent stream decoding: line framing and envelope normalisation."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Callable

from ralphie.constants import HARNESS_CLAUDE, HARNESS_CODEX, HARNESSES
from ralphie.models import (
    CanonicalEvent,
    ErrorEvent,
    InitEvent,
    PendingTool,
    ResultEvent,
    TextEvent,
    TokenUsage,
    ToolEndEvent,
    ToolStartEvent,
    _coerce_optional_float,
    _coerce_optional_int,
)


@dataclass(frozen=True)
class DecodeError:
    line: str
    message: str


# ---------------------------------------------------------------------------
# Line framing
# ---------------------------------------------------------------------------


class StreamDecoder:
    """Frames arbitrary text chunks into JSON object records.

    Only newline-terminated lines are parsed by ``feed``; the trailing
    partial line is held until more data arrives or ``flush`` is called, so
    the records produced never depend on where the chunks were split.
    """

    def __init__(self, on_error: Callable[[DecodeError], None] | None = None) -> None:
        self._buffer = ""
        self._on_error = on_error

    @property
    def pending_text(self) -> str:
        return self._buffer

    def feed(self, chunk: str) -> list[dict[str, Any]]:
        if not chunk:
            return []
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        records: list[dict[str, Any]] = []
        for line in lines:
            record = self._parse_line(line)
            if record is not None:
                records.append(record)
        return records

    def flush(self) -> list[dict[str, Any]]:
        tail, self._buffer = self._buffer, ""
        record = self._parse_line(tail)
        return [record] if record is not None else []

    def reset(self) -> None:
        self._buffer = ""

    def _parse_line(self, line: str) -> dict[str, Any] | None:
        stripped = line.strip()
        if not stripped:
            return None
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError as exc:
            self._report(stripped, f"invalid JSON: {exc.msg}")
            return None
        if not isinstance(payload, dict):
            self._report(stripped, f"expected a JSON object, got {type(payload).__name__}")
            return None
        return payload

    def _report(self, line: str, message: str) -> None:
        if self._on_error is not None:
            self._on_error(DecodeError(line=line, message=message))


# ---------------------------------------------------------------------------
# Tool correlation
# ---------------------------------------------------------------------------


class ToolCorrelator:
    """Pending tool calls for one agent invocation, keyed by correlation id."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._pending: dict[str, PendingTool] = {}
        self._clock = clock

    def register(self, correlation_id: str, tool_name: str, tool_input: dict[str, Any]) -> PendingTool:
        entry = PendingTool(tool_name=tool_name, input=dict(tool_input), started_at=self._clock())
        self._pending[correlation_id] = entry
        return entry

    def resolve(self, correlation_id: str) -> PendingTool | None:
        return self._pending.pop(correlation_id, None)

    def is_pending(self, correlation_id: str) -> bool:
        return correlation_id in self._pending

    def pending(self) -> dict[str, PendingTool]:
        return dict(self._pending)

    def clear(self) -> None:
        self._pending.clear()

    def elapsed_ms(self, entry: PendingTool) -> int:
        return max(0, int(round((self._clock() - entry.started_at) * 1000)))

    def __len__(self) -> int:
        return len(self._pending)


# ---------------------------------------------------------------------------
# Envelope normalisation
# ---------------------------------------------------------------------------


def _content_to_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, dict):
                text = block.get("text")
                if isinstance(text, str):
                    parts.append(text)
            elif isinstance(block, str):
                parts.append(block)
        return "\n".join(parts)
    return json.dumps(content, sort_keys=True)


def _parse_usage(raw: Any) -> TokenUsage | None:
    if not isinstance(raw, dict):
        return None
    input_tokens = _coerce_optional_int(raw.get("input_tokens"))
    output_tokens = _coerce_optional_int(raw.get("output_tokens"))
    if input_tokens is None and output_tokens is None:
        return None
    return TokenUsage(input_tokens=input_tokens or 0, output_tokens=output_tokens or 0)


def _codex_tool_name(item: dict[str, Any]) -> str | None:
    item_type = item.get("type")
    if item_type == "command_execution":
        return "Bash"
    if item_type == "file_change":
        return "Edit"
    if item_type == "web_search":
        return "WebSearch"
    if item_type == "mcp_tool_call":
        tool = item.get("tool")
        return str(tool) if tool else "mcp"
    return None


def _codex_tool_input(item: dict[str, Any]) -> dict[str, Any]:
    item_type = item.get("type")
    if item_type == "command_execution":
        return {"command": str(item.get("command", ""))}
    if item_type == "file_change":
        changes = item.get("changes") if isinstance(item.get("changes"), list) else []
        paths = [str(change.get("path", "")) for change in changes if isinstance(change, dict)]
        payload: dict[str, Any] = {"changes": paths}
        if paths:
            payload["file_path"] = paths[0]
        return payload
    if item_type == "web_search":
        return {"query": str(item.get("query", ""))}
    if item_type == "mcp_tool_call":
        payload = {"server": str(item.get("server", ""))}
        if isinstance(item.get("arguments"), dict):
            payload.update(item["arguments"])
        return payload
    return {}


def _codex_tool_output(item: dict[str, Any]) -> tuple[str, bool]:
    item_type = item.get("type")
    failed = str(item.get("status", "")).lower() == "failed"
    if item_type == "command_execution":
        exit_code = _coerce_optional_int(item.get("exit_code"))
        output = str(item.get("aggregated_output") or "")
        return output, failed or (exit_code is not None and exit_code != 0)
    if item_type == "file_change":
        changes = item.get("changes") if isinstance(item.get("changes"), list) else []
        lines = [
            f"{change.get('kind', 'update')} {change.get('path', '')}"
            for change in changes
            if isinstance(change, dict)
        ]
        return "\n".join(lines), failed
    if item_type == "mcp_tool_call":
        error = item.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else error
            return str(message), True
        return _content_to_text(item.get("result")), failed
    return "", failed


class EventNormalizer:
    """Maps one provider record to zero or more canonical events.

    The normalizer owns the ``ToolCorrelator`` for its invocation: starts are
    registered as they are seen and results are enriched with the matching
    tool name, input and duration. A result with no recorded start is still
    emitted, with those fields left empty.
    """

    def __init__(
        self,
        harness: str = HARNESS_CLAUDE,
        *,
        correlator: ToolCorrelator | None = None,
    ) -> None:
        if harness not in HARNESSES:
            raise ValueError(f"unsupported harness '{harness}', expected one of {', '.join(HARNESSES)}")
        self.harness = harness
        self.correlator = correlator if correlator is not None else ToolCorrelator()

    def normalize(self, record: dict[str, Any]) -> list[CanonicalEvent]:
        events: list[CanonicalEvent] = []
        try:
            if self.harness == HARNESS_CODEX:
                self._normalize_codex(record, events)
            else:
                self._normalize_claude(record, events)
        except Exception as exc:
            events.append(
                ErrorEvent(
                    message=f"failed to handle {record.get('type', 'unknown')} record: {exc}",
                    raw_line=json.dumps(record, sort_keys=True, default=str),
                )
            )
        return events

    # -- shared -----------------------------------------------------------

    def _start(self, correlation_id: str, tool_name: str, tool_input: dict[str, Any]) -> ToolStartEvent:
        self.correlator.register(correlation_id, tool_name, tool_input)
        return ToolStartEvent(correlation_id=correlation_id, tool_name=tool_name, input=dict(tool_input))

    def _end(self, correlation_id: str, output: str, is_error: bool) -> ToolEndEvent:
        entry = self.correlator.resolve(correlation_id)
        if entry is None:
            return ToolEndEvent(correlation_id=correlation_id, output=output, is_error=is_error)
        return ToolEndEvent(
            correlation_id=correlation_id,
            output=output,
            is_error=is_error,
            tool_name=entry.tool_name,
            input=dict(entry.input),
            duration_ms=self.correlator.elapsed_ms(entry),
        )

    # -- claude stream-json -----------------------------------------------

    def _normalize_claude(self, record: dict[str, Any], events: list[CanonicalEvent]) -> None:
        record_type = record.get("type")
        if record_type == "system":
            nested_message = record.get("message") if isinstance(record.get("message"), dict) else {}
            nested_result = record.get("result") if isinstance(record.get("result"), dict) else {}
            events.append(
                InitEvent(
                    session_id=record.get("session_id") or nested_result.get("session_id"),
                    model=record.get("model") or nested_message.get("model"),
                )
            )
        elif record_type == "assistant":
            for block in self._claude_content(record):
                block_type = block.get("type")
                if block_type == "text":
                    text = str(block.get("text") or "")
                    if text.strip():
                        events.append(TextEvent(text=text))
                elif block_type == "thinking":
                    text = str(block.get("thinking") or "")
                    if text.strip():
                        events.append(TextEvent(text=text, is_thinking=True))
                elif block_type == "tool_use":
                    tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
                    events.append(self._start(str(block["id"]), str(block.get("name") or "unknown"), tool_input))
                elif block_type == "tool_result":
                    events.append(self._claude_tool_result(block))
        elif record_type == "user":
            for block in self._claude_content(record):
                if block.get("type") == "tool_result":
                    events.append(self._claude_tool_result(block))
        elif record_type == "result":
            events.append(self._claude_result(record))

    @staticmethod
    def _claude_content(record: dict[str, Any]) -> list[dict[str, Any]]:
        message = record.get("message")
        if not isinstance(message, dict):
            return []
        content = message.get("content")
        if not isinstance(content, list):
            return []
        return [block for block in content if isinstance(block, dict)]

    def _claude_tool_result(self, block: dict[str, Any]) -> ToolEndEvent:
        return self._end(
            str(block["tool_use_id"]),
            _content_to_text(block.get("content")),
            bool(block.get("is_error", False)),
        )

    @staticmethod
    def _claude_result(record: dict[str, Any]) -> ResultEvent:
        fields = dict(record)
        result_text: str | None = None
        nested = record.get("result")
        if isinstance(nested, dict):
            fields.update(nested)
        elif isinstance(nested, str):
            result_text = nested
        cost = fields.get("total_cost_usd")
        if cost is None:
            cost = fields.get("cost_usd")
        return ResultEvent(
            is_error=bool(fields.get("is_error", False)),
            duration_ms=_coerce_optional_int(fields.get("duration_ms")),
            cost_usd=_coerce_optional_float(cost),
            usage=_parse_usage(fields.get("usage")),
            num_turns=_coerce_optional_int(fields.get("num_turns")),
            session_id=fields.get("session_id"),
            result_text=result_text,
        )

    # -- codex exec --json ------------------------------------------------

    def _normalize_codex(self, record: dict[str, Any], events: list[CanonicalEvent]) -> None:
        record_type = record.get("type")
        if record_type == "thread.started":
            events.append(InitEvent(session_id=record.get("thread_id"), model=record.get("model")))
        elif record_type in {"item.started", "item.completed"}:
            item = record.get("item")
            if not isinstance(item, dict):
                return
            item_type = item.get("type")
            if item_type == "agent_message":
                if record_type == "item.completed" and str(item.get("text") or "").strip():
                    events.append(TextEvent(text=str(item["text"])))
                return
            if item_type == "reasoning":
                if record_type == "item.completed" and str(item.get("text") or "").strip():
                    events.append(TextEvent(text=str(item["text"]), is_thinking=True))
                return
            tool_name = _codex_tool_name(item)
            if tool_name is None:
                return
            correlation_id = str(item["id"])
            if record_type == "item.started":
                events.append(self._start(correlation_id, tool_name, _codex_tool_input(item)))
                return
            if not self.correlator.is_pending(correlation_id):
                events.append(self._start(correlation_id, tool_name, _codex_tool_input(item)))
            output, is_error = _codex_tool_output(item)
            events.append(self._end(correlation_id, output, is_error))
        elif record_type == "turn.completed":
            events.append(ResultEvent(is_error=False, usage=_parse_usage(record.get("usage"))))
        elif record_type == "turn.failed":
            error = record.get("error")
            message = error.get("message") if isinstance(error, dict) else error
            message = str(message or "turn failed")
            events.append(ErrorEvent(message=message))
            events.append(ResultEvent(is_error=True, result_text=message))
        elif record_type == "error":
            events.append(ErrorEvent(message=str(record.get("message") or "agent reported an error")))


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class StreamPipeline:
    """Decoder and normalizer wired together for one agent invocation."""

    def __init__(
        self,
        on_event: Callable[[CanonicalEvent], None],
        *,
        harness: str = HARNESS_CLAUDE,
        on_decode_error: Callable[[DecodeError], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._on_event = on_event
        self.decoder = StreamDecoder(on_error=on_decode_error)
        self.normalizer = EventNormalizer(harness, correlator=ToolCorrelator(clock=clock))

    def feed(self, chunk: str) -> None:
        for record in self.decoder.feed(chunk):
            self._dispatch(record)

    def flush(self) -> None:
        for record in self.decoder.flush():
            self._dispatch(record)

    def _dispatch(self, record: dict[str, Any]) -> None:
        for event in self.normalizer.normalize(record):
            self._on_event(event)
