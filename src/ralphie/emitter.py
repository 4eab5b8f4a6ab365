"""Line-delimited JSON lifecycle events for headless runs."""

from __future__ import annotations

import json
import sys
from typing import Any, TextIO

from ralphie.models import IterationStats
from ralphie.utils import _utc_now_ms


class LifecycleEmitter:
    """Writes one flat JSON object per line and keeps a copy of each event."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream if stream is not None else sys.stdout
        self.events: list[dict[str, Any]] = []

    def emit(self, event: str, **fields: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {"event": event}
        payload.update({key: value for key, value in fields.items() if value is not None})
        self.events.append(payload)
        self._stream.write(json.dumps(payload) + "\n")
        self._stream.flush()
        return payload

    def of_type(self, event: str) -> list[dict[str, Any]]:
        return [payload for payload in self.events if payload["event"] == event]

    def started(self, spec: str, tasks: int, *, model: str | None = None, harness: str | None = None) -> None:
        self.emit("started", spec=spec, tasks=tasks, model=model, harness=harness, timestamp=_utc_now_ms())

    def iteration(self, n: int, phase: str = "starting") -> None:
        self.emit("iteration", n=n, phase=phase)

    def tool(self, tool_type: str, *, name: str | None = None, path: str | None = None) -> None:
        self.emit("tool", type=tool_type, name=name, path=path)

    def commit(self, hash: str, message: str) -> None:
        self.emit("commit", hash=hash, message=message)

    def task_complete(self, index: int, text: str, *, task_id: str | None = None, status: str | None = None) -> None:
        self.emit("task_complete", index=index, text=text, task_id=task_id, status=status)

    def iteration_done(
        self,
        n: int,
        duration_ms: int,
        stats: IterationStats,
        *,
        error: str | None = None,
        cost_usd: float | None = None,
    ) -> None:
        self.emit("iteration_done", n=n, duration_ms=duration_ms, stats=stats.as_dict(), error=error, cost_usd=cost_usd)

    def stuck(self, reason: str, iterations_without_progress: int) -> None:
        self.emit("stuck", reason=reason, iterations_without_progress=iterations_without_progress)

    def complete(self, tasks_done: int, total_duration_ms: int) -> None:
        self.emit("complete", tasks_done=tasks_done, total_duration_ms=total_duration_ms)

    def failed(self, error: str) -> None:
        self.emit("failed", error=error)

    def warning(self, warning_type: str, message: str, files: list[str] | None = None) -> None:
        self.emit("warning", type=warning_type, message=message, files=files)
