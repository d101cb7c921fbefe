import asyncio
import json
import logging
import time
from collections import deque
from typing import Any, AsyncIterator, Literal

from pydantic import BaseModel, Field


logger = logging.getLogger("codeforge.events")


EventKind = Literal[
    "status",
    "text-delta",
    "tool-call",
    "tool-output",
    "file-created",
    "progress",
    "research-start",
    "research-complete",
    "time-budget",
    "error",
    "complete",
]

SIDE_EVENT_KINDS: frozenset[str] = frozenset({"tool-call", "tool-output", "file-created"})

SSE_HEADERS: dict[str, str] = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _timestamp() -> str:
    now = time.time()
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(now)) + f".{int(now * 1000) % 1000:03d}+00:00"


class StreamEvent(BaseModel):
    type: EventKind
    data: Any = None
    timestamp: str = Field(default_factory=_timestamp)


def sse_format(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


def emit_event(
    task_id: str, event_type: str, data: Any = None, error: Any = None
) -> dict[str, Any]:
    return {
        "event_type": event_type,
        "task_id": task_id,
        "timestamp": _timestamp(),
        "data": data,
        "error": error,
    }


def event_to_sse(task_id: str, event: StreamEvent) -> str:
    """Render an engine event as an SSE chunk, keeping its emission timestamp."""
    envelope = emit_event(
        task_id,
        event.type,
        data=event.data if event.type != "error" else None,
        error=event.data.get("message") if event.type == "error" and isinstance(event.data, dict) else None,
    )
    envelope["timestamp"] = event.timestamp
    return sse_format(envelope)


_CLOSED = object()


class EventBus:
    """Single ordered event channel for one run.

    Tool side events (tool-call, tool-output, file-created) are held back in a
    FIFO and released just before the next text chunk, or by ``flush()`` once
    the model stream ends, so none are lost when a stream stops early. All
    other events go straight onto the channel.
    """

    def __init__(self, run_id: str = "") -> None:
        self.run_id = run_id
        self.history: list[StreamEvent] = []
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._pending: deque[StreamEvent] = deque()
        self._closed = False
        self.cancelled = False

    def _publish(self, event: StreamEvent) -> StreamEvent:
        if self._closed:
            logger.debug("bus[%s] dropped %s after close", self.run_id, event.type)
            return event
        self.history.append(event)
        self._queue.put_nowait(event)
        return event

    def emit(self, kind: EventKind, data: Any = None) -> StreamEvent:
        return self._publish(StreamEvent(type=kind, data=data))

    def status(self, message: str) -> StreamEvent:
        return self.emit("status", {"message": message})

    def queue_side_event(self, kind: EventKind, data: Any = None) -> StreamEvent:
        event = StreamEvent(type=kind, data=data)
        self._pending.append(event)
        return event

    def flush(self) -> int:
        count = 0
        while self._pending:
            self._publish(self._pending.popleft())
            count += 1
        return count

    def text_delta(self, chunk: str) -> StreamEvent:
        self.flush()
        return self.emit("text-delta", {"content": chunk})

    def close(self) -> None:
        if self._closed:
            return
        self.flush()
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    def of_type(self, kind: EventKind) -> list[StreamEvent]:
        return [e for e in self.history if e.type == kind]
