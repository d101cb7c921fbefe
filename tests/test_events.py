"""Tests for the streaming event bus and SSE formatting."""

import json

import pytest
from pydantic import ValidationError

from codeforge.events import EventBus, StreamEvent, emit_event, event_to_sse, sse_format


class TestEventBus:
    @pytest.mark.asyncio
    async def test_side_events_flush_before_text(self):
        bus = EventBus("run_1")
        bus.queue_side_event("tool-call", {"tool_id": "tc_1"})
        bus.queue_side_event("tool-output", {"tool_id": "tc_1"})
        bus.text_delta("Hello")
        bus.close()

        kinds = [e.type async for e in bus]

        assert kinds == ["tool-call", "tool-output", "text-delta"]

    @pytest.mark.asyncio
    async def test_close_flushes_pending(self):
        bus = EventBus()
        bus.status("Initializing...")
        bus.queue_side_event("file-created", {"path": "a.ts"})
        bus.close()

        events = [e async for e in bus]

        assert [e.type for e in events] == ["status", "file-created"]
        assert events[0].data == {"message": "Initializing..."}

    def test_events_after_close_are_dropped(self):
        bus = EventBus()
        bus.close()
        bus.emit("status", {"message": "late"})
        assert bus.history == []
        assert bus.closed

    def test_flush_counts(self):
        bus = EventBus()
        bus.queue_side_event("tool-call", {})
        bus.queue_side_event("tool-call", {})
        assert bus.flush() == 2
        assert bus.flush() == 0
        assert len(bus.of_type("tool-call")) == 2

    def test_text_delta_payload(self):
        bus = EventBus()
        event = bus.text_delta("chunk")
        assert event.data == {"content": "chunk"}
        assert event.timestamp.endswith("+00:00")


class TestSSE:
    def test_sse_format(self):
        assert sse_format({"a": 1}) == 'data: {"a": 1}\n\n'

    def test_emit_event_envelope(self):
        envelope = emit_event("task_1", "status", data={"message": "hi"})
        assert set(envelope) == {"event_type", "task_id", "timestamp", "data", "error"}
        assert envelope["error"] is None

    def test_error_event_moves_message_to_error(self):
        event = StreamEvent(type="error", data={"message": "Project not found"})
        body = json.loads(event_to_sse("task_1", event)[len("data: "):])
        assert body["event_type"] == "error"
        assert body["error"] == "Project not found"
        assert body["data"] is None
        assert body["timestamp"] == event.timestamp

    def test_unknown_event_kind_rejected(self):
        with pytest.raises(ValidationError):
            StreamEvent(type="files", data={"files": {}})
