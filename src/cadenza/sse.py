"""Wire codec for the remote stream.

Each event travels as ``data: <json>\\n\\n`` with a ``type`` of
``chunk``, ``tool_call``, ``complete`` or ``error``.  The encoder lets a
backend built on cadenza serve the same format the client parses.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

from cadenza.errors import ProtocolError
from cadenza.events import ChunkEvent, CompleteEvent, ErrorEvent, StreamEvent, ToolCallBatchEvent
from cadenza.message import ToolCall


def event_payload(event: StreamEvent) -> dict[str, Any]:
    if isinstance(event, ChunkEvent):
        return {"type": "chunk", "content": event.text}
    if isinstance(event, ToolCallBatchEvent):
        return {"type": "tool_call", "calls": [c.model_dump(mode="json") for c in event.calls]}
    if isinstance(event, CompleteEvent):
        payload: dict[str, Any] = {"type": "complete", "hasToolCalls": event.has_tool_calls}
        if event.citations:
            payload["citations"] = event.citations
        return payload
    if isinstance(event, ErrorEvent):
        return {"type": "error", "message": event.message}
    raise TypeError(f"Unknown event type: {type(event).__name__}")


def encode_event(event: StreamEvent) -> str:
    return f"data: {json.dumps(event_payload(event))}\n\n"


async def sse_generator(event_stream: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    """Convert a StreamEvent async iterator into SSE-formatted strings."""
    async for event in event_stream:
        yield encode_event(event)


def parse_event(payload: dict[str, Any]) -> StreamEvent:
    """
    Raises:
        ProtocolError: If the payload is not a known event.
    """
    kind = payload.get("type")
    try:
        if kind == "chunk":
            return ChunkEvent(text=str(payload.get("content", "")))
        if kind == "tool_call":
            return ToolCallBatchEvent(calls=[ToolCall.model_validate(c) for c in payload.get("calls") or []])
        if kind == "complete":
            return CompleteEvent(
                has_tool_calls=bool(payload.get("hasToolCalls", False)),
                citations=payload.get("citations") or None,
            )
        if kind == "error":
            return ErrorEvent(message=str(payload.get("message") or "Unknown error"))
    except ValueError as e:
        raise ProtocolError(f"Invalid {kind} event: {e}") from e
    raise ProtocolError(f"Unknown event type: {kind!r}")


def parse_data(data: str) -> StreamEvent:
    """Parse the data field of one server-sent event."""
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Malformed event data: {data[:200]!r}") from e
    if not isinstance(payload, dict):
        raise ProtocolError("Event data is not an object")
    return parse_event(payload)
