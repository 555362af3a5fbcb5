"""Canonical stream events.

Every provider adapter and the remote transport produce exactly these
four events, so the orchestrator never sees vendor-specific shapes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from cadenza.message import ToolCall, ToolResult


@dataclass
class StreamEvent:
    """Base for all streaming events."""


@dataclass
class ChunkEvent(StreamEvent):
    """Text appended to the assistant message."""

    text: str = ""


@dataclass
class ToolCallBatchEvent(StreamEvent):
    """Finalized tool calls with parsed arguments."""

    calls: list[ToolCall] = field(default_factory=list)


@dataclass
class CompleteEvent(StreamEvent):
    """Terminal event for a successful stream."""

    has_tool_calls: bool = False
    citations: list[str] | None = None


@dataclass
class ErrorEvent(StreamEvent):
    """Terminal event for a failed stream.

    ``message`` is short and user-facing; the cause is logged.
    """

    message: str = ""


# Orchestrator-level events, yielded by Runner.iter() only.

@dataclass
class ToolResultsEvent(StreamEvent):
    """Results of one batch of tool calls, in call order."""

    results: list[ToolResult] = field(default_factory=list)


@dataclass
class GenerationCompleteEvent(StreamEvent):
    """Final event of a generation; always the last event yielded."""

    result: Any = None
