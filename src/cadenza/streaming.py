"""Streaming primitives shared by providers and transports.

Providers feed low-level tool-call events into a
:class:`ToolCallAccumulator`, which yields finished :class:`ToolCall`
objects.  :func:`dispatch_events` turns a stream of canonical events
into callbacks for callers that prefer the callback shape.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from cadenza.errors import Cancelled, TransportError
from cadenza.events import ChunkEvent, CompleteEvent, ErrorEvent, StreamEvent, ToolCallBatchEvent
from cadenza.message import ToolCall, ToolMetadata

logger = logging.getLogger(__name__)


@dataclass
class ToolCallFragment:
    """A fragment of a tool call from a delta-shaped stream.

    ``key`` identifies the logical call within one response (the
    chat-completions ``index``, or an item id).  Without a key the
    fragment belongs to the call named by ``call_id``, or else to the
    most recently started call.
    """

    key: int | str | None
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None


@dataclass
class PartialToolCall:
    key: int | str
    call_id: str | None = None
    name: str = ""
    arguments: str = ""
    finished: bool = False


class ToolCallAccumulator:
    """Assembles complete tool calls from streaming events.

    A call goes through ``start`` -> ``append``* -> ``finish``.  Argument
    text only grows until the call finishes; ``finish`` may carry the
    full argument string, which then replaces the appended deltas.
    Calls that never finish are dropped by :meth:`finalize`.
    """

    def __init__(self, metadata: Mapping[str, ToolMetadata] | None = None) -> None:
        self._pending: dict[int | str, PartialToolCall] = {}
        self._metadata = metadata or {}
        self._last_key: int | str | None = None

    def start(
        self,
        key: int | str,
        call_id: str | None = None,
        name: str | None = None,
        arguments: str | None = None,
    ) -> None:
        if key in self._pending:
            return
        self._last_key = key
        self._pending[key] = PartialToolCall(
            key=key, call_id=call_id, name=name or "", arguments=arguments or ""
        )

    def append(self, key: int | str, delta: str) -> None:
        pending = self._pending.get(key)
        if pending is None:
            logger.warning(f"Arguments delta for unknown tool call {key!r}")
            return
        if pending.finished:
            return
        pending.arguments += delta

    def finish(
        self,
        key: int | str,
        arguments: str | None = None,
        call_id: str | None = None,
        name: str | None = None,
    ) -> None:
        if key not in self._pending:
            self.start(key, call_id=call_id, name=name)
        pending = self._pending[key]
        if call_id:
            pending.call_id = call_id
        if name:
            pending.name = name
        if arguments:
            pending.arguments = arguments
        pending.finished = True

    def finish_all(self) -> None:
        """Mark every open call finished (end of a delta-shaped stream)."""
        for pending in self._pending.values():
            pending.finished = True

    def feed(self, fragment: ToolCallFragment) -> None:
        key = fragment.key
        if key is None:
            key = fragment.call_id or self._last_key
        if key is None:
            logger.warning("Tool call fragment with neither index nor id")
            return
        if key not in self._pending:
            self.start(key)
        pending = self._pending[key]
        if fragment.call_id:
            pending.call_id = fragment.call_id
        if fragment.name:
            pending.name = fragment.name
        if fragment.arguments_delta:
            self.append(key, fragment.arguments_delta)

    def finalize(self) -> list[ToolCall]:
        """Return finished tool calls in the order they started."""
        calls = []
        for pending in self._pending.values():
            if not pending.finished:
                logger.warning(f"Dropping unfinished tool call {pending.key!r} ({pending.name})")
                continue
            try:
                args = json.loads(pending.arguments) if pending.arguments.strip() else {}
            except json.JSONDecodeError as e:
                logger.warning(f"Dropping tool call {pending.name} with invalid JSON arguments: {e}")
                continue
            if not isinstance(args, dict):
                logger.warning(f"Dropping tool call {pending.name}: arguments are not an object")
                continue
            calls.append(ToolCall(
                id=pending.call_id or str(pending.key),
                namespaced_tool_name=pending.name,
                args=args,
                tool_metadata=self._metadata.get(pending.name),
            ))
        return calls


# ---------------------------------------------------------------------------
# Callback dispatch
# ---------------------------------------------------------------------------

@dataclass
class StreamHandlers:
    """Callbacks for one stream.  Each may be sync or async.

    ``on_complete`` receives ``(citations, tool_calls)``; either is
    ``None`` rather than empty when absent.  Without ``on_error`` a
    stream error raises :class:`TransportError`.
    """

    on_chunk: Callable[[str], Any]
    on_complete: Callable[[list[str] | None, list[ToolCall] | None], Any]
    on_tool_calls: Callable[[list[ToolCall]], Any] | None = None
    on_error: Callable[[str], Any] | None = None


async def _invoke(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


async def dispatch_events(events: AsyncIterator[StreamEvent], handlers: StreamHandlers) -> None:
    """Drive ``handlers`` from a canonical event stream."""
    tool_calls: list[ToolCall] = []
    async for event in events:
        if isinstance(event, ChunkEvent):
            await _invoke(handlers.on_chunk, event.text)
        elif isinstance(event, ToolCallBatchEvent):
            tool_calls.extend(event.calls)
            if handlers.on_tool_calls is not None:
                await _invoke(handlers.on_tool_calls, event.calls)
        elif isinstance(event, CompleteEvent):
            await _invoke(handlers.on_complete, event.citations, tool_calls or None)
            return
        elif isinstance(event, ErrorEvent):
            if handlers.on_error is None:
                raise TransportError(event.message)
            await _invoke(handlers.on_error, event.message)
            return


async def iterate_until_aborted(
    events: AsyncIterator[StreamEvent],
    abort: asyncio.Event | None,
) -> AsyncIterator[StreamEvent]:
    """Yield from ``events`` until ``abort`` is set.

    Raises :class:`Cancelled` once the abort fires; the pending read is
    cancelled and the underlying iterator closed.
    """
    iterator = aiter(events)
    if abort is None:
        async for event in iterator:
            yield event
        return

    abort_wait = asyncio.ensure_future(abort.wait())
    try:
        while True:
            if abort.is_set():
                raise Cancelled("Generation aborted")
            next_event = asyncio.ensure_future(anext(iterator))
            done, _ = await asyncio.wait(
                {next_event, abort_wait}, return_when=asyncio.FIRST_COMPLETED
            )
            if next_event not in done:
                next_event.cancel()
                with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                    await next_event
                raise Cancelled("Generation aborted")
            try:
                event = next_event.result()
            except StopAsyncIteration:
                return
            yield event
    finally:
        abort_wait.cancel()
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
