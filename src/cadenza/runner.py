import asyncio
import functools
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field, replace
from typing import Protocol

from cadenza.errors import Cancelled, ConfigurationError
from cadenza.events import (
    ChunkEvent,
    CompleteEvent,
    ErrorEvent,
    GenerationCompleteEvent,
    StreamEvent,
    ToolCallBatchEvent,
    ToolResultsEvent,
)
from cadenza.instrumentation import generation_span
from cadenza.manager import ToolsetsManager
from cadenza.message import AssistantMessage, Message, MessageStatus, ToolResult, ToolResultsMessage
from cadenza.provider import ModelProvider, StreamRequest
from cadenza.scheduler import UpdateQueue
from cadenza.store import MessageStore
from cadenza.streaming import iterate_until_aborted
from cadenza.toolsets import TOOL_CALL_INTERRUPTED_MESSAGE

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong while generating a response."
UNEXPECTED_END_MESSAGE = "The response ended unexpectedly."


class EventSource(Protocol):
    """Something that can stream one assistant turn."""

    @property
    def model_name(self) -> str | None: ...

    def open(self, conversation: list[Message], message_id: str) -> AsyncIterator[StreamEvent]: ...


class ProviderSource:
    """Streams turns through a local provider adapter."""

    def __init__(self, provider: ModelProvider, request: StreamRequest):
        self.provider = provider
        self.request = request

    @property
    def model_name(self) -> str | None:
        return self.request.model.model_id

    def open(self, conversation: list[Message], message_id: str) -> AsyncIterator[StreamEvent]:
        tools = self.request.tools if self.provider.supports_tools else None
        return self.provider.stream_response(replace(self.request, conversation=conversation, tools=tools))


@dataclass
class GenerationResult:
    """Outcome of one Runner.run() invocation.

    ``message`` is the last assistant message written; ``status`` is the
    status of the generation as a whole.
    """

    message_id: str
    message: AssistantMessage
    status: MessageStatus
    rounds: int = 0
    tool_results: list[ToolResult] = field(default_factory=list)


@dataclass
class _Round:
    message_id: str
    message: AssistantMessage
    status: MessageStatus = MessageStatus.PENDING
    error: str | None = None
    citations: list[str] | None = None


class Runner:
    """Drives one generation from first token to final status.

    Chunks are coalesced through the ``scheduler`` before they reach the
    ``store``. Tool calls run one at a time through ``toolsets``, their
    results are appended to the conversation and another round starts,
    up to ``max_rounds``.

    ``run()`` drains ``iter()``.  ``iter()`` is the streaming entry point.

    Args:
        scheduler: Coalesces per-chunk writes. Its loop must be running
            (``scheduler.start()``) for intermediate writes to land.
        store: Receives content and status writes.
        toolsets: Executes tool calls; without it tool calls end the
            generation.
        max_rounds: Maximum provider round-trips per generation.
    """

    def __init__(
        self,
        scheduler: UpdateQueue,
        store: MessageStore,
        toolsets: ToolsetsManager | None = None,
        max_rounds: int = 10,
    ):
        self.scheduler = scheduler
        self.store = store
        self.toolsets = toolsets
        self.max_rounds = max_rounds

    async def run(
        self,
        source: EventSource,
        chat_id: str,
        conversation: list[Message],
        message_id: str | None = None,
        abort: asyncio.Event | None = None,
    ) -> GenerationResult:
        result: GenerationResult | None = None
        async for event in self.iter(source, chat_id, conversation, message_id, abort):
            if isinstance(event, GenerationCompleteEvent):
                result = event.result
        if result is None:
            raise RuntimeError("iter() ended without emitting GenerationCompleteEvent")
        return result

    async def iter(
        self,
        source: EventSource,
        chat_id: str,
        conversation: list[Message],
        message_id: str | None = None,
        abort: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        conversation = list(conversation)
        message = AssistantMessage(model=source.model_name)
        if message_id is None:
            message_id = await self.store.append_message(chat_id, message)
        all_results: list[ToolResult] = []

        async with generation_span(message_id, source.model_name):
            for round_number in range(1, self.max_rounds + 1):
                current = _Round(message_id=message_id, message=message)
                async for event in self._stream_round(source, conversation, current, abort):
                    yield event

                await self.store.update_message(message_id, message.content, message.tool_calls)

                if current.status != MessageStatus.COMPLETE:
                    message.transition(current.status)
                    message.error_message = current.error
                    await self.store.set_status(message_id, current.status, current.error)
                    if current.status == MessageStatus.ERROR:
                        yield ErrorEvent(message=current.error or GENERIC_ERROR_MESSAGE)
                    break

                message.transition(MessageStatus.COMPLETE)
                await self.store.set_status(message_id, MessageStatus.COMPLETE)
                calls = message.tool_calls
                yield CompleteEvent(has_tool_calls=bool(calls), citations=current.citations)

                if not calls or self.toolsets is None:
                    break
                if round_number == self.max_rounds:
                    logger.warning(f"Generation {message_id} reached {self.max_rounds} rounds; stopping")
                    break

                results = await self._execute_tools(message, source.model_name, abort)
                all_results.extend(results)
                results_message = ToolResultsMessage(tool_results=results)
                await self.store.append_message(chat_id, results_message)
                conversation.extend([message, results_message])
                yield ToolResultsEvent(results=results)

                if abort is not None and abort.is_set():
                    current.status = MessageStatus.STOPPED
                    break

                message = AssistantMessage(model=source.model_name)
                message_id = await self.store.append_message(chat_id, message)

        status = current.status
        yield GenerationCompleteEvent(result=GenerationResult(
            message_id=message_id,
            message=message,
            status=status,
            rounds=round_number,
            tool_results=all_results,
        ))

    async def _stream_round(
        self,
        source: EventSource,
        conversation: list[Message],
        current: _Round,
        abort: asyncio.Event | None,
    ) -> AsyncIterator[StreamEvent]:
        message, message_id = current.message, current.message_id
        message.transition(MessageStatus.STREAMING)
        await self.store.set_status(message_id, MessageStatus.STREAMING)
        key = self.scheduler.start_stream()
        events = iterate_until_aborted(source.open(conversation, message_id), abort)
        try:
            async for event in events:
                if isinstance(event, ChunkEvent):
                    message.content += event.text
                    snapshot = message.content
                    self.scheduler.add_update(
                        key, len(snapshot), functools.partial(self.store.update_message, message_id, snapshot)
                    )
                    yield event
                elif isinstance(event, ToolCallBatchEvent):
                    message.tool_calls.extend(event.calls)
                    yield event
                elif isinstance(event, CompleteEvent):
                    current.status = MessageStatus.COMPLETE
                    current.citations = event.citations
                    break
                elif isinstance(event, ErrorEvent):
                    current.status = MessageStatus.ERROR
                    current.error = event.message
                    break
            else:
                if abort is not None and abort.is_set():
                    current.status = MessageStatus.STOPPED
                else:
                    logger.error(f"Stream for {message_id} ended without a terminal event")
                    current.status = MessageStatus.ERROR
                    current.error = UNEXPECTED_END_MESSAGE
        except Cancelled:
            logger.info(f"Generation for {message_id} stopped")
            current.status = MessageStatus.STOPPED
        except ConfigurationError as e:
            logger.info(f"Generation for {message_id} not started: {e}")
            current.status = MessageStatus.ERROR
            current.error = str(e)
        except Exception:
            logger.exception(f"Generation for {message_id} failed")
            current.status = MessageStatus.ERROR
            current.error = GENERIC_ERROR_MESSAGE
        finally:
            await events.aclose()
            self.scheduler.close_stream(key)
            await self.scheduler.wait_idle(key)

    async def _execute_tools(
        self, message: AssistantMessage, model_name: str | None, abort: asyncio.Event | None,
    ) -> list[ToolResult]:
        results = []
        for call in message.tool_calls:
            if abort is not None and abort.is_set():
                results.append(ToolResult(id=call.id, content=TOOL_CALL_INTERRUPTED_MESSAGE))
                continue
            results.append(await self.toolsets.execute_tool_call(call, model_name, abort))
        return results
