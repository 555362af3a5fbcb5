"""Remote streaming transport.

Used when generation runs on a backend service.  The backend streams
the canonical events over ``POST {base_url}/stream``; this client turns
them back into :class:`StreamEvent` objects or callbacks.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, replace

import httpx
from httpx_sse import ServerSentEvent
from httpx_sse._decoders import SSEDecoder

from cadenza.errors import Cancelled, ProtocolError
from cadenza.events import ErrorEvent, StreamEvent
from cadenza.message import Message
from cadenza.sse import parse_data
from cadenza.streaming import StreamHandlers, dispatch_events, iterate_until_aborted
from cadenza.toolsets import UserTool, get_namespaced_tool_name

logger = logging.getLogger(__name__)


def create_streaming_session_id() -> str:
    return str(uuid.uuid4())


@dataclass
class RemoteStreamRequest:
    """
    Args:
        streaming_session_id: Generated per stream; the backend rejects
            a second stream writing the same message with another id.
    """

    auth_token: str
    message_id: str
    chat_id: str
    model: str
    conversation: list[Message]
    system_prompt: str | None = None
    tools: list[UserTool] | None = None
    streaming_session_id: str = ""

    def __post_init__(self) -> None:
        if not self.streaming_session_id:
            self.streaming_session_id = create_streaming_session_id()

    def to_body(self) -> dict:
        return {
            "authToken": self.auth_token,
            "messageId": self.message_id,
            "chatId": self.chat_id,
            "model": self.model,
            "conversation": [m.model_dump(mode="json") for m in self.conversation],
            "streamingSessionId": self.streaming_session_id,
            "systemPrompt": self.system_prompt,
            "tools": [
                {
                    "name": get_namespaced_tool_name(t),
                    "description": t.description,
                    "inputSchema": t.input_schema,
                }
                for t in self.tools or []
            ],
        }


def _error_text(status_code: int, body: bytes) -> str:
    text = body.decode("utf-8", errors="replace").strip()
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        payload = None
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return text or f"HTTP {status_code}"


class RemoteStreamClient:
    """Client for the backend ``/stream`` endpoint.

    Args:
        base_url: Backend root; ``/stream`` is appended.
        client: Optional shared ``httpx.AsyncClient``.
    """

    def __init__(self, base_url: str, client: httpx.AsyncClient | None = None, timeout: float = 600.0):
        self.base_url = base_url.rstrip("/")
        self._client = client
        self.timeout = timeout

    async def events(self, request: RemoteStreamRequest) -> AsyncIterator[StreamEvent]:
        """Yield canonical events; HTTP failures become one ``ErrorEvent``."""
        client = self._client or httpx.AsyncClient(timeout=httpx.Timeout(self.timeout, connect=10.0))
        try:
            async with client.stream("POST", f"{self.base_url}/stream", json=request.to_body()) as response:
                if not response.is_success:
                    body = await response.aread()
                    message = _error_text(response.status_code, body)
                    logger.error(f"Remote stream returned HTTP {response.status_code}: {message}")
                    yield ErrorEvent(message=message)
                    return

                decoder = SSEDecoder()
                received = False
                async for line in response.aiter_lines():
                    received = True
                    sse = decoder.decode(line.rstrip("\r\n"))
                    event = self._to_event(sse) if sse is not None else None
                    if event is not None:
                        yield event
                if not received:
                    yield ErrorEvent(message="No response body received")
                    return
                # A trailing event without its blank line is delivered best-effort.
                sse = decoder.decode("")
                event = self._to_event(sse, strict=False) if sse is not None else None
                if event is not None:
                    yield event
        except httpx.HTTPError as e:
            logger.exception("Remote stream failed")
            yield ErrorEvent(message=str(e) or type(e).__name__)
        finally:
            if self._client is None:
                await client.aclose()

    @staticmethod
    def _to_event(sse: ServerSentEvent, strict: bool = True) -> StreamEvent | None:
        if not sse.data:
            return None
        try:
            return parse_data(sse.data)
        except ProtocolError as e:
            if strict:
                logger.warning(f"Skipping remote event: {e}")
            return None

    async def stream(
        self,
        request: RemoteStreamRequest,
        handlers: StreamHandlers,
        abort: asyncio.Event | None = None,
    ) -> None:
        """Dispatch events to ``handlers``; an abort returns silently."""
        try:
            await dispatch_events(iterate_until_aborted(self.events(request), abort), handlers)
        except Cancelled:
            logger.info(f"Remote stream for message {request.message_id} aborted")


class RemoteSource:
    """Event source for :class:`~cadenza.runner.Runner` backed by the remote transport."""

    def __init__(self, client: RemoteStreamClient, request: RemoteStreamRequest):
        self.client = client
        self.request = request

    @property
    def model_name(self) -> str:
        return self.request.model

    def open(self, conversation: list[Message], message_id: str) -> AsyncIterator[StreamEvent]:
        request = replace(
            self.request,
            conversation=conversation,
            message_id=message_id,
            streaming_session_id=create_streaming_session_id(),
        )
        return self.client.events(request)
