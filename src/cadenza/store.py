"""Conversation persistence boundary.

The orchestrator needs only a handful of idempotent operations; any
local or remote database can sit behind :class:`MessageStore`.
"""

from __future__ import annotations

import uuid
from typing import Protocol

from cadenza.message import AssistantMessage, Message, MessageStatus, ToolCall


class MessageStore(Protocol):
    async def append_message(self, chat_id: str, message: Message) -> str:
        """Add a message to a chat and return its id."""
        ...

    async def update_message(self, message_id: str, content: str, tool_calls: list[ToolCall] | None = None) -> None:
        """Replace the content (and tool calls) of an assistant message."""
        ...

    async def set_status(self, message_id: str, status: MessageStatus, error_message: str | None = None) -> None:
        ...


class InMemoryMessageStore:
    def __init__(self) -> None:
        self.messages: dict[str, Message] = {}
        self.chats: dict[str, list[str]] = {}
        self.writes: list[tuple[str, str]] = []

    async def append_message(self, chat_id: str, message: Message) -> str:
        message_id = uuid.uuid4().hex
        self.messages[message_id] = message.model_copy(deep=True)
        self.chats.setdefault(chat_id, []).append(message_id)
        return message_id

    async def update_message(self, message_id: str, content: str, tool_calls: list[ToolCall] | None = None) -> None:
        message = self._assistant(message_id)
        message.content = content
        if tool_calls is not None:
            message.tool_calls = list(tool_calls)
        self.writes.append((message_id, content))

    async def set_status(self, message_id: str, status: MessageStatus, error_message: str | None = None) -> None:
        message = self._assistant(message_id)
        if message.status == status:
            return
        message.transition(status)
        message.error_message = error_message

    def conversation(self, chat_id: str) -> list[Message]:
        return [self.messages[mid] for mid in self.chats.get(chat_id, [])]

    def _assistant(self, message_id: str) -> AssistantMessage:
        message = self.messages.get(message_id)
        if not isinstance(message, AssistantMessage):
            raise KeyError(f"No assistant message {message_id}")
        return message
