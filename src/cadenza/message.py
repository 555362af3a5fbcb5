from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_serializer


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULTS = "tool_results"


class MessageStatus(Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"
    STOPPED = "stopped"


# Forward-only: a finished message is never reopened.
_TRANSITIONS: dict[MessageStatus, set[MessageStatus]] = {
    MessageStatus.PENDING: {
        MessageStatus.STREAMING,
        MessageStatus.COMPLETE,
        MessageStatus.ERROR,
        MessageStatus.STOPPED,
    },
    MessageStatus.STREAMING: {
        MessageStatus.COMPLETE,
        MessageStatus.ERROR,
        MessageStatus.STOPPED,
    },
    MessageStatus.COMPLETE: set(),
    MessageStatus.ERROR: set(),
    MessageStatus.STOPPED: set(),
}


class AttachmentType(Enum):
    TEXT = "text"
    WEBPAGE = "webpage"
    IMAGE = "image"
    PDF = "pdf"


class Attachment(BaseModel):
    type: AttachmentType
    original_name: str
    path: str

    @field_serializer("type")
    def serialize_type(self, type: AttachmentType, _info) -> str:
        return type.value


class ToolMetadata(BaseModel):
    description: str | None = None
    input_schema: dict[str, Any] | None = None


class ToolCall(BaseModel):
    """A model's request to run one tool.

    ``args`` is always parsed JSON; calls whose arguments never became
    valid JSON are dropped before a ``ToolCall`` is built.
    """

    id: str
    namespaced_tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    tool_metadata: ToolMetadata | None = None


class ToolResult(BaseModel):
    id: str
    content: str


class Message(BaseModel):
    role: MessageRole

    @field_serializer("role")
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value


class UserMessage(Message):
    role: MessageRole = MessageRole.USER
    content: str
    attachments: list[Attachment] = Field(default_factory=list)


class AssistantMessage(Message):
    role: MessageRole = MessageRole.ASSISTANT
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    status: MessageStatus = MessageStatus.PENDING
    error_message: str | None = None
    model: str | None = None

    @field_serializer("status")
    def serialize_status(self, status: MessageStatus, _info) -> str:
        return status.value

    @property
    def is_finished(self) -> bool:
        return not _TRANSITIONS[self.status]

    def transition(self, status: MessageStatus) -> None:
        """Move to ``status``, refusing to leave a finished state."""
        if status == self.status:
            return
        if status not in _TRANSITIONS[self.status]:
            raise ValueError(
                f"Cannot move message from {self.status.value} to {status.value}"
            )
        self.status = status


class ToolResultsMessage(Message):
    role: MessageRole = MessageRole.TOOL_RESULTS
    tool_results: list[ToolResult]


Conversation = list[Message]
