"""Conversation to vendor wire-format conversion.

Attachments a vendor cannot take natively are inlined as text or
replaced by a short marker, never silently dropped.
"""

import base64
import json
import logging
import mimetypes
from pathlib import Path

from cadenza.message import (
    AssistantMessage,
    Attachment,
    AttachmentType,
    Message,
    ToolResultsMessage,
    UserMessage,
)
from cadenza.toolsets import UserTool, get_namespaced_tool_name

logger = logging.getLogger(__name__)

REASONING_DEVELOPER_PROMPT = "Markdown formatting re-enabled."


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------

def attachment_missing_flag(attachment: Attachment) -> str:
    return f'[Attachment "{attachment.original_name}" ({attachment.type.value}) could not be included]'


def encode_text_attachment(attachment: Attachment) -> str:
    """Inline a text or webpage attachment, or its missing marker."""
    try:
        content = Path(attachment.path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Could not read attachment {attachment.path}: {e}")
        return attachment_missing_flag(attachment)
    tag = "webpage" if attachment.type == AttachmentType.WEBPAGE else "attachment"
    return f'<{tag} name="{attachment.original_name}">\n{content}\n</{tag}>'


def read_attachment_base64(attachment: Attachment) -> str | None:
    try:
        data = Path(attachment.path).read_bytes()
    except OSError as e:
        logger.warning(f"Could not read attachment {attachment.path}: {e}")
        return None
    return base64.b64encode(data).decode("ascii")


def attachment_data_url(attachment: Attachment) -> str | None:
    encoded = read_attachment_base64(attachment)
    if encoded is None:
        return None
    if attachment.type == AttachmentType.PDF:
        mime = "application/pdf"
    else:
        mime = mimetypes.guess_type(attachment.original_name)[0] or "image/png"
    return f"data:{mime};base64,{encoded}"


def _is_text_like(attachment: Attachment) -> bool:
    return attachment.type in (AttachmentType.TEXT, AttachmentType.WEBPAGE)


# ---------------------------------------------------------------------------
# Plain-string rendering
# ---------------------------------------------------------------------------

def llm_message_to_string(message: Message) -> str:
    """Render a message as plain text for vendors without structured turns."""
    if isinstance(message, UserMessage):
        parts = [message.content]
        for attachment in message.attachments:
            if _is_text_like(attachment):
                parts.append(encode_text_attachment(attachment))
            else:
                parts.append(attachment_missing_flag(attachment))
        return "\n\n".join(p for p in parts if p)
    if isinstance(message, AssistantMessage):
        parts = [message.content] if message.content else []
        for call in message.tool_calls:
            parts.append(
                f'<tool_call id="{call.id}" name="{call.namespaced_tool_name}">'
                f"{json.dumps(call.args)}</tool_call>"
            )
        return "\n".join(parts)
    if isinstance(message, ToolResultsMessage):
        return "\n".join(
            f'<tool_result id="{r.id}">{r.content}</tool_result>' for r in message.tool_results
        )
    raise TypeError(f"Unknown message type: {type(message).__name__}")


def _is_empty_assistant(message: Message) -> bool:
    return isinstance(message, AssistantMessage) and not message.content and not message.tool_calls


# ---------------------------------------------------------------------------
# Chat completions
# ---------------------------------------------------------------------------

def _chat_user_content(message: UserMessage, image_support: bool) -> str | list[dict]:
    if not message.attachments:
        return message.content
    parts: list[dict] = [{"type": "text", "text": message.content}]
    for attachment in message.attachments:
        if _is_text_like(attachment):
            parts.append({"type": "text", "text": encode_text_attachment(attachment)})
            continue
        url = attachment_data_url(attachment) if (
            image_support and attachment.type == AttachmentType.IMAGE
        ) else None
        if url is None:
            parts.append({"type": "text", "text": attachment_missing_flag(attachment)})
        else:
            parts.append({"type": "image_url", "image_url": {"url": url}})
    return parts


def to_chat_messages(
    conversation: list[Message],
    system_prompt: str | None = None,
    image_support: bool = True,
    function_support: bool = True,
    flatten: bool = False,
) -> list[dict]:
    """Convert to chat-completions ``messages``.

    ``flatten`` renders every turn as a plain string (local servers with
    limited multi-part support).
    """
    messages: list[dict] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for message in conversation:
        if _is_empty_assistant(message):
            continue
        if flatten:
            role = "assistant" if isinstance(message, AssistantMessage) else "user"
            messages.append({"role": role, "content": llm_message_to_string(message)})
        elif isinstance(message, UserMessage):
            messages.append({"role": "user", "content": _chat_user_content(message, image_support)})
        elif isinstance(message, AssistantMessage):
            if function_support and message.tool_calls:
                messages.append({
                    "role": "assistant",
                    "content": message.content or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.namespaced_tool_name,
                                "arguments": json.dumps(call.args),
                            },
                        }
                        for call in message.tool_calls
                    ],
                })
            else:
                messages.append({"role": "assistant", "content": llm_message_to_string(message)})
        elif isinstance(message, ToolResultsMessage):
            if function_support:
                messages.extend(
                    {"role": "tool", "tool_call_id": r.id, "content": r.content}
                    for r in message.tool_results
                )
            else:
                messages.append({"role": "user", "content": llm_message_to_string(message)})
    return messages


def chat_tool_definitions(tools: list[UserTool]) -> list[dict]:
    return [
        {
            "type": "function",
            "function": {
                "name": get_namespaced_tool_name(t),
                "description": t.description,
                "parameters": t.input_schema,
            },
        }
        for t in tools
    ]


# ---------------------------------------------------------------------------
# Responses API
# ---------------------------------------------------------------------------

def _responses_user_content(message: UserMessage, image_support: bool) -> list[dict]:
    parts: list[dict] = [{"type": "input_text", "text": message.content}]
    for attachment in message.attachments:
        if _is_text_like(attachment):
            parts.append({"type": "input_text", "text": encode_text_attachment(attachment)})
        elif attachment.type == AttachmentType.IMAGE and image_support:
            url = attachment_data_url(attachment)
            if url is None:
                parts.append({"type": "input_text", "text": attachment_missing_flag(attachment)})
            else:
                parts.append({"type": "input_image", "image_url": url})
        elif attachment.type == AttachmentType.PDF:
            url = attachment_data_url(attachment)
            if url is None:
                parts.append({"type": "input_text", "text": attachment_missing_flag(attachment)})
            else:
                parts.append({
                    "type": "input_file",
                    "filename": attachment.original_name,
                    "file_data": url,
                })
        else:
            parts.append({"type": "input_text", "text": attachment_missing_flag(attachment)})
    return parts


def to_responses_input(
    conversation: list[Message],
    system_prompt: str | None = None,
    image_support: bool = True,
    reasoning: bool = False,
) -> list[dict]:
    items: list[dict] = []
    if reasoning:
        content = REASONING_DEVELOPER_PROMPT
        if system_prompt:
            content += f"\n{system_prompt}"
        items.append({"role": "developer", "content": content})
    elif system_prompt:
        items.append({"role": "system", "content": system_prompt})

    for message in conversation:
        if _is_empty_assistant(message):
            continue
        if isinstance(message, UserMessage):
            items.append({"role": "user", "content": _responses_user_content(message, image_support)})
        elif isinstance(message, AssistantMessage):
            if message.content:
                items.append({"role": "assistant", "content": message.content})
            for call in message.tool_calls:
                items.append({
                    "type": "function_call",
                    "call_id": call.id,
                    "name": call.namespaced_tool_name,
                    "arguments": json.dumps(call.args),
                })
        elif isinstance(message, ToolResultsMessage):
            for result in message.tool_results:
                items.append({
                    "type": "function_call_output",
                    "call_id": result.id,
                    "output": result.content,
                })
    return items


def responses_tool_definitions(tools: list[UserTool]) -> list[dict]:
    return [
        {
            "type": "function",
            "name": get_namespaced_tool_name(t),
            "description": t.description,
            "parameters": t.input_schema,
            "strict": False,
        }
        for t in tools
    ]


# ---------------------------------------------------------------------------
# Ollama native chat
# ---------------------------------------------------------------------------

def to_ollama_messages(conversation: list[Message], system_prompt: str | None = None) -> list[dict]:
    messages: list[dict] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for message in conversation:
        if _is_empty_assistant(message):
            continue
        if isinstance(message, UserMessage):
            content = message.content
            for attachment in message.attachments:
                if _is_text_like(attachment):
                    try:
                        text = Path(attachment.path).read_text(encoding="utf-8")
                    except (OSError, UnicodeDecodeError) as e:
                        logger.warning(f"Could not read attachment {attachment.path}: {e}")
                        text = attachment_missing_flag(attachment)
                    content += f"\n\n[{attachment.original_name}]:\n{text}"
                else:
                    content += f"\n\n{attachment_missing_flag(attachment)}"
            messages.append({"role": "user", "content": content})
        elif isinstance(message, AssistantMessage):
            messages.append({"role": "assistant", "content": llm_message_to_string(message)})
        elif isinstance(message, ToolResultsMessage):
            messages.append({"role": "user", "content": llm_message_to_string(message)})
    return messages
