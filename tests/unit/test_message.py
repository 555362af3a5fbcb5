import pytest

from cadenza.message import (
    AssistantMessage,
    Attachment,
    AttachmentType,
    MessageStatus,
    ToolCall,
    ToolResult,
    ToolResultsMessage,
    UserMessage,
)


def test_serializers_emit_enum_values():
    msg = AssistantMessage(
        content="hi",
        tool_calls=[ToolCall(id="c1", namespaced_tool_name="web_search", args={"query": "x"})],
    )
    dumped = msg.model_dump()

    assert dumped["role"] == "assistant"
    assert dumped["status"] == "pending"
    assert dumped["tool_calls"][0]["args"] == {"query": "x"}


def test_user_message_attachment_type_serialized():
    msg = UserMessage(
        content="see file",
        attachments=[Attachment(type=AttachmentType.PDF, original_name="a.pdf", path="/tmp/a.pdf")],
    )
    assert msg.model_dump()["attachments"][0]["type"] == "pdf"


def test_tool_results_message_role():
    msg = ToolResultsMessage(tool_results=[ToolResult(id="c1", content="ok")])
    assert msg.model_dump()["role"] == "tool_results"


class TestStatusTransitions:
    def test_forward_path(self):
        msg = AssistantMessage()
        msg.transition(MessageStatus.STREAMING)
        msg.transition(MessageStatus.COMPLETE)

        assert msg.status == MessageStatus.COMPLETE
        assert msg.is_finished

    def test_same_status_is_noop(self):
        msg = AssistantMessage(status=MessageStatus.ERROR)
        msg.transition(MessageStatus.ERROR)
        assert msg.status == MessageStatus.ERROR

    @pytest.mark.parametrize("final", [MessageStatus.COMPLETE, MessageStatus.ERROR, MessageStatus.STOPPED])
    def test_finished_message_cannot_reopen(self, final):
        msg = AssistantMessage(status=final)
        with pytest.raises(ValueError, match="Cannot move"):
            msg.transition(MessageStatus.STREAMING)

    def test_streaming_cannot_go_back_to_pending(self):
        msg = AssistantMessage(status=MessageStatus.STREAMING)
        with pytest.raises(ValueError):
            msg.transition(MessageStatus.PENDING)
        assert not msg.is_finished
