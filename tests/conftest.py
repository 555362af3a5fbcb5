import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from cadenza.config import ApiKeys
from cadenza.message import Message
from cadenza.permissions import InMemoryPermissionStore, PermissionBroker
from cadenza.scheduler import UpdateQueue
from cadenza.store import InMemoryMessageStore


# ---------------------------------------------------------------------------
# Fake vendor streams (mirror the openai SDK's chunk shapes)
# ---------------------------------------------------------------------------

class FakeStream:
    """Async iterable over pre-built chunks; optionally fails midway."""

    def __init__(self, chunks, error: Exception | None = None):
        self.chunks = list(chunks)
        self.error = error
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.closed = True


def make_chat_chunk(
    content: str | None = None,
    tool_calls: list | None = None,
    finish_reason: str | None = None,
    reasoning_content: str | None = None,
    citations: list[str] | None = None,
):
    """One chat-completions stream chunk."""
    delta = SimpleNamespace(content=content, tool_calls=tool_calls, reasoning_content=reasoning_content)
    return SimpleNamespace(
        choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)],
        usage=None,
        citations=citations,
    )


def make_tool_delta(index: int | None, call_id: str | None = None, name: str | None = None, arguments: str | None = None):
    return SimpleNamespace(
        index=index,
        id=call_id,
        function=SimpleNamespace(name=name, arguments=arguments),
    )


def make_response_event(type: str, **fields):
    """One Responses API stream event."""
    return SimpleNamespace(type=type, **fields)


class FakeOpenAIClient:
    """Stand-in for ``AsyncOpenAI`` with scripted ``create`` results.

    Used as an async context manager it records that it was closed.
    """

    def __init__(self, chat_result=None, responses_result=None, **kwargs):
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=AsyncMock(return_value=chat_result)))
        self.responses = SimpleNamespace(create=AsyncMock(return_value=responses_result))
        self.kwargs = kwargs
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.closed = True


def make_openai_client(chat_stream: FakeStream | None = None, responses_stream: FakeStream | None = None):
    return FakeOpenAIClient(chat_stream, responses_stream)


# ---------------------------------------------------------------------------
# Scripted event source for the runner
# ---------------------------------------------------------------------------

class ScriptedSource:
    """Event source that replays one list of events per round.

    A round whose script ends with ``HANG`` blocks until cancelled, like
    a provider that stops sending.
    """

    HANG = object()

    def __init__(self, *rounds, model_name: str = "openai::gpt-4o"):
        self.rounds = list(rounds)
        self.model_name = model_name
        self.opened: list[tuple[list[Message], str]] = []

    def open(self, conversation, message_id):
        self.opened.append((list(conversation), message_id))
        script = self.rounds.pop(0)
        return self._replay(script)

    async def _replay(self, script):
        for item in script:
            if item is self.HANG:
                await asyncio.Event().wait()
            elif isinstance(item, Exception):
                raise item
            else:
                yield item
                await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def api_keys():
    return ApiKeys(openai="sk-test", google="g-test", grok="x-test", perplexity="p-test")


@pytest.fixture
def message_store():
    return InMemoryMessageStore()


@pytest.fixture
def permission_store():
    return InMemoryPermissionStore()


@pytest.fixture
def broker(permission_store):
    return PermissionBroker(permission_store)


@pytest_asyncio.fixture
async def scheduler():
    queue = UpdateQueue(idle_interval=0.01)
    queue.start()
    yield queue
    await queue.stop()
