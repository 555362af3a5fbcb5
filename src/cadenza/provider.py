"""Provider adapters.

Each adapter turns a :class:`StreamRequest` into a vendor streaming
call and yields canonical :class:`~cadenza.events.StreamEvent` objects.
Model ids look like ``"openai::gpt-4o"``; :func:`get_provider` picks the
adapter from the prefix.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx
import openai
from openai import AsyncOpenAI

from cadenza.config import ApiKeys, Settings, get_settings
from cadenza.conversion import (
    chat_tool_definitions,
    responses_tool_definitions,
    to_chat_messages,
    to_ollama_messages,
    to_responses_input,
)
from cadenza.errors import UnsupportedModelError
from cadenza.events import ChunkEvent, CompleteEvent, ErrorEvent, StreamEvent, ToolCallBatchEvent
from cadenza.instrumentation import completion_span, record_error, record_usage
from cadenza.message import Message, ToolMetadata
from cadenza.streaming import StreamHandlers, ToolCallAccumulator, ToolCallFragment, dispatch_events
from cadenza.toolsets import UserTool, get_namespaced_tool_name

logger = logging.getLogger(__name__)

MODEL_ID_SEPARATOR = "::"


@dataclass
class ModelConfig:
    model_id: str
    system_prompt: str | None = None
    reasoning_effort: Literal["low", "medium", "high"] | None = None

    @property
    def provider_name(self) -> str:
        return split_model_id(self.model_id)[0]

    @property
    def model_name(self) -> str:
        return split_model_id(self.model_id)[1]


@dataclass
class StreamRequest:
    model: ModelConfig
    conversation: list[Message]
    api_keys: ApiKeys = field(default_factory=ApiKeys)
    tools: list[UserTool] | None = None
    base_url: str | None = None
    extra_headers: dict[str, str] | None = None


def split_model_id(model_id: str) -> tuple[str, str]:
    provider, sep, model = model_id.partition(MODEL_ID_SEPARATOR)
    if not sep or not provider or not model:
        raise UnsupportedModelError(f"Unsupported model: {model_id}")
    return provider, model


def describe_error(label: str, error: Exception) -> str:
    """Short user-facing text for a provider failure."""
    if isinstance(error, openai.AuthenticationError):
        return f"Invalid API key for {label}. Check your key in Settings."
    if isinstance(error, openai.PermissionDeniedError):
        return f"Your {label} API key does not have access to this model."
    if isinstance(error, openai.RateLimitError):
        return f"Rate limited by {label}. Try again shortly."
    if isinstance(error, openai.NotFoundError):
        return f"{label} could not find this model."
    if isinstance(error, openai.BadRequestError):
        return f"{label} rejected the request."
    if isinstance(error, openai.APIStatusError):
        return f"{label} returned an error (HTTP {error.status_code})."
    if isinstance(error, (openai.APITimeoutError, httpx.TimeoutException)):
        return f"{label} took too long to respond."
    if isinstance(error, (openai.APIConnectionError, httpx.ConnectError)):
        return f"Could not connect to {label}."
    if isinstance(error, httpx.HTTPStatusError):
        return f"{label} returned an error (HTTP {error.response.status_code})."
    return f"Something went wrong while talking to {label}."


@asynccontextmanager
async def openai_client(shared: AsyncOpenAI | None, **kwargs: Any) -> AsyncIterator[AsyncOpenAI]:
    """Yield ``shared`` as is, or a client for one request that is closed afterwards."""
    if shared is not None:
        yield shared
        return
    async with AsyncOpenAI(**kwargs) as client:
        yield client


def _tool_metadata(tools: list[UserTool] | None) -> dict[str, ToolMetadata]:
    return {
        get_namespaced_tool_name(t): ToolMetadata(description=t.description, input_schema=t.input_schema)
        for t in tools or []
    }


def _terminal_events(acc: ToolCallAccumulator, citations: list[str] | None = None) -> list[StreamEvent]:
    calls = acc.finalize()
    events: list[StreamEvent] = []
    if calls:
        events.append(ToolCallBatchEvent(calls=calls))
    events.append(CompleteEvent(has_tool_calls=bool(calls), citations=citations or None))
    return events


def _think_block(parts: list[str]) -> str:
    return "<think>\n" + "".join(parts).strip() + "\n</think>\n\n"


async def _chat_completion_events(
    stream: AsyncIterator[Any],
    acc: ToolCallAccumulator,
    span=None,
    citations: list[str] | None = None,
) -> AsyncIterator[StreamEvent]:
    """Normalize a chat-completions chunk stream.

    Reasoning deltas are held back and emitted as one ``<think>`` block
    just before the first answer text. ``citations``, when given, is
    filled in place from chunk-level citation lists.
    """
    reasoning: list[str] = []
    async for chunk in stream:
        if citations is not None and getattr(chunk, "citations", None):
            citations[:] = list(chunk.citations)
        if getattr(chunk, "usage", None):
            record_usage(span, chunk.usage)
        if not chunk.choices:
            continue
        choice = chunk.choices[0]
        delta = choice.delta
        if delta is not None:
            reasoning_text = getattr(delta, "reasoning_content", None)
            if reasoning_text:
                reasoning.append(reasoning_text)
            if delta.content:
                if reasoning:
                    yield ChunkEvent(text=_think_block(reasoning))
                    reasoning.clear()
                yield ChunkEvent(text=delta.content)
            for tc in delta.tool_calls or []:
                fn = tc.function
                acc.feed(ToolCallFragment(
                    key=getattr(tc, "index", None),
                    call_id=tc.id,
                    name=fn.name if fn else None,
                    arguments_delta=fn.arguments if fn else None,
                ))
        if choice.finish_reason:
            acc.finish_all()
    if reasoning:
        yield ChunkEvent(text=_think_block(reasoning))


class ModelProvider(ABC):
    """A vendor adapter.

    ``stream_response`` validates the request before any network call;
    configuration problems raise :class:`ConfigurationError`.  Failures
    after the stream opened are yielded as an ``ErrorEvent``.
    """

    name: str = ""
    label: str = ""
    supports_tools: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> ModelProvider:
        return cls()

    def validate(self, request: StreamRequest) -> str:
        """Return the vendor model name or raise ``ConfigurationError``."""
        provider, model = split_model_id(request.model.model_id)
        if provider != self.name:
            raise UnsupportedModelError(f"{request.model.model_id} is not a {self.label} model")
        return model

    @abstractmethod
    def stream_response(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        ...

    async def stream(self, request: StreamRequest, handlers: StreamHandlers) -> None:
        """Callback form of :meth:`stream_response`."""
        await dispatch_events(self.stream_response(request), handlers)


# ---------------------------------------------------------------------------
# OpenAI (Responses API)
# ---------------------------------------------------------------------------

OPENAI_MODELS = {
    "gpt-4o",
    "gpt-4o-mini",
    "o1",
    "o3-mini",
    "gpt-4.5-preview",
    "o1-pro",
    "gpt-4.1",
    "gpt-4.1-mini",
    "gpt-4.1-nano",
    "o3",
    "o4-mini",
    "o3-pro",
    "o3-deep-research",
    "gpt-5",
    "gpt-5-mini",
    "gpt-5-nano",
}
OPENAI_REASONING_MODELS = {
    "o1", "o3-mini", "o1-pro", "o3", "o4-mini", "o3-pro", "o3-deep-research",
    "gpt-5", "gpt-5-mini", "gpt-5-nano",
}
OPENAI_NO_IMAGE_MODELS = {"o1", "o3-mini"}
DEEP_RESEARCH_MODEL = "o3-deep-research"


def format_citations(text: str, annotations: list[Any]) -> tuple[str, list[str]]:
    """Render URL citations as an appended markdown block."""
    block = "\n\n---\n**Citations:**\n"
    urls = []
    for annotation in annotations:
        if getattr(annotation, "type", None) != "url_citation":
            continue
        urls.append(annotation.url)
        block += f"\n- **{annotation.title}**\n"
        block += f"  URL: {annotation.url}\n"
        start = getattr(annotation, "start_index", None)
        end = getattr(annotation, "end_index", None)
        if text and start is not None and end is not None:
            block += f'  Cited text: "{text[start:end]}"\n'
    return (block if urls else ""), urls


class OpenAIProvider(ModelProvider):
    name = "openai"
    label = "OpenAI"
    supports_tools = True

    def __init__(self, client: AsyncOpenAI | None = None):
        self.client = client

    def validate(self, request: StreamRequest) -> str:
        model = super().validate(request)
        if model not in OPENAI_MODELS:
            raise UnsupportedModelError(f"Unsupported model: {model}")
        return model

    def _client_for(self, request: StreamRequest, api_key: str) -> AbstractAsyncContextManager[AsyncOpenAI]:
        return openai_client(
            self.client,
            api_key=api_key,
            base_url=request.base_url,
            default_headers=request.extra_headers,
            max_retries=2,
            timeout=600.0,
        )

    def build_params(self, request: StreamRequest, model: str) -> dict[str, Any]:
        reasoning = model in OPENAI_REASONING_MODELS
        params: dict[str, Any] = {
            "model": model,
            "input": to_responses_input(
                request.conversation,
                system_prompt=request.model.system_prompt,
                image_support=model not in OPENAI_NO_IMAGE_MODELS,
                reasoning=reasoning,
            ),
            "stream": True,
        }
        tools = request.tools or []
        if model == DEEP_RESEARCH_MODEL:
            tools = [t for t in tools if t.toolset_name != "web"]
        function_tools = responses_tool_definitions(tools)

        if model == DEEP_RESEARCH_MODEL:
            params["reasoning"] = {"summary": "auto"}
            params["tools"] = [
                {"type": "web_search_preview"},
                {"type": "code_interpreter", "container": {"type": "auto", "file_ids": []}},
                *function_tools,
            ]
            params["tool_choice"] = "auto"
        else:
            if reasoning:
                params["reasoning"] = {"effort": request.model.reasoning_effort or "medium"}
            params["tools"] = function_tools
            params["tool_choice"] = "auto" if function_tools else "none"
        return params

    async def stream_response(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        model = self.validate(request)
        api_key = request.api_keys.require("openai")
        params = self.build_params(request, model)
        acc = ToolCallAccumulator(_tool_metadata(request.tools))
        citations: list[str] = []

        async with (
            self._client_for(request, api_key) as client,
            completion_span(self.name, model) as span,
        ):
            try:
                stream = await client.responses.create(**params)
                async for event in stream:
                    for out in self._handle_event(event, acc, citations, span):
                        yield out
                        if isinstance(out, ErrorEvent):
                            return
            except openai.APIError as e:
                logger.exception(f"OpenAI stream failed for {model}")
                record_error(span, e)
                yield ErrorEvent(message=describe_error(self.label, e))
                return

        for out in _terminal_events(acc, citations):
            yield out

    def _handle_event(self, event: Any, acc: ToolCallAccumulator, citations: list[str], span) -> list[StreamEvent]:
        kind = getattr(event, "type", None)
        if kind == "response.output_text.delta":
            return [ChunkEvent(text=event.delta)] if event.delta else []
        if kind == "response.output_item.added":
            item = event.item
            if item.type == "function_call":
                acc.start(item.id, call_id=item.call_id, name=item.name, arguments=item.arguments or "")
        elif kind == "response.function_call_arguments.delta":
            acc.append(event.item_id, event.delta)
        elif kind == "response.function_call_arguments.done":
            acc.finish(event.item_id, arguments=event.arguments)
        elif kind == "response.output_item.done":
            item = event.item
            if item.type == "function_call":
                acc.finish(item.id, arguments=item.arguments, call_id=item.call_id, name=item.name)
        elif kind == "response.reasoning_summary_text.done":
            if event.text:
                return [ChunkEvent(text=_think_block([event.text]))]
        elif kind == "response.completed":
            response = event.response
            record_usage(span, getattr(response, "usage", None))
            return self._citation_events(response, citations)
        elif kind in ("response.failed", "error"):
            message = self._failure_message(event)
            logger.error(f"OpenAI reported a failed response: {message}")
            return [ErrorEvent(message=f"{self.label} could not complete the response.")]
        return []

    def _citation_events(self, response: Any, citations: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for item in getattr(response, "output", None) or []:
            if getattr(item, "type", None) != "message":
                continue
            for content in item.content or []:
                annotations = getattr(content, "annotations", None)
                if not annotations:
                    continue
                block, urls = format_citations(getattr(content, "text", ""), annotations)
                if block:
                    citations.extend(urls)
                    events.append(ChunkEvent(text=block))
        return events

    @staticmethod
    def _failure_message(event: Any) -> str:
        error = getattr(event, "error", None)
        if error is None and getattr(event, "response", None) is not None:
            error = getattr(event.response, "error", None)
        if error is None:
            return getattr(event, "message", "unknown error")
        return getattr(error, "message", str(error))


# ---------------------------------------------------------------------------
# Chat-completions vendors
# ---------------------------------------------------------------------------

GOOGLE_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai"
GOOGLE_MODELS = {
    "gemini-2.0-flash-exp",
    "gemini-2.0-flash-thinking-exp",
    "gemini-2.0-flash-lite-preview-02-05",
    "gemini-2.0-pro-exp-02-05",
    "gemini-2.5-pro-exp-03-25",
    "gemini-2.0-flash",
    "gemini-2.5-pro-preview-03-25",
    "gemini-2.5-flash",
}
GOOGLE_MODEL_ALIASES = {
    "gemini-2.5-pro-latest": "gemini-2.5-pro-preview-06-05",
    "gemini-2.5-flash-preview-04-17": "gemini-2.5-flash",
}


class GoogleProvider(ModelProvider):
    name = "google"
    label = "Google AI"
    supports_tools = True

    def __init__(self, client: AsyncOpenAI | None = None):
        self.client = client

    def validate(self, request: StreamRequest) -> str:
        model = super().validate(request)
        if model in GOOGLE_MODEL_ALIASES:
            return GOOGLE_MODEL_ALIASES[model]
        if model not in GOOGLE_MODELS:
            raise UnsupportedModelError(f"Unsupported model: {model}")
        return model

    async def stream_response(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        model = self.validate(request)
        api_key = request.api_keys.require("google")
        params: dict[str, Any] = {
            "model": model,
            "messages": to_chat_messages(request.conversation, request.model.system_prompt),
            "stream": True,
        }
        if request.tools:
            params["tools"] = chat_tool_definitions(request.tools)
            params["tool_choice"] = "auto"
        acc = ToolCallAccumulator(_tool_metadata(request.tools))

        async with (
            openai_client(
                self.client,
                api_key=api_key,
                base_url=request.base_url or GOOGLE_BASE_URL,
                default_headers=request.extra_headers,
            ) as client,
            completion_span(self.name, model) as span,
        ):
            try:
                stream = await client.chat.completions.create(**params)
                async for event in _chat_completion_events(stream, acc, span):
                    yield event
            except openai.APIError as e:
                logger.exception(f"Google stream failed for {model}")
                record_error(span, e)
                yield ErrorEvent(message=describe_error(self.label, e))
                return

        for event in _terminal_events(acc):
            yield event


GROK_BASE_URL = "https://api.x.ai/v1"
GROK_MODELS = {"grok-3-beta", "grok-3-mini-beta", "grok-3-mini-fast-beta", "grok-3-fast-beta"}


class GrokProvider(ModelProvider):
    name = "grok"
    label = "Grok"

    def __init__(self, client: AsyncOpenAI | None = None):
        self.client = client

    def validate(self, request: StreamRequest) -> str:
        model = super().validate(request)
        if model not in GROK_MODELS:
            raise UnsupportedModelError(f"Unsupported model: {model}")
        return model

    async def stream_response(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        model = self.validate(request)
        api_key = request.api_keys.require("grok")
        messages = to_chat_messages(
            request.conversation, request.model.system_prompt, function_support=False
        )
        acc = ToolCallAccumulator()

        async with (
            openai_client(
                self.client,
                api_key=api_key,
                base_url=request.base_url or GROK_BASE_URL,
                default_headers=request.extra_headers,
            ) as client,
            completion_span(self.name, model) as span,
        ):
            try:
                stream = await client.chat.completions.create(
                    model=model,
                    messages=messages,
                    stream=True,
                    extra_body={"include_reasoning": True},
                )
                async for event in _chat_completion_events(stream, acc, span):
                    yield event
            except openai.APIError as e:
                logger.exception(f"Grok stream failed for {model}")
                record_error(span, e)
                yield ErrorEvent(message=describe_error(self.label, e))
                return

        yield CompleteEvent(has_tool_calls=False)


PERPLEXITY_BASE_URL = "https://api.perplexity.ai"
PERPLEXITY_MODELS = {
    "llama-3.1-sonar-huge-128k-online",
    "sonar-pro",
    "sonar",
    "r1-1776",
    "sonar-deep-research",
    "sonar-reasoning-pro",
}


def format_sources(citations: list[str]) -> str:
    return "\n\nSources:\n" + "\n".join(f"{i}. [{url}]({url})" for i, url in enumerate(citations, 1))


class PerplexityProvider(ModelProvider):
    name = "perplexity"
    label = "Perplexity"

    def __init__(self, client: AsyncOpenAI | None = None):
        self.client = client

    def validate(self, request: StreamRequest) -> str:
        model = super().validate(request)
        if model not in PERPLEXITY_MODELS:
            raise UnsupportedModelError(f"Unsupported model: {model}")
        return model

    async def stream_response(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        model = self.validate(request)
        api_key = request.api_keys.require("perplexity")
        messages = to_chat_messages(
            request.conversation,
            request.model.system_prompt,
            image_support=False,
            function_support=False,
        )
        acc = ToolCallAccumulator()
        citations: list[str] = []

        async with (
            openai_client(
                self.client,
                api_key=api_key,
                base_url=request.base_url or PERPLEXITY_BASE_URL,
                default_headers=request.extra_headers,
            ) as client,
            completion_span(self.name, model) as span,
        ):
            try:
                stream = await client.chat.completions.create(model=model, messages=messages, stream=True)
                async for event in _chat_completion_events(stream, acc, span, citations=citations):
                    yield event
            except openai.APIError as e:
                logger.exception(f"Perplexity stream failed for {model}")
                record_error(span, e)
                yield ErrorEvent(message=describe_error(self.label, e))
                return

        if citations:
            yield ChunkEvent(text=format_sources(citations))
        yield CompleteEvent(has_tool_calls=False, citations=citations or None)


class LMStudioProvider(ModelProvider):
    """Local LM Studio server; any loaded model name is accepted."""

    name = "lmstudio"
    label = "LM Studio"

    def __init__(self, base_url: str = "http://localhost:1234/v1", client: AsyncOpenAI | None = None):
        self.base_url = base_url
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> LMStudioProvider:
        return cls(base_url=settings.lm_studio_base_url)

    async def stream_response(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        model = self.validate(request)
        messages = to_chat_messages(
            request.conversation, request.model.system_prompt, function_support=False, flatten=True
        )
        acc = ToolCallAccumulator()

        async with (
            openai_client(
                self.client,
                api_key="not-needed",
                base_url=request.base_url or self.base_url,
                default_headers=request.extra_headers,
            ) as client,
            completion_span(self.name, model) as span,
        ):
            try:
                stream = await client.chat.completions.create(model=model, messages=messages, stream=True)
                async for event in _chat_completion_events(stream, acc, span):
                    yield event
            except openai.APIError as e:
                logger.exception(f"LM Studio stream failed for {model}")
                record_error(span, e)
                yield ErrorEvent(message=describe_error(self.label, e))
                return

        yield CompleteEvent(has_tool_calls=False)


# ---------------------------------------------------------------------------
# Ollama (native NDJSON API)
# ---------------------------------------------------------------------------

class OllamaProvider(ModelProvider):
    """Local Ollama server over its native ``/api/chat`` endpoint."""

    name = "ollama"
    label = "Ollama"

    def __init__(self, base_url: str = "http://localhost:11434", client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> OllamaProvider:
        return cls(base_url=settings.ollama_base_url)

    async def stream_response(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        model = self.validate(request)
        base_url = (request.base_url or self.base_url).rstrip("/")
        body = {
            "model": model,
            "messages": to_ollama_messages(request.conversation, request.model.system_prompt),
            "stream": True,
        }
        client = self.client or httpx.AsyncClient(timeout=httpx.Timeout(600.0, connect=10.0))

        async with completion_span(self.name, model) as span:
            try:
                async with client.stream(
                    "POST", f"{base_url}/api/chat", json=body, headers=request.extra_headers
                ) as response:
                    if response.status_code >= 400:
                        detail = (await response.aread()).decode("utf-8", errors="replace")
                        logger.error(f"Ollama returned HTTP {response.status_code}: {detail[:500]}")
                        yield ErrorEvent(message=describe_error(
                            self.label,
                            httpx.HTTPStatusError("error", request=response.request, response=response),
                        ))
                        return
                    async for line in response.aiter_lines():
                        event = self._parse_line(line, span)
                        if isinstance(event, ErrorEvent):
                            yield event
                            return
                        if event is not None:
                            yield event
            except httpx.HTTPError as e:
                logger.exception(f"Ollama stream failed for {model}")
                record_error(span, e)
                yield ErrorEvent(message=describe_error(self.label, e))
                return
            finally:
                if self.client is None:
                    await client.aclose()

        yield CompleteEvent(has_tool_calls=False)

    def _parse_line(self, line: str, span) -> StreamEvent | None:
        if not line.strip():
            return None
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.warning(f"Skipping malformed Ollama line: {line[:200]!r}")
            return None
        if data.get("error"):
            logger.error(f"Ollama error: {data['error']}")
            return ErrorEvent(message=f"{self.label} reported an error: {data['error']}")
        if data.get("done"):
            record_usage(span, data)
        content = (data.get("message") or {}).get("content")
        return ChunkEvent(text=content) if content else None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

PROVIDERS: dict[str, type[ModelProvider]] = {
    cls.name: cls
    for cls in (
        OpenAIProvider,
        GoogleProvider,
        GrokProvider,
        PerplexityProvider,
        OllamaProvider,
        LMStudioProvider,
    )
}


def get_provider(model_id: str, settings: Settings | None = None) -> ModelProvider:
    """
    Raises:
        UnsupportedModelError: If no adapter handles the model id prefix.
    """
    provider_name, _ = split_model_id(model_id)
    cls = PROVIDERS.get(provider_name)
    if cls is None:
        raise UnsupportedModelError(f"Unsupported provider: {provider_name}")
    return cls.from_settings(settings or get_settings())

