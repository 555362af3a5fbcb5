"""Optional OpenTelemetry tracing.

``instrument()`` turns on spans for generations, provider streams and
tool calls.  Without it, or without ``opentelemetry-api`` installed,
every helper here is a no-op.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "cadenza") -> None:
    """Enable tracing with the globally configured TracerProvider.

    Install the extra with ``pip install cadenza[otel]`` and configure a
    provider (for example with the OpenTelemetry SDK) before calling.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install cadenza[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info("No TracerProvider configured; spans will be discarded")
    else:
        logger.info("Cadenza instrumentation enabled")


def uninstrument() -> None:
    global _tracer
    _tracer = None


@asynccontextmanager
async def generation_span(message_id: str, model: str | None):
    """Span covering every round of one generation."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        "generate",
        attributes={
            "gen_ai.operation.name": "generate",
            "gen_ai.request.model": model or "unknown",
            "cadenza.message.id": message_id,
        },
    ) as span:
        yield span


@asynccontextmanager
async def completion_span(system: str, model: str):
    """Span around one streaming provider call."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        f"chat {model}",
        kind=SpanKind.CLIENT,
        attributes={
            "gen_ai.operation.name": "chat",
            "gen_ai.provider.name": system,
            "gen_ai.request.model": model,
        },
    ) as span:
        yield span


@asynccontextmanager
async def tool_span(tool_name: str, call_id: str):
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"execute_tool {tool_name}",
        attributes={
            "gen_ai.operation.name": "execute_tool",
            "gen_ai.tool.name": tool_name,
            "gen_ai.tool.call.id": call_id,
        },
    ) as span:
        yield span


def record_usage(span, usage) -> None:
    """Copy token counts onto a span.

    Accepts both chat-completions (``prompt_tokens``) and Responses
    (``input_tokens``) usage objects, or Ollama's dict counters.
    """
    if span is None or usage is None:
        return
    if isinstance(usage, dict):
        input_tokens = usage.get("prompt_eval_count")
        output_tokens = usage.get("eval_count")
    else:
        input_tokens = getattr(usage, "input_tokens", None) or getattr(usage, "prompt_tokens", None)
        output_tokens = getattr(usage, "output_tokens", None) or getattr(usage, "completion_tokens", None)
    if input_tokens is not None:
        span.set_attribute("gen_ai.usage.input_tokens", input_tokens)
    if output_tokens is not None:
        span.set_attribute("gen_ai.usage.output_tokens", output_tokens)


def record_error(span, exception: BaseException) -> None:
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute("error.type", type(exception).__qualname__)
