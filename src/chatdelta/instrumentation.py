"""OpenTelemetry spans around provider calls.

Tracing is off until :func:`instrument` is called.  Every helper here
accepts ``span=None`` and does nothing with it, so providers call them
unconditionally whether or not ``opentelemetry-api`` is installed.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None

# TokenUsage field -> GenAI semantic-convention attribute
_USAGE_ATTRIBUTES = (
    ("prompt_tokens", "gen_ai.usage.input_tokens"),
    ("completion_tokens", "gen_ai.usage.output_tokens"),
)


def instrument(*, tracer_name: str = "chatdelta") -> None:
    """Start emitting a ``chat`` span for every provider call.

    Configure a TracerProvider first, otherwise the spans go nowhere::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import (
            ConsoleSpanExporter,
            SimpleSpanProcessor,
        )

        provider = TracerProvider()
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        trace.set_tracer_provider(provider)

        from chatdelta.instrumentation import instrument
        instrument()

    Args:
        tracer_name: Instrumentation scope name given to ``get_tracer()``.

    Raises:
        ImportError: ``opentelemetry-api`` is not installed
            (``pip install chatdelta[otel]``).
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "Tracing needs opentelemetry-api: pip install chatdelta[otel]"
        )
    from opentelemetry import trace

    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured, chat spans will be dropped "
            "until one is set"
        )
        return
    logger.info(f"Tracing provider calls with tracer {tracer_name!r}")


def uninstrument() -> None:
    global _tracer
    _tracer = None


@asynccontextmanager
async def completion_span(system: str, model: str):
    """Yield a CLIENT span named ``chat {model}``, or ``None`` when disabled."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    attributes = {
        "gen_ai.operation.name": "chat",
        "gen_ai.provider.name": system,
        "gen_ai.request.model": model,
    }
    with _tracer.start_as_current_span(
        f"chat {model}", kind=SpanKind.CLIENT, attributes=attributes,
    ) as span:
        yield span


def record_usage(span, usage, response_model: str | None = None) -> None:
    """Copy token counts and the served model name onto ``span``.

    Counts the provider left out are skipped; ``usage`` may be ``None``
    when the stream carried no usage chunk.
    """
    if span is None:
        return
    if usage is not None:
        for field, attribute in _USAGE_ATTRIBUTES:
            value = getattr(usage, field, None)
            if value is not None:
                span.set_attribute(attribute, value)
    if response_model:
        span.set_attribute("gen_ai.response.model", response_model)


def record_finish_reasons(span, messages) -> None:
    """Record each choice's terminal status, in choice order."""
    if span is None or not messages:
        return
    span.set_attribute(
        "gen_ai.response.finish_reasons",
        [m.status.value for m in messages],
    )


def record_error(span, exception: BaseException) -> None:
    """Mark ``span`` as failed with ``exception``."""
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute("error.type", type(exception).__qualname__)
