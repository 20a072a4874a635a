"""
Arize Phoenix tracing integration.

Sets up OpenTelemetry tracing for the agent pipeline. Traces are sent to a
Phoenix instance for visualization. Everything here is a no-op unless
settings.enable_tracing is set.

Usage:
    from mnemosyne.tracing import setup_tracing
    setup_tracing()  # Call once at application startup
"""

import functools
import inspect
import logging
from typing import Any, Callable, TypeVar

from mnemosyne.config import settings

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

PROJECT_NAME = "mnemosyne"


def setup_tracing() -> bool:
    """
    Initialize Phoenix tracing with OpenTelemetry.

    Requires the "tracing" extra and a Phoenix server at settings.phoenix_endpoint.

    Returns:
        True if tracing was enabled
    """
    if not settings.enable_tracing:
        return False

    try:
        from openinference.instrumentation.langchain import LangChainInstrumentor
        from phoenix.otel import register
    except ImportError:
        logger.warning("Phoenix tracing dependencies not installed. Install with: pip install mnemosyne[tracing]")
        return False

    try:
        tracer_provider = register(
            project_name=PROJECT_NAME,
            endpoint=f"{settings.phoenix_endpoint}/v1/traces",
        )
        # LangGraph runs on langchain-core, so this covers the executor graph
        LangChainInstrumentor().instrument(tracer_provider=tracer_provider)
    except Exception as e:
        logger.warning(f"Failed to setup tracing: {e}")
        return False

    logger.info(f"Tracing enabled, exporting to {settings.phoenix_endpoint}")
    return True


def _start_span(span_name: str):
    from opentelemetry import trace

    return trace.get_tracer(__name__).start_as_current_span(span_name)


def traced(name: str | None = None) -> Callable[[F], F]:
    """
    Decorator to add a tracing span to a function or coroutine function.

    Args:
        name: Span name (defaults to function name)

    Example:
        @traced("retriever.retrieve")
        async def retrieve(...):
            ...
    """
    def decorator(func: F) -> F:
        span_name = name or func.__name__

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                if not settings.enable_tracing:
                    return await func(*args, **kwargs)
                try:
                    span_context = _start_span(span_name)
                except ImportError:
                    return await func(*args, **kwargs)
                with span_context as span:
                    span.set_attribute("function.name", func.__name__)
                    span.set_attribute("function.module", func.__module__)
                    result = await func(*args, **kwargs)
                    span.set_attribute("result.type", type(result).__name__)
                    return result

            return async_wrapper  # type: ignore

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            if not settings.enable_tracing:
                return func(*args, **kwargs)
            try:
                span_context = _start_span(span_name)
            except ImportError:
                return func(*args, **kwargs)
            with span_context as span:
                span.set_attribute("function.name", func.__name__)
                span.set_attribute("function.module", func.__module__)
                result = func(*args, **kwargs)
                span.set_attribute("result.type", type(result).__name__)
                return result

        return wrapper  # type: ignore

    return decorator


def add_span_attributes(**attributes: Any) -> None:
    """
    Add attributes to the current span.

    Example:
        add_span_attributes(agent_id="default", chunks_retrieved=5)
    """
    if not settings.enable_tracing:
        return

    try:
        from opentelemetry import trace
    except ImportError:
        return

    span = trace.get_current_span()
    for key, value in attributes.items():
        if isinstance(value, (str, int, float, bool)):
            span.set_attribute(key, value)
        else:
            span.set_attribute(key, str(value))


def record_exception(exception: Exception) -> None:
    """Record an exception in the current span."""
    if not settings.enable_tracing:
        return

    try:
        from opentelemetry import trace
    except ImportError:
        return

    span = trace.get_current_span()
    span.record_exception(exception)
    span.set_status(trace.Status(trace.StatusCode.ERROR))
