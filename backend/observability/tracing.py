"""
Tracing utilities for OpenTelemetry.

Provides the @traced decorator and get_tracer() helper.
"""

import functools
import inspect
import logging
from typing import Any, Callable, Optional, TypeVar, Union

from opentelemetry import trace
from opentelemetry.trace import SpanKind, Status, StatusCode

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

_DEFAULT_TRACER_NAME = "generation-api"


def get_tracer(name: Optional[str] = None) -> trace.Tracer:
    """Get an OpenTelemetry tracer, named "generation-api" by default."""
    return trace.get_tracer(name or _DEFAULT_TRACER_NAME)


def traced(
    _func: Optional[Callable] = None,
    *,
    name: Optional[str] = None,
    kind: SpanKind = SpanKind.INTERNAL,
    attributes: Optional[dict] = None,
) -> Union[Callable[[F], F], F]:
    """
    Decorator to create a span around an async function.

    Can be used with or without parentheses:

        @traced
        async def load():
            ...

        @traced(name="plan_generator.generate", kind=SpanKind.CLIENT)
        async def generate():
            ...
    """
    def decorator(func: F) -> F:
        span_name = name or func.__name__

        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"@traced needs an async function, got {func.__qualname__}")

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            with get_tracer().start_as_current_span(
                span_name, kind=kind, attributes=attributes
            ) as span:
                try:
                    result = await func(*args, **kwargs)
                    span.set_status(Status(StatusCode.OK))
                    return result
                except Exception as e:
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.record_exception(e)
                    raise

        return async_wrapper  # type: ignore

    if _func is not None:
        return decorator(_func)

    return decorator


def add_span_attributes(attributes: dict) -> None:
    """Add attributes to the current span, if one is recording."""
    span = trace.get_current_span()
    if span and span.is_recording():
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
