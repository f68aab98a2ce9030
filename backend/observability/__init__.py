"""
OpenTelemetry observability package for the generation API.

Usage:
    from backend.observability import configure_observability, traced, GenerationMetrics

    # Initialize in application startup
    configure_observability(settings)

    @traced(name="plan_generator.generate")
    async def generate(...):
        ...

    GenerationMetrics.generation_streams_total().add(1, {"resolution": "started"})
"""

from backend.observability.config import configure_observability, shutdown_observability
from backend.observability.metrics import GenerationMetrics
from backend.observability.tracing import add_span_attributes, traced

__all__ = [
    # Configuration
    "configure_observability",
    "shutdown_observability",
    # Tracing
    "traced",
    "add_span_attributes",
    # Metrics
    "GenerationMetrics",
]
