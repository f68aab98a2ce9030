"""
Metrics definitions for the generation API.

Defines all metrics using the OpenTelemetry Meter API. Without a configured
MeterProvider every instrument is a no-op.
"""

import logging
from typing import Optional

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "generation-api"


def _get_meter() -> metrics.Meter:
    """Get the metrics meter instance."""
    return metrics.get_meter(_METER_NAME)


class GenerationMetrics:
    """
    Centralized metrics for plan generation.

    All metrics are lazily initialized on first access.
    """

    _generation_streams_total: Optional[metrics.Counter] = None
    _generation_outcomes_total: Optional[metrics.Counter] = None
    _generation_duration_seconds: Optional[metrics.Histogram] = None
    _active_sse_connections: Optional[metrics.UpDownCounter] = None
    _stream_ceiling_hits_total: Optional[metrics.Counter] = None

    @classmethod
    def generation_streams_total(cls) -> metrics.Counter:
        """Counter for stream entries by resolution (started, resumed, conflict, replayed, ...)."""
        if cls._generation_streams_total is None:
            cls._generation_streams_total = _get_meter().create_counter(
                name="generation_streams_total",
                description="Generation stream requests by how they were resolved",
                unit="1",
            )
        return cls._generation_streams_total

    @classmethod
    def generation_outcomes_total(cls) -> metrics.Counter:
        """Counter for finished generations by status and error category."""
        if cls._generation_outcomes_total is None:
            cls._generation_outcomes_total = _get_meter().create_counter(
                name="generation_outcomes_total",
                description="Finished generations by outcome",
                unit="1",
            )
        return cls._generation_outcomes_total

    @classmethod
    def generation_duration_seconds(cls) -> metrics.Histogram:
        """Histogram for end-to-end generation duration."""
        if cls._generation_duration_seconds is None:
            cls._generation_duration_seconds = _get_meter().create_histogram(
                name="generation_duration_seconds",
                description="Duration of generation runs",
                unit="s",
            )
        return cls._generation_duration_seconds

    @classmethod
    def active_sse_connections(cls) -> metrics.UpDownCounter:
        """Gauge for active SSE connections."""
        if cls._active_sse_connections is None:
            cls._active_sse_connections = _get_meter().create_up_down_counter(
                name="active_sse_connections",
                description="Number of active SSE connections",
                unit="1",
            )
        return cls._active_sse_connections

    @classmethod
    def stream_ceiling_hits_total(cls) -> metrics.Counter:
        """Counter for streams that gave up waiting for a terminal state."""
        if cls._stream_ceiling_hits_total is None:
            cls._stream_ceiling_hits_total = _get_meter().create_counter(
                name="stream_ceiling_hits_total",
                description="Streams that reached the wait ceiling",
                unit="1",
            )
        return cls._stream_ceiling_hits_total
