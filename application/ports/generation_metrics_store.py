"""Port interface for generation duration metrics."""

from typing import Optional, Protocol

from application.models.generation import MetricsSample


class GenerationMetricsStore(Protocol):
    """Append-only store of past generation durations."""

    async def record(self, sample: MetricsSample) -> None:
        """Append one finished run."""
        ...

    async def estimate_duration_ms(self, user_id: str, operation_kind: str) -> Optional[int]:
        """Estimated duration for the next run, or None when there is no history."""
        ...
