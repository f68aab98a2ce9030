"""Async Supabase implementation of GenerationMetricsStore."""

from typing import Optional, Sequence

from supabase import AsyncClient

from application.models.generation import MetricsSample

# Successful samples considered per estimate
ESTIMATE_WINDOW = 10


def weighted_recent_average(durations_newest_first: Sequence[int]) -> Optional[int]:
    """Recency-weighted mean: the newest of n samples weighs n, the oldest weighs 1.

    Returns None for an empty sequence so callers omit the ETA instead of showing zero.
    """
    total_weight = 0
    weighted_sum = 0
    count = len(durations_newest_first)
    for index, duration in enumerate(durations_newest_first):
        if not duration:
            continue
        weight = count - index
        weighted_sum += duration * weight
        total_weight += weight
    if total_weight == 0:
        return None
    return round(weighted_sum / total_weight)


class AsyncGenerationMetricsRepository:
    """Async Supabase-backed generation duration samples."""

    TABLE = "generation_metrics"

    def __init__(self, client: AsyncClient, window: int = ESTIMATE_WINDOW) -> None:
        self._client = client
        self._window = window

    async def record(self, sample: MetricsSample) -> None:
        """Append one finished run."""
        await (
            self._client.table(self.TABLE)
            .insert({
                "user_id": sample.user_id,
                "operation_kind": sample.operation_kind,
                "duration_ms": sample.duration_ms,
                "success": sample.success,
            })
            .execute()
        )

    async def estimate_duration_ms(self, user_id: str, operation_kind: str) -> Optional[int]:
        """Weighted average of the user's last successful runs of this kind.

        Args:
            user_id: Owner of the samples.
            operation_kind: Context kind, e.g. "plan" or "split".

        Returns:
            Estimated duration in milliseconds, or None without history.
        """
        result = await (
            self._client.table(self.TABLE)
            .select("duration_ms")
            .eq("user_id", user_id)
            .eq("operation_kind", operation_kind)
            .eq("success", True)
            .order("created_at", desc=True)
            .limit(self._window)
            .execute()
        )
        durations = [row.get("duration_ms") or 0 for row in result.data or []]
        return weighted_recent_average(durations)
