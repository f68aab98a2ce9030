"""Execution half of a generation: milestones, Generator call, finalization.

Shared by the inline stream path and the background worker endpoint. The
runner never talks to a client directly; progress goes to the ledger and to
an optional callback, and the outcome is returned to the caller.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from application.models.generation import (
    GeneratedPlan,
    GenerationRequest,
    MetricsSample,
    PlanContext,
    UserProfile,
)
from application.ports.generation_ledger import GenerationLedger
from application.ports.generation_metrics_store import GenerationMetricsStore
from application.ports.plan_generator import PlanGenerator, ProfileRepository
from backend.services.generation_cache import GenerationCache
from backend.services.generation_errors import (
    ClassifiedError,
    GeneratorFatalError,
    classify_generation_error,
)
from backend.observability import GenerationMetrics, add_span_attributes, traced
from backend.services.generation_events import phase_message
from backend.services.progress_simulator import ProgressSimulator

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str, str], Union[None, Awaitable[None]]]

# After the Generator call, before finalization
_TAIL_MILESTONES = ((85, "optimizing"), (95, "finalizing"))


@dataclass
class GenerationOutcome:
    request_id: str
    success: bool
    duration_ms: int
    result_ref: Optional[str] = None
    insight_changes: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[ClassifiedError] = None


class GenerationRunner:
    """Runs one ledger record through the Generator and records the outcome."""

    def __init__(
        self,
        ledger: GenerationLedger,
        cache: GenerationCache,
        metrics: GenerationMetricsStore,
        profiles: ProfileRepository,
        generator: PlanGenerator,
        *,
        generation_timeout: float = 660.0,
        fallback_estimate_ms: int = 120000,
        tick_interval: float = 2.0,
        simulated_start: int = 45,
        simulated_end: int = 75,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ledger = ledger
        self._cache = cache
        self._metrics = metrics
        self._profiles = profiles
        self._generator = generator
        self._generation_timeout = generation_timeout
        self._fallback_estimate_ms = fallback_estimate_ms
        self._tick_interval = tick_interval
        self._simulated_start = simulated_start
        self._simulated_end = simulated_end
        self._clock = clock

    async def estimate_duration_ms(self, user_id: str, operation_kind: str) -> Optional[int]:
        """Historical estimate, or None. Store failures only cost the ETA."""
        try:
            return await self._metrics.estimate_duration_ms(user_id, operation_kind)
        except Exception as e:
            logger.warning("Failed to read generation estimate for %s: %s", user_id, e)
            return None

    @traced(name="generation.run")
    async def run(
        self,
        record: GenerationRequest,
        on_progress: Optional[ProgressCallback] = None,
        estimated_duration_ms: Optional[int] = None,
    ) -> Optional[GenerationOutcome]:
        """Drive one generation to a terminal state.

        Returns None without touching the Generator when the record was no
        longer ``pending``: another worker or instance already claimed it.

        Terminal ledger writes are not swallowed: if the ledger rejects
        ``mark_completed``/``mark_failed`` the exception propagates and the
        cache is left without a terminal entry.
        """
        started = self._clock()
        request_id = record.request_id
        add_span_attributes({
            "generation.request_id": request_id,
            "generation.operation_kind": record.operation_kind,
            "user.id": record.user_id,
        })

        try:
            if not await self._ledger.mark_started(request_id):
                logger.info("Skipping generation %s: already claimed", request_id)
                add_span_attributes({"generation.status": "skipped"})
                return None
            self._safe_cache_start(record)
            await self._report(record, on_progress, 0, "starting")
            await self._report(record, on_progress, 10, "profile")

            profile = await self._profiles.get_profile(record.user_id)
            if profile is None:
                raise GeneratorFatalError(
                    f"No profile found for user {record.user_id}", "profile_incomplete"
                )
            self._check_target(profile, record)

            await self._report(record, on_progress, 30, "planning")
            await self._report(record, on_progress, self._simulated_start, "analyzing")

            if estimated_duration_ms is None:
                estimated_duration_ms = await self.estimate_duration_ms(
                    record.user_id, record.operation_kind
                )
            window_ms = estimated_duration_ms or self._fallback_estimate_ms

            reported = self._simulated_start

            async def on_tick(value: int) -> None:
                # Repeated values still refresh the ledger row but are not re-sent
                nonlocal reported
                callback = on_progress if value > reported else None
                reported = max(reported, value)
                await self._report(record, callback, value, "generating")

            simulator = ProgressSimulator(tick_interval=self._tick_interval)
            async with simulator.running(
                self._simulated_start, self._simulated_end, window_ms, on_tick
            ):
                plan = await asyncio.wait_for(
                    self._generator.generate(profile, record.context),
                    timeout=self._generation_timeout,
                )

            await self._report(record, on_progress, self._simulated_end, "history")
            for percent, phase in _TAIL_MILESTONES:
                await self._report(record, on_progress, percent, phase)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return await self._fail(record, exc, started)

        return await self._succeed(record, plan, started)

    @staticmethod
    def _check_target(profile: UserProfile, record: GenerationRequest) -> None:
        context = record.context
        if not isinstance(context, PlanContext) or context.target_day is None:
            return
        if profile.current_cycle_day is not None and context.target_day < profile.current_cycle_day:
            raise GeneratorFatalError(
                f"Target day {context.target_day} is before current cycle day "
                f"{profile.current_cycle_day}",
                "validation_failed",
            )

    async def _succeed(
        self, record: GenerationRequest, plan: GeneratedPlan, started: float
    ) -> GenerationOutcome:
        duration_ms = self._elapsed_ms(started)
        await self._ledger.mark_completed(record.request_id, plan.result_ref)
        try:
            self._cache.complete(
                record.request_id, record.user_id, plan.result_ref, plan.insight_changes
            )
        except Exception as e:
            logger.warning("Failed to cache completion of %s: %s", record.request_id, e)
        await self._record_sample(record, duration_ms, success=True)
        _observe(record, duration_ms, "completed")
        logger.info(
            "Generation %s completed in %dms (result_ref=%s)",
            record.request_id,
            duration_ms,
            plan.result_ref,
        )
        return GenerationOutcome(
            request_id=record.request_id,
            success=True,
            duration_ms=duration_ms,
            result_ref=plan.result_ref,
            insight_changes=list(plan.insight_changes),
        )

    async def _fail(
        self, record: GenerationRequest, exc: Exception, started: float
    ) -> GenerationOutcome:
        duration_ms = self._elapsed_ms(started)
        classified = classify_generation_error(exc)
        logger.warning(
            "Generation %s failed after %dms [%s]: %s",
            record.request_id,
            duration_ms,
            classified.category,
            classified.raw_message,
        )
        await self._ledger.mark_failed(
            record.request_id, classified.raw_message, classified.category
        )
        try:
            self._cache.error(
                record.request_id, record.user_id, classified.user_message, classified.category
            )
        except Exception as e:
            logger.warning("Failed to cache failure of %s: %s", record.request_id, e)
        await self._record_sample(record, duration_ms, success=False)
        _observe(record, duration_ms, "failed", classified.category)
        return GenerationOutcome(
            request_id=record.request_id,
            success=False,
            duration_ms=duration_ms,
            error=classified,
        )

    async def _report(
        self,
        record: GenerationRequest,
        on_progress: Optional[ProgressCallback],
        percent: int,
        phase: str,
    ) -> None:
        """Best-effort progress: ledger first, then the callback. Neither may abort the run."""
        try:
            await self._ledger.update_progress(record.request_id, percent, phase)
        except Exception as e:
            logger.warning(
                "Failed to record progress %d%% for %s: %s", percent, record.request_id, e
            )
        if on_progress is None:
            return
        try:
            result = on_progress(percent, phase, phase_message(phase))
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning("Progress callback failed for %s", record.request_id, exc_info=True)

    async def _record_sample(self, record: GenerationRequest, duration_ms: int, success: bool) -> None:
        try:
            await self._metrics.record(MetricsSample(
                user_id=record.user_id,
                operation_kind=record.operation_kind,
                duration_ms=duration_ms,
                success=success,
            ))
        except Exception as e:
            logger.warning("Failed to record generation metrics for %s: %s", record.request_id, e)

    def _safe_cache_start(self, record: GenerationRequest) -> None:
        try:
            if self._cache.get(record.request_id) is None:
                self._cache.start(record.request_id, record.user_id)
        except Exception as e:
            logger.warning("Failed to cache start of %s: %s", record.request_id, e)

    def _elapsed_ms(self, started: float) -> int:
        return max(0, int((self._clock() - started) * 1000))


def _observe(
    record: GenerationRequest, duration_ms: int, status: str, category: Optional[str] = None
) -> None:
    attributes = {"status": status, "operation_kind": record.operation_kind}
    if category:
        attributes["category"] = category
    add_span_attributes({"generation.status": status, "generation.error_category": category})
    GenerationMetrics.generation_outcomes_total().add(1, attributes)
    GenerationMetrics.generation_duration_seconds().record(duration_ms / 1000, attributes)
