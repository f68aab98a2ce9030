"""In-memory implementations of GenerationLedger, GenerationMetricsStore and ProfileRepository.

Used when Supabase is not configured (local development, single instance)
and as test doubles. Safe for concurrent coroutines via asyncio.Lock; not
shared across processes, so not a substitute for the durable ledger in a
multi-instance deployment.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from application.models.generation import (
    GenerationContext,
    GenerationRequest,
    GenerationStatus,
    MetricsSample,
    UserProfile,
)
from backend.services.generation_errors import (
    GenerationConflictError,
    GenerationNotFoundError,
)
from infrastructure.db.async_generation_metrics_repository import weighted_recent_average

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryGenerationLedger:
    """Dict-backed ledger with the same sticky-terminal semantics as the Supabase one."""

    def __init__(self, now: Callable[[], datetime] = _utcnow):
        self._now = now
        self._records: Dict[str, GenerationRequest] = {}
        self._lock = asyncio.Lock()

    async def create(
        self, user_id: str, request_id: str, context: GenerationContext
    ) -> GenerationRequest:
        async with self._lock:
            if request_id in self._records:
                raise GenerationConflictError(
                    f"Generation request {request_id} already exists",
                    active_request_id=request_id,
                )
            now = self._now()
            record = GenerationRequest(
                request_id=request_id,
                user_id=user_id,
                context=context,
                created_at=now,
                updated_at=now,
            )
            self._records[request_id] = record
            return record.model_copy(deep=True)

    async def get_by_request_id(self, request_id: str) -> Optional[GenerationRequest]:
        async with self._lock:
            record = self._records.get(request_id)
            return record.model_copy(deep=True) if record else None

    async def get_active_for_user(self, user_id: str) -> Optional[GenerationRequest]:
        async with self._lock:
            active = [
                r for r in self._records.values()
                if r.user_id == user_id and r.is_active
            ]
            if not active:
                return None
            return max(active, key=lambda r: r.created_at).model_copy(deep=True)

    async def list_recent(self, user_id: str, limit: int = 10) -> List[GenerationRequest]:
        async with self._lock:
            mine = [r for r in self._records.values() if r.user_id == user_id]
            mine.sort(key=lambda r: r.created_at, reverse=True)
            return [r.model_copy(deep=True) for r in mine[:limit]]

    async def update_progress(self, request_id: str, percent: int, phase: str) -> None:
        async with self._lock:
            record = self._require(request_id)
            if record.is_terminal:
                logger.debug("Ignoring progress for terminal generation %s", request_id)
                return
            percent = max(0, min(int(percent), 100))
            if percent < record.progress_percent:
                return
            record.progress_percent = percent
            record.current_phase = phase
            record.updated_at = self._now()

    async def mark_started(self, request_id: str) -> bool:
        async with self._lock:
            record = self._require(request_id)
            if record.status != GenerationStatus.pending:
                return False
            now = self._now()
            record.status = GenerationStatus.in_progress
            record.started_at = now
            record.updated_at = now
            return True

    async def mark_completed(self, request_id: str, result_ref: str) -> None:
        async with self._lock:
            record = self._require(request_id)
            if record.is_terminal:
                if record.status == GenerationStatus.completed and record.result_ref == result_ref:
                    return
                logger.warning(
                    "Ignoring completed write for generation %s: already %s",
                    request_id,
                    record.status.value,
                )
                return
            now = self._now()
            record.status = GenerationStatus.completed
            record.progress_percent = 100
            record.current_phase = "complete"
            record.result_ref = result_ref
            record.completed_at = now
            record.updated_at = now

    async def mark_failed(
        self, request_id: str, message: str, category: Optional[str] = None
    ) -> None:
        async with self._lock:
            record = self._require(request_id)
            if record.is_terminal:
                logger.warning(
                    "Ignoring failed write for generation %s: already %s",
                    request_id,
                    record.status.value,
                )
                return
            now = self._now()
            record.status = GenerationStatus.failed
            record.error_message = message
            record.error_category = category
            record.completed_at = now
            record.updated_at = now

    def _require(self, request_id: str) -> GenerationRequest:
        """Must be called with lock held."""
        record = self._records.get(request_id)
        if record is None:
            raise GenerationNotFoundError(f"Generation request {request_id} not found")
        return record


class InMemoryGenerationMetrics:
    """List-backed metrics store using the same estimate as the Supabase store."""

    def __init__(self, window: int = 10):
        self._window = window
        self._samples: Dict[Tuple[str, str], List[MetricsSample]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def record(self, sample: MetricsSample) -> None:
        async with self._lock:
            self._samples[(sample.user_id, sample.operation_kind)].append(sample)

    async def estimate_duration_ms(self, user_id: str, operation_kind: str) -> Optional[int]:
        async with self._lock:
            samples = self._samples.get((user_id, operation_kind), [])
            newest_first = [s.duration_ms for s in reversed(samples) if s.success]
        return weighted_recent_average(newest_first[: self._window])


class InMemoryProfileRepository:
    """Dict-backed profiles keyed by user id."""

    def __init__(self, profiles: Optional[Dict[str, UserProfile]] = None):
        self._profiles: Dict[str, UserProfile] = dict(profiles or {})

    def put(self, profile: UserProfile) -> None:
        self._profiles[profile.user_id] = profile

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        return self._profiles.get(user_id)
