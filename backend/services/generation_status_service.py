"""Polling view of a generation for clients that cannot hold a stream open."""

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from application.models.generation import (
    GenerationRequest,
    GenerationStatus,
    GenerationStatusResponse,
)
from application.ports.generation_ledger import GenerationLedger
from backend.services.generation_cache import (
    CACHE_COMPLETE,
    CACHE_ERROR,
    CacheEntry,
    GenerationCache,
)
from backend.services.generation_errors import (
    InvalidRequestIdError,
    LedgerUnavailableError,
    user_message_for,
)
from backend.services.generation_events import phase_message

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_request_id(request_id: str) -> str:
    """Return the canonical UUID string, or raise InvalidRequestIdError."""
    try:
        return str(uuid.UUID(str(request_id)))
    except (ValueError, AttributeError, TypeError) as e:
        raise InvalidRequestIdError(f"Invalid request id: {request_id!r}") from e


class GenerationStatusService:
    """Cache first, ledger second; expired or foreign records are not_found."""

    def __init__(
        self,
        ledger: GenerationLedger,
        cache: GenerationCache,
        retention_seconds: int = 600,
        now: Callable[[], datetime] = _utcnow,
    ):
        self._ledger = ledger
        self._cache = cache
        self._retention_seconds = retention_seconds
        self._now = now

    async def get_status(self, request_id: str, user_id: str) -> GenerationStatusResponse:
        """Status of ``request_id`` as seen by its owner.

        Raises:
            InvalidRequestIdError: before any store is touched.
            LedgerUnavailableError: the cache has nothing and the ledger is unreachable.
        """
        request_id = validate_request_id(request_id)

        entry = self._cache_get(request_id, user_id)
        if entry is not None and entry.status == CACHE_COMPLETE:
            return self._complete(request_id, entry.result_ref, entry.insight_changes)
        if entry is not None and entry.status == CACHE_ERROR:
            return self._error(request_id, entry.error_category)

        try:
            record = await self._ledger.get_by_request_id(request_id)
        except LedgerUnavailableError:
            if entry is None:
                raise
            logger.warning("Ledger unreachable for %s, answering from cache estimate", request_id)
            record = None

        if record is not None and (record.user_id != user_id or self._expired(record)):
            return GenerationStatusResponse(status="not_found", request_id=request_id)

        if record is not None and record.is_terminal:
            if record.status == GenerationStatus.completed:
                changes = entry.insight_changes if entry is not None else []
                return self._complete(request_id, record.result_ref, changes)
            return self._error(request_id, record.error_category)

        if entry is not None:
            return self._in_progress(request_id, entry, record)
        if record is not None:
            return GenerationStatusResponse(
                status="in_progress",
                request_id=request_id,
                progress=record.progress_percent,
                phase=record.current_phase or "queued",
                message=phase_message(record.current_phase),
            )
        return GenerationStatusResponse(status="not_found", request_id=request_id)

    def _in_progress(
        self,
        request_id: str,
        entry: CacheEntry,
        record: Optional[GenerationRequest],
    ) -> GenerationStatusResponse:
        """Take whichever of the persisted progress and the time estimate is further along."""
        estimate = self._cache.estimate_progress(request_id)
        percent, phase, message = 0, "queued", phase_message(None)
        if estimate is not None:
            percent, phase, message = estimate
        if record is not None and record.progress_percent >= percent:
            percent = record.progress_percent
            phase = record.current_phase or phase
            message = phase_message(phase)
        return GenerationStatusResponse(
            status="in_progress",
            request_id=request_id,
            progress=percent,
            phase=phase,
            message=message,
        )

    @staticmethod
    def _complete(request_id: str, result_ref: Optional[str], insight_changes) -> GenerationStatusResponse:
        return GenerationStatusResponse(
            status="complete",
            request_id=request_id,
            progress=100,
            result_ref=result_ref,
            insight_changes=list(insight_changes or []),
        )

    @staticmethod
    def _error(request_id: str, category: Optional[str]) -> GenerationStatusResponse:
        category = category or "unknown"
        return GenerationStatusResponse(
            status="error",
            request_id=request_id,
            error=user_message_for(category),
            category=category,
        )

    def _expired(self, record: GenerationRequest) -> bool:
        return (self._now() - record.updated_at).total_seconds() > self._retention_seconds

    def _cache_get(self, request_id: str, user_id: str) -> Optional[CacheEntry]:
        try:
            return self._cache.get(request_id, user_id)
        except Exception as e:
            logger.warning("Cache read for %s failed: %s", request_id, e)
            return None
