"""Async Supabase implementation of GenerationLedger.

Terminal transitions are conditional updates filtered on a non-terminal
status, so when several writers race (a background worker and a reconnecting
stream, or two instances) the database picks the first terminal write and
the rest match zero rows.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from supabase import AsyncClient

from application.models.generation import (
    ACTIVE_STATUSES,
    GenerationContext,
    GenerationRequest,
    GenerationStatus,
)
from backend.services.generation_errors import (
    GenerationConflictError,
    GenerationNotFoundError,
    LedgerUnavailableError,
)

logger = logging.getLogger(__name__)

_ACTIVE = [s.value for s in ACTIVE_STATUSES]

# Postgres unique_violation
_UNIQUE_VIOLATION = "23505"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AsyncGenerationLedgerRepository:
    """Async Supabase-backed generation request ledger."""

    TABLE = "generation_requests"

    def __init__(self, client: AsyncClient) -> None:
        self._client = client

    async def create(
        self, user_id: str, request_id: str, context: GenerationContext
    ) -> GenerationRequest:
        """Insert a ``pending`` row.

        Raises:
            GenerationConflictError: request_id already exists (unique violation).
            LedgerUnavailableError: any other database failure.
        """
        row = {
            "request_id": request_id,
            "user_id": user_id,
            "context": context.model_dump(),
            "status": GenerationStatus.pending.value,
            "progress_percent": 0,
        }
        try:
            result = await self._client.table(self.TABLE).insert(row).execute()
        except Exception as e:
            if getattr(e, "code", None) == _UNIQUE_VIOLATION:
                raise GenerationConflictError(
                    f"Generation request {request_id} already exists",
                    active_request_id=request_id,
                ) from e
            raise LedgerUnavailableError(f"Failed to create generation request: {e}") from e
        return GenerationRequest.from_row(result.data[0])

    async def get_by_request_id(self, request_id: str) -> Optional[GenerationRequest]:
        result = await self._execute(
            self._client.table(self.TABLE)
            .select("*")
            .eq("request_id", request_id)
            .limit(1),
            "get generation request",
        )
        return GenerationRequest.from_row(result.data[0]) if result.data else None

    async def get_active_for_user(self, user_id: str) -> Optional[GenerationRequest]:
        result = await self._execute(
            self._client.table(self.TABLE)
            .select("*")
            .eq("user_id", user_id)
            .in_("status", _ACTIVE)
            .order("created_at", desc=True)
            .limit(1),
            "get active generation",
        )
        return GenerationRequest.from_row(result.data[0]) if result.data else None

    async def list_recent(self, user_id: str, limit: int = 10) -> List[GenerationRequest]:
        result = await self._execute(
            self._client.table(self.TABLE)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .limit(limit),
            "list recent generations",
        )
        return [GenerationRequest.from_row(row) for row in result.data or []]

    async def update_progress(self, request_id: str, percent: int, phase: str) -> None:
        """Record progress on a non-terminal row. Regressions match no rows."""
        await self._execute(
            self._client.table(self.TABLE)
            .update({
                "progress_percent": max(0, min(int(percent), 100)),
                "current_phase": phase,
                "updated_at": _now_iso(),
            })
            .eq("request_id", request_id)
            .in_("status", _ACTIVE)
            .lte("progress_percent", percent),
            "update progress",
        )

    async def mark_started(self, request_id: str) -> bool:
        """Claim a ``pending`` row. False when another writer already moved it on."""
        now = _now_iso()
        result = await self._execute(
            self._client.table(self.TABLE)
            .update({
                "status": GenerationStatus.in_progress.value,
                "started_at": now,
                "updated_at": now,
            })
            .eq("request_id", request_id)
            .eq("status", GenerationStatus.pending.value),
            "mark started",
        )
        return bool(result.data)

    async def mark_completed(self, request_id: str, result_ref: str) -> None:
        now = _now_iso()
        result = await self._execute(
            self._client.table(self.TABLE)
            .update({
                "status": GenerationStatus.completed.value,
                "progress_percent": 100,
                "current_phase": "complete",
                "result_ref": result_ref,
                "completed_at": now,
                "updated_at": now,
            })
            .eq("request_id", request_id)
            .in_("status", _ACTIVE),
            "mark completed",
        )
        if not result.data:
            await self._report_ignored_terminal(request_id, GenerationStatus.completed, result_ref)

    async def mark_failed(
        self, request_id: str, message: str, category: Optional[str] = None
    ) -> None:
        now = _now_iso()
        result = await self._execute(
            self._client.table(self.TABLE)
            .update({
                "status": GenerationStatus.failed.value,
                "error_message": message,
                "error_category": category,
                "completed_at": now,
                "updated_at": now,
            })
            .eq("request_id", request_id)
            .in_("status", _ACTIVE),
            "mark failed",
        )
        if not result.data:
            await self._report_ignored_terminal(request_id, GenerationStatus.failed)

    async def _report_ignored_terminal(
        self,
        request_id: str,
        attempted: GenerationStatus,
        result_ref: Optional[str] = None,
    ) -> None:
        """A terminal update matched no rows: explain why, or raise if the row is missing."""
        existing = await self.get_by_request_id(request_id)
        if existing is None:
            raise GenerationNotFoundError(f"Generation request {request_id} not found")
        if (
            attempted == GenerationStatus.completed
            and existing.status == GenerationStatus.completed
            and existing.result_ref == result_ref
        ):
            return
        logger.warning(
            "Ignoring %s write for generation %s: already %s",
            attempted.value,
            request_id,
            existing.status.value,
        )

    async def _execute(self, query: Any, action: str) -> Any:
        try:
            return await query.execute()
        except Exception as e:
            raise LedgerUnavailableError(f"Failed to {action}: {e}") from e
