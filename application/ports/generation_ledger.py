"""Port interface for the durable generation request ledger."""

from typing import List, Optional, Protocol

from application.models.generation import GenerationContext, GenerationRequest


class GenerationLedger(Protocol):
    """Source of truth for generation lifecycle across restarts and instances.

    Progress writes are last-writer-wins. Terminal writes are sticky: the
    first ``mark_completed``/``mark_failed`` wins and later ones are ignored
    with a logged warning.
    """

    async def create(
        self, user_id: str, request_id: str, context: GenerationContext
    ) -> GenerationRequest:
        """Create a ``pending`` record.

        Raises:
            GenerationConflictError: if ``request_id`` already exists.
        """
        ...

    async def get_by_request_id(self, request_id: str) -> Optional[GenerationRequest]:
        """Get a record by request ID, or None."""
        ...

    async def get_active_for_user(self, user_id: str) -> Optional[GenerationRequest]:
        """Most recent ``pending``/``in_progress`` record for the user, or None."""
        ...

    async def update_progress(self, request_id: str, percent: int, phase: str) -> None:
        """Record progress. No-op when the record is already terminal."""
        ...

    async def mark_started(self, request_id: str) -> bool:
        """Transition ``pending -> in_progress``.

        Returns True only for the caller that made the transition, so a
        redelivered request can tell the work is already claimed.
        """
        ...

    async def mark_completed(self, request_id: str, result_ref: str) -> None:
        """Transition to ``completed``. Idempotent for the same ``result_ref``."""
        ...

    async def mark_failed(
        self, request_id: str, message: str, category: Optional[str] = None
    ) -> None:
        """Transition to ``failed`` with the raw message and its classified category."""
        ...

    async def list_recent(self, user_id: str, limit: int = 10) -> List[GenerationRequest]:
        """Recent records for the user, newest first."""
        ...
