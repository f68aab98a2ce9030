"""Consumer side of the background hand-off.

Receives ``generation.requested`` envelopes and runs them through the same
GenerationRunner as the inline path. Progress and the outcome reach clients
only through the ledger.
"""

import logging
from typing import Optional

from pydantic import BaseModel, Field

from application.models.generation import (
    GenerationContext,
    GenerationStatus,
    PlanContext,
    same_target,
)
from application.ports.generation_ledger import GenerationLedger
from backend.services.generation_errors import GenerationNotFoundError
from backend.services.generation_publisher import GENERATION_REQUESTED
from backend.services.generation_runner import GenerationOutcome, GenerationRunner

logger = logging.getLogger(__name__)


class GenerationEnvelope(BaseModel):
    event: str = GENERATION_REQUESTED
    request_id: str
    user_id: str
    context: GenerationContext = Field(default_factory=PlanContext)


class GenerationWorker:
    def __init__(self, ledger: GenerationLedger, runner: GenerationRunner):
        self._ledger = ledger
        self._runner = runner

    async def accept(self, envelope: GenerationEnvelope) -> bool:
        """Check an envelope before work is scheduled.

        Returns False for redeliveries of records that are already running or
        terminal. Delivery is at-least-once, so this is the normal duplicate path.

        Raises:
            ValueError: unknown event type.
            GenerationNotFoundError: no record, or the record belongs to someone else.
        """
        if envelope.event != GENERATION_REQUESTED:
            raise ValueError(f"Unsupported event {envelope.event!r}")
        record = await self._ledger.get_by_request_id(envelope.request_id)
        if record is None or record.user_id != envelope.user_id:
            raise GenerationNotFoundError(f"Generation {envelope.request_id} not found")
        if not same_target(record.context, envelope.context):
            logger.warning(
                "Envelope context for %s differs from the ledger, using the ledger's",
                envelope.request_id,
            )
        if record.status != GenerationStatus.pending:
            logger.info(
                "Skipping redelivered generation %s: already %s",
                envelope.request_id,
                record.status.value,
            )
            return False
        return True

    async def execute(self, request_id: str) -> Optional[GenerationOutcome]:
        """Run an accepted generation, or return None if it is no longer pending.

        Terminal ledger failures are logged here, the loop boundary.
        """
        record = await self._ledger.get_by_request_id(request_id)
        if record is None or record.status != GenerationStatus.pending:
            return None
        try:
            return await self._runner.run(record)
        except Exception:
            logger.exception("Worker could not finalize generation %s", request_id)
            return None
