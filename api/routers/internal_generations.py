"""Internal worker endpoint for background generations.

Secured by X-Internal-Key header. No user auth required.
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel

from api.deps import get_generation_worker, verify_internal_key
from backend.services.generation_errors import GenerationNotFoundError, LedgerUnavailableError
from backend.services.generation_worker import GenerationEnvelope, GenerationWorker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal/generations", tags=["internal"])


class ExecuteResponse(BaseModel):
    status: str  # "accepted" or "skipped"
    request_id: str


@router.post("/execute", response_model=ExecuteResponse, status_code=202)
async def execute_generation(
    envelope: GenerationEnvelope,
    background_tasks: BackgroundTasks,
    _auth: None = Depends(verify_internal_key),
    worker: GenerationWorker = Depends(get_generation_worker),
):
    """Accept a ``generation.requested`` envelope and run it after responding.

    Redeliveries for generations that are already running or terminal are
    acknowledged and skipped.
    """
    try:
        accepted = await worker.accept(envelope)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except GenerationNotFoundError:
        raise HTTPException(status_code=404, detail=f"Generation {envelope.request_id} not found")
    except LedgerUnavailableError as e:
        logger.warning("Worker could not read generation %s: %s", envelope.request_id, e)
        raise HTTPException(status_code=503, detail="Generation ledger unavailable")

    if not accepted:
        return ExecuteResponse(status="skipped", request_id=envelope.request_id)

    background_tasks.add_task(worker.execute, envelope.request_id)
    logger.info("Accepted generation %s for background execution", envelope.request_id)
    return ExecuteResponse(status="accepted", request_id=envelope.request_id)
