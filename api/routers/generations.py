"""Plan generation endpoints.

POST /api/generations/stream               - SSE stream for starting or resuming a generation
GET  /api/generations/{request_id}/status  - polling fallback
GET  /api/generations/active               - the user's running generation, if any
GET  /api/generations/estimate             - historical duration estimate (ETA seed)
GET  /api/generations/recent               - recent generations, newest first
"""

import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from api.deps import (
    get_current_user,
    get_generation_ledger,
    get_generation_orchestrator,
    get_generation_runner,
    get_generation_status_service,
    get_settings,
)
from application.models.generation import (
    GenerationStatusResponse,
    GenerationSummary,
    StartGenerationRequest,
)
from application.ports.generation_ledger import GenerationLedger
from backend.services.generation_errors import InvalidRequestIdError, LedgerUnavailableError
from backend.services.generation_orchestrator import GenerationOrchestrator
from backend.services.generation_runner import GenerationRunner
from backend.services.generation_status_service import (
    GenerationStatusService,
    validate_request_id,
)
from backend.settings import Settings
from backend.sse_tracking import sse_connect, sse_disconnect

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/generations", tags=["generations"])


class EstimateResponse(BaseModel):
    operation_kind: str
    estimated_duration_ms: Optional[int] = None


@router.post("/stream")
async def stream_generation(
    body: StartGenerationRequest,
    request: Request,
    user_id: str = Depends(get_current_user),
    orchestrator: GenerationOrchestrator = Depends(get_generation_orchestrator),
    settings: Settings = Depends(get_settings),
):
    """Stream generation progress as Server-Sent Events.

    Event types:
    - progress: {phase, progress, message, eta?}
    - resume: an identical generation was already running; this stream follows it
    - complete: {phase: "complete", result_ref, insight_changes}
    - error: {phase: "error", error, category}

    Disconnecting never cancels the generation; reconnect with the same
    request_id to pick it up again.
    """
    try:
        request_id = validate_request_id(body.request_id)
    except InvalidRequestIdError as e:
        raise HTTPException(status_code=422, detail=str(e))

    async def event_generator():
        sse_connect()
        stream = orchestrator.stream(user_id, request_id, body.context)
        try:
            async for event in stream:
                if await request.is_disconnected():
                    logger.info("Client left generation %s stream", request_id)
                    break
                yield {"event": event.event, "data": event.data}
        finally:
            await stream.aclose()
            sse_disconnect()

    return EventSourceResponse(event_generator(), ping=settings.sse_heartbeat_interval)


@router.get("/active", response_model=Optional[GenerationSummary])
async def get_active_generation(
    user_id: str = Depends(get_current_user),
    ledger: GenerationLedger = Depends(get_generation_ledger),
):
    """The user's pending or in-progress generation, or null."""
    try:
        record = await ledger.get_active_for_user(user_id)
    except LedgerUnavailableError as e:
        logger.warning("Active generation lookup failed for %s: %s", user_id, e)
        raise HTTPException(status_code=503, detail="Generation history unavailable")
    return GenerationSummary.from_request(record) if record else None


@router.get("/estimate", response_model=EstimateResponse)
async def get_generation_estimate(
    kind: Literal["plan", "split"] = Query("plan"),
    user_id: str = Depends(get_current_user),
    runner: GenerationRunner = Depends(get_generation_runner),
):
    """Recency-weighted duration estimate; null without history."""
    estimate = await runner.estimate_duration_ms(user_id, kind)
    return EstimateResponse(operation_kind=kind, estimated_duration_ms=estimate)


@router.get("/recent", response_model=List[GenerationSummary])
async def get_recent_generations(
    limit: int = Query(10, ge=1, le=50),
    user_id: str = Depends(get_current_user),
    ledger: GenerationLedger = Depends(get_generation_ledger),
):
    """The user's most recent generations, newest first."""
    try:
        records = await ledger.list_recent(user_id, limit=limit)
    except LedgerUnavailableError as e:
        logger.warning("Recent generations lookup failed for %s: %s", user_id, e)
        raise HTTPException(status_code=503, detail="Generation history unavailable")
    return [GenerationSummary.from_request(r) for r in records]


@router.get("/{request_id}/status", response_model=GenerationStatusResponse)
async def get_generation_status(
    request_id: str,
    user_id: str = Depends(get_current_user),
    service: GenerationStatusService = Depends(get_generation_status_service),
):
    """Poll a generation's state. Malformed ids are rejected with 422."""
    try:
        return await service.get_status(request_id, user_id)
    except InvalidRequestIdError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except LedgerUnavailableError as e:
        logger.warning("Status lookup failed for %s: %s", request_id, e)
        raise HTTPException(status_code=503, detail="Generation status unavailable")
