"""Background worker hand-off over HTTP.

Publishes a ``generation.requested`` envelope to the configured worker
endpoint. The worker reports progress and the terminal state through the
ledger only; nothing here waits for the work itself.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from application.models.generation import GenerationRequest

logger = logging.getLogger(__name__)

GENERATION_REQUESTED = "generation.requested"


def build_envelope(request: GenerationRequest) -> Dict[str, Any]:
    """The wire shape of a hand-off event."""
    return {
        "event": GENERATION_REQUESTED,
        "request_id": request.request_id,
        "user_id": request.user_id,
        "context": request.context.model_dump(),
    }


class HttpGenerationPublisher:
    """Implements GenerationPublisher by POSTing to a worker URL."""

    def __init__(self, worker_url: str, internal_api_key: Optional[str] = None, timeout: float = 10.0):
        self._worker_url = worker_url
        self._internal_api_key = internal_api_key
        self._timeout = timeout

    async def publish(self, request: GenerationRequest) -> None:
        """Deliver the envelope. Raises httpx errors so the caller can fall back to inline work."""
        headers = {"X-Internal-Key": self._internal_api_key} if self._internal_api_key else {}
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(
                self._worker_url,
                json=build_envelope(request),
                headers=headers,
            )
            response.raise_for_status()
        logger.info(
            "Published %s for generation %s to %s",
            GENERATION_REQUESTED,
            request.request_id,
            self._worker_url,
        )
