"""HTTP client for the plan generator service.

Implements the PlanGenerator port. The generator owns exercise selection and
plan storage; this client only maps its responses and failures onto the
transient/fatal error taxonomy.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from application.models.generation import GeneratedPlan, GenerationContext, UserProfile
from backend.observability import traced
from backend.services.generation_errors import GeneratorFatalError, GeneratorTransientError

logger = logging.getLogger(__name__)

# Error codes the generator reports in {"error": {"code": ...}}
_FATAL_CODES = {"profile_incomplete", "validation_failed"}
_TRANSIENT_CODES = {"selection_failed", "timeout", "rate_limited"}


class HttpPlanGenerator:
    """Calls ``POST {base_url}/plans/generate`` and returns the stored plan reference."""

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        timeout: float = 300.0,
    ):
        self._base_url = base_url.rstrip("/")
        self._auth_token = auth_token
        self._timeout = timeout

    @traced(name="plan_generator.generate")
    async def generate(self, profile: UserProfile, context: GenerationContext) -> GeneratedPlan:
        body = {
            "user_id": profile.user_id,
            "profile": profile.model_dump(),
            "context": context.model_dump(),
        }
        headers = {"Authorization": self._auth_token} if self._auth_token else {}

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    f"{self._base_url}/plans/generate",
                    json=body,
                    headers=headers,
                )
        except httpx.TimeoutException as e:
            raise GeneratorTransientError(f"Plan generator timeout: {e}", "timeout") from e
        except httpx.HTTPError as e:
            raise GeneratorTransientError(
                f"Failed to connect to plan generator: {e}", "service_unavailable"
            ) from e

        payload = self._parse_json(response)
        if response.status_code == 200 and payload.get("success"):
            result_ref = payload.get("result_ref")
            if not result_ref:
                raise GeneratorFatalError(
                    "Plan generator returned no result_ref", "validation_failed"
                )
            return GeneratedPlan(
                result_ref=str(result_ref),
                insight_changes=payload.get("insight_changes") or [],
            )

        raise self._error_for(response.status_code, payload)

    @staticmethod
    def _parse_json(response: httpx.Response) -> Dict[str, Any]:
        """Body as a dict. Non-JSON error pages map by status code alone."""
        try:
            data = response.json()
        except ValueError as e:
            if not response.is_success:
                return {}
            raise GeneratorFatalError(
                f"Invalid JSON from plan generator (status {response.status_code})",
                "validation_failed",
            ) from e
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _error_for(status_code: int, payload: Dict[str, Any]) -> Exception:
        error = payload.get("error") or {}
        if isinstance(error, str):
            error = {"message": error}
        code = error.get("code")
        message = f"Plan generator error {status_code}: {error.get('message') or 'no detail'}"

        if code in _FATAL_CODES:
            return GeneratorFatalError(message, code)
        if code in _TRANSIENT_CODES:
            return GeneratorTransientError(message, code)
        if status_code == 429:
            return GeneratorTransientError(message, "rate_limited")
        if status_code >= 500:
            return GeneratorTransientError(message, "service_unavailable")
        if 400 <= status_code < 500:
            return GeneratorFatalError(message, "validation_failed")
        # 200 with success=false and no code
        return GeneratorTransientError(message, "selection_failed")
