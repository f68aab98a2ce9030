"""Generation error taxonomy and user-facing classification.

Raw exception text is recorded in the ledger for diagnostics; users only ever
see the classified message for its category.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class GenerationError(Exception):
    """Base class for generation orchestration errors."""


class GenerationConflictError(GenerationError):
    """A different generation is already active for this user, or the request id is taken."""

    def __init__(self, message: str, active_request_id: Optional[str] = None):
        super().__init__(message)
        self.active_request_id = active_request_id


class GenerationNotFoundError(GenerationError):
    """The request id is unknown, expired, or owned by someone else."""


class InvalidRequestIdError(GenerationError):
    """The request id is not a UUID."""


class GeneratorTransientError(GenerationError):
    """Generator failure presumed recoverable (timeout, rate limit, upstream outage)."""

    def __init__(self, message: str, category: str = "service_unavailable"):
        super().__init__(message)
        self.category = category


class GeneratorFatalError(GenerationError):
    """Generator failure not worth retrying within this request."""

    def __init__(self, message: str, category: str = "validation_failed"):
        super().__init__(message)
        self.category = category


class LedgerUnavailableError(GenerationError):
    """The durable ledger could not be reached or rejected a write."""


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

USER_MESSAGES = {
    "timeout": "Plan generation took too long. Please try again in a few minutes.",
    "rate_limited": "The plan service is busy right now. Please try again shortly.",
    "selection_failed": "We couldn't select exercises for your plan. Please try again.",
    "validation_failed": "The generated plan didn't pass validation. Please try again.",
    "profile_incomplete": "Your profile is missing information needed to build a plan. Please complete it and try again.",
    "service_unavailable": "The plan service is temporarily unavailable. Please try again shortly.",
    "storage_error": "We couldn't save your plan. Please try again.",
    "conflict": "A plan generation is already running.",
    "not_found": "This generation has expired. Please start a new one.",
    "unknown": "Something went wrong while generating your plan. Please try again.",
}

RETRIABLE_CATEGORIES = frozenset(
    {"timeout", "rate_limited", "selection_failed", "service_unavailable", "storage_error", "unknown"}
)


@dataclass(frozen=True)
class ClassifiedError:
    category: str
    user_message: str
    retriable: bool
    raw_message: str


def user_message_for(category: Optional[str]) -> str:
    """User-facing text for a category. Unknown categories get the generic message."""
    return USER_MESSAGES.get(category or "unknown", USER_MESSAGES["unknown"])


def _category_from_text(text: str) -> str:
    lowered = text.lower()
    if "timeout" in lowered or "timed out" in lowered or "took too long" in lowered:
        return "timeout"
    if "rate limit" in lowered or "429" in lowered:
        return "rate_limited"
    if "profile" in lowered:
        return "profile_incomplete"
    if "validation" in lowered or "invalid" in lowered:
        return "validation_failed"
    if "select" in lowered or "exercise" in lowered:
        return "selection_failed"
    if "database" in lowered or "supabase" in lowered:
        return "storage_error"
    if "api" in lowered or "unavailable" in lowered or "connect" in lowered:
        return "service_unavailable"
    return "unknown"


def classify_generation_error(exc: BaseException) -> ClassifiedError:
    """Map any exception raised while generating to a user-facing category."""
    raw = str(exc) or exc.__class__.__name__

    if isinstance(exc, (GeneratorTransientError, GeneratorFatalError)):
        category = exc.category
    elif isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        category = "timeout"
    elif isinstance(exc, httpx.HTTPError):
        category = "service_unavailable"
    elif isinstance(exc, LedgerUnavailableError):
        category = "storage_error"
    elif isinstance(exc, GenerationConflictError):
        category = "conflict"
    elif isinstance(exc, GenerationNotFoundError):
        category = "not_found"
    else:
        category = _category_from_text(raw)

    if category not in USER_MESSAGES:
        logger.warning("Unknown generation error category %r, using 'unknown'", category)
        category = "unknown"

    if isinstance(exc, GeneratorFatalError):
        retriable = False
    elif isinstance(exc, GeneratorTransientError):
        retriable = True
    else:
        retriable = category in RETRIABLE_CATEGORIES

    return ClassifiedError(
        category=category,
        user_message=user_message_for(category),
        retriable=retriable,
        raw_message=raw,
    )
