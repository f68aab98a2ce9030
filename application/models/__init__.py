"""Application domain models for plan generation."""

from .generation import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    GeneratedPlan,
    GenerationContext,
    GenerationRequest,
    GenerationStatus,
    GenerationStatusResponse,
    GenerationSummary,
    MetricsSample,
    PlanContext,
    SplitContext,
    StartGenerationRequest,
    UserProfile,
    parse_context,
    same_target,
)

__all__ = [
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "GeneratedPlan",
    "GenerationContext",
    "GenerationRequest",
    "GenerationStatus",
    "GenerationStatusResponse",
    "GenerationSummary",
    "MetricsSample",
    "PlanContext",
    "SplitContext",
    "StartGenerationRequest",
    "UserProfile",
    "parse_context",
    "same_target",
]
