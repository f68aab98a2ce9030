"""Domain models for plan generation requests.

Matches the schema of the ``generation_requests`` and ``generation_metrics``
tables used by the Supabase adapters in ``infrastructure.db``.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# ---------------------------------------------------------------------------
# Enums - values mirror the DB CHECK constraints
# ---------------------------------------------------------------------------


class GenerationStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"


ACTIVE_STATUSES = frozenset({GenerationStatus.pending, GenerationStatus.in_progress})
TERMINAL_STATUSES = frozenset({GenerationStatus.completed, GenerationStatus.failed})


# ---------------------------------------------------------------------------
# Generation context (tagged variant)
# ---------------------------------------------------------------------------


class PlanContext(BaseModel):
    """Generate the plan for one day of the user's cycle."""

    kind: Literal["plan"] = "plan"
    target_day: Optional[int] = Field(default=None, ge=1)


class SplitContext(BaseModel):
    """Generate a whole training split. Extra keys are carried through untouched."""

    model_config = ConfigDict(extra="allow")

    kind: Literal["split"] = "split"
    split_type: Optional[str] = None
    weekly_frequency: Optional[int] = Field(default=None, ge=1, le=7)


GenerationContext = Annotated[
    Union[PlanContext, SplitContext],
    Field(discriminator="kind"),
]

_context_adapter: TypeAdapter = TypeAdapter(GenerationContext)


def parse_context(data: Any) -> Union[PlanContext, SplitContext]:
    """Build a context from a stored JSON payload. Missing kind means a plan."""
    if isinstance(data, (PlanContext, SplitContext)):
        return data
    payload = dict(data or {})
    payload.setdefault("kind", "plan")
    return _context_adapter.validate_python(payload)


def same_target(
    left: Union[PlanContext, SplitContext],
    right: Union[PlanContext, SplitContext],
) -> bool:
    """True when two contexts would produce the same artifact (same kind and target)."""
    return left.model_dump() == right.model_dump()


# ---------------------------------------------------------------------------
# Ledger record
# ---------------------------------------------------------------------------


class GenerationRequest(BaseModel):
    """Durable lifecycle record for one generation, keyed by the client's request id."""

    request_id: str
    user_id: str
    context: GenerationContext = Field(default_factory=PlanContext)
    status: GenerationStatus = GenerationStatus.pending
    progress_percent: int = Field(default=0, ge=0, le=100)
    current_phase: Optional[str] = None
    result_ref: Optional[str] = None
    error_message: Optional[str] = None
    error_category: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def operation_kind(self) -> str:
        return self.context.kind

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "GenerationRequest":
        """Build a record from a ``generation_requests`` row."""
        data = dict(row)
        data["context"] = parse_context(data.get("context"))
        data["progress_percent"] = int(data.get("progress_percent") or 0)
        return cls.model_validate(data)


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class MetricsSample(BaseModel):
    """One finished generation run, used only in aggregate for ETA estimates."""

    user_id: str
    operation_kind: str
    duration_ms: int = Field(ge=0)
    success: bool


# ---------------------------------------------------------------------------
# Generator collaborator payloads
# ---------------------------------------------------------------------------


class UserProfile(BaseModel):
    """The subset of a user profile the Generator needs. Other columns pass through."""

    model_config = ConfigDict(extra="allow")

    user_id: str
    current_cycle_day: Optional[int] = None


class GeneratedPlan(BaseModel):
    """What the Generator hands back: a reference to the stored plan."""

    result_ref: str
    insight_changes: List[Dict[str, Any]] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# API request / response schemas
# ---------------------------------------------------------------------------


class StartGenerationRequest(BaseModel):
    request_id: str = Field(..., min_length=1, max_length=64)
    context: GenerationContext = Field(default_factory=PlanContext)


class GenerationStatusResponse(BaseModel):
    """Polling result. Only the fields relevant to ``status`` are populated."""

    status: Literal["not_found", "in_progress", "complete", "error"]
    request_id: Optional[str] = None
    progress: Optional[int] = None
    phase: Optional[str] = None
    message: Optional[str] = None
    result_ref: Optional[str] = None
    insight_changes: Optional[List[Dict[str, Any]]] = None
    error: Optional[str] = None
    category: Optional[str] = None


class GenerationSummary(BaseModel):
    """Ledger record as exposed to the owning user (no raw error text)."""

    request_id: str
    status: GenerationStatus
    context: GenerationContext
    progress_percent: int
    current_phase: Optional[str] = None
    result_ref: Optional[str] = None
    error_category: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_request(cls, record: GenerationRequest) -> "GenerationSummary":
        return cls(
            request_id=record.request_id,
            status=record.status,
            context=record.context,
            progress_percent=record.progress_percent,
            current_phase=record.current_phase,
            result_ref=record.result_ref,
            error_category=record.error_category,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
