"""SSE event vocabulary shared by the generation stream and its tests.

Every event's data is a JSON object with at least ``phase``, ``progress`` and
``message``; progress events may carry ``eta`` (seconds). A stream ends with
exactly one ``complete`` or ``error`` event.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from backend.services.generation_errors import user_message_for

EVENT_PROGRESS = "progress"
EVENT_RESUME = "resume"
EVENT_COMPLETE = "complete"
EVENT_ERROR = "error"

TERMINAL_EVENTS = frozenset({EVENT_COMPLETE, EVENT_ERROR})

PHASE_MESSAGES = {
    "queued": "Waiting for plan generation to start",
    "starting": "Starting plan generation",
    "profile": "Loading your profile",
    "planning": "Planning your workout",
    "analyzing": "AI analyzing exercises",
    "generating": "AI selecting the best exercises",
    "history": "Analyzing your performance history",
    "optimizing": "Optimizing your plan",
    "finalizing": "Finalizing your plan",
}


def phase_message(phase: Optional[str]) -> str:
    return PHASE_MESSAGES.get(phase or "queued", "Generating your plan")


@dataclass
class PipelineEvent:
    """A single SSE event from the generation pipeline."""

    event: str  # "progress", "resume", "complete", "error"
    data: str  # JSON string

    @property
    def is_terminal(self) -> bool:
        return self.event in TERMINAL_EVENTS

    @property
    def payload(self) -> Dict[str, Any]:
        return json.loads(self.data)


def progress_event(
    percent: int,
    phase: str,
    message: str,
    eta: Optional[int] = None,
) -> PipelineEvent:
    data: Dict[str, Any] = {"phase": phase, "progress": percent, "message": message}
    if eta is not None:
        data["eta"] = eta
    return PipelineEvent(EVENT_PROGRESS, json.dumps(data))


def resume_event(
    request_id: str,
    percent: int,
    phase: Optional[str],
    eta: Optional[int] = None,
) -> PipelineEvent:
    data: Dict[str, Any] = {
        "phase": "resume",
        "progress": percent,
        "message": "Resuming your plan generation already in progress",
        "request_id": request_id,
        "current_phase": phase,
    }
    if eta is not None:
        data["eta"] = eta
    return PipelineEvent(EVENT_RESUME, json.dumps(data))


def complete_event(
    request_id: str,
    result_ref: str,
    insight_changes: Optional[List[Dict[str, Any]]] = None,
) -> PipelineEvent:
    return PipelineEvent(
        EVENT_COMPLETE,
        json.dumps({
            "phase": "complete",
            "progress": 100,
            "message": "Your plan is ready!",
            "request_id": request_id,
            "result_ref": result_ref,
            "insight_changes": insight_changes or [],
        }),
    )


def error_event(
    category: str,
    progress: int = 0,
    recoverable: bool = True,
    request_id: Optional[str] = None,
    **extra: Any,
) -> PipelineEvent:
    data: Dict[str, Any] = {
        "phase": "error",
        "progress": progress,
        "message": user_message_for(category),
        "error": user_message_for(category),
        "category": category,
        "recoverable": recoverable,
    }
    if request_id is not None:
        data["request_id"] = request_id
    data.update(extra)
    return PipelineEvent(EVENT_ERROR, json.dumps(data))
