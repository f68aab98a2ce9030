"""Time-based progress estimation for polling clients.

Used when no explicit progress update has been recorded yet: gives a
monotonically increasing, never-complete-looking percentage derived only from
elapsed wall-clock time.
"""

import math
from typing import NamedTuple, Optional

# Estimates never reach this until a terminal write arrives
ESTIMATE_CEILING_PERCENT = 94


class ProgressEstimate(NamedTuple):
    percent: int
    phase: str
    message: str


# (upper bound in seconds, percent, phase, message)
_PHASE_TABLE = (
    (10.0, 5, "profile", "Loading your profile"),
    (30.0, 20, "planning", "Planning your workout"),
    (60.0, 40, "generating", "AI selecting exercises"),
    (120.0, 60, "generating", "AI selecting the best exercises"),
    (180.0, 75, "optimizing", "Optimizing exercise selection"),
)

# Time constant of the creep toward the ceiling once the table is exhausted
_CREEP_SECONDS = 120.0


def estimate_progress(elapsed_seconds: float) -> ProgressEstimate:
    """Map elapsed seconds since start to a displayed percentage and phase."""
    elapsed = max(0.0, elapsed_seconds)
    for upper, percent, phase, message in _PHASE_TABLE:
        if elapsed < upper:
            return ProgressEstimate(percent, phase, message)

    last_upper, last_percent, _, _ = _PHASE_TABLE[-1]
    fraction = 1.0 - math.exp(-(elapsed - last_upper) / _CREEP_SECONDS)
    percent = last_percent + int((ESTIMATE_CEILING_PERCENT - last_percent) * fraction)
    return ProgressEstimate(
        min(percent, ESTIMATE_CEILING_PERCENT),
        "finalizing",
        "Finalizing your workout",
    )


def remaining_eta_seconds(estimated_duration_ms: Optional[int], percent: int) -> Optional[int]:
    """Seconds left given a total duration estimate, or None without an estimate."""
    if not estimated_duration_ms:
        return None
    remaining_ms = estimated_duration_ms * (100 - max(0, min(percent, 100))) / 100
    return max(0, round(remaining_ms / 1000))
