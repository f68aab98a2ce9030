"""Tests for the time-based progress estimate and ETA helper."""

import pytest

from backend.services.progress_estimator import (
    ESTIMATE_CEILING_PERCENT,
    estimate_progress,
    remaining_eta_seconds,
)


@pytest.mark.parametrize(
    "elapsed,percent,phase",
    [
        (0, 5, "profile"),
        (9.9, 5, "profile"),
        (10, 20, "planning"),
        (45, 40, "generating"),
        (90, 60, "generating"),
        (150, 75, "optimizing"),
    ],
)
def test_phase_table(elapsed, percent, phase):
    estimate = estimate_progress(elapsed)
    assert estimate.percent == percent
    assert estimate.phase == phase


def test_negative_elapsed_is_treated_as_zero():
    assert estimate_progress(-5).percent == 5


def test_monotonic_in_elapsed_time():
    values = [estimate_progress(s).percent for s in range(0, 3600, 7)]
    assert values == sorted(values)


def test_never_reaches_completion():
    assert estimate_progress(10_000).percent == ESTIMATE_CEILING_PERCENT
    assert estimate_progress(10_000).phase == "finalizing"
    assert estimate_progress(181).percent < ESTIMATE_CEILING_PERCENT


class TestRemainingEta:
    def test_no_estimate_means_no_eta(self):
        assert remaining_eta_seconds(None, 50) is None
        assert remaining_eta_seconds(0, 50) is None

    def test_scales_with_remaining_percent(self):
        assert remaining_eta_seconds(120_000, 0) == 120
        assert remaining_eta_seconds(120_000, 50) == 60
        assert remaining_eta_seconds(120_000, 100) == 0
