"""Tests for GenerationCache: TTL, owner isolation, and terminal stickiness."""

import pytest

from backend.services.generation_cache import (
    CACHE_COMPLETE,
    CACHE_ERROR,
    CACHE_IN_PROGRESS,
    GenerationCache,
)
from tests.conftest import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return GenerationCache(ttl_seconds=600, clock=clock)


class TestStartAndGet:
    def test_start_creates_in_progress_entry(self, store, clock):
        entry = store.start("r-1", "u-1")
        assert entry.status == CACHE_IN_PROGRESS
        assert entry.started_at == clock.now

        fetched = store.get("r-1", "u-1")
        assert fetched is not None
        assert fetched.user_id == "u-1"

    def test_get_missing_returns_none(self, store):
        assert store.get("nope") is None

    def test_get_other_user_returns_none(self, store):
        store.start("r-1", "u-1")
        assert store.get("r-1", "u-2") is None
        # Without an owner filter the entry is still there
        assert store.get("r-1") is not None


class TestTTL:
    def test_entry_visible_until_ttl(self, store, clock):
        store.start("r-1", "u-1")
        clock.advance(600)
        assert store.get("r-1") is not None

    def test_entry_absent_after_ttl(self, store, clock):
        store.start("r-1", "u-1")
        clock.advance(601)
        assert store.get("r-1") is None
        assert len(store) == 0

    def test_ttl_counts_from_last_update(self, store, clock):
        store.start("r-1", "u-1")
        clock.advance(500)
        store.complete("r-1", "u-1", "plan-1")
        clock.advance(500)
        entry = store.get("r-1")
        assert entry is not None
        assert entry.status == CACHE_COMPLETE

    def test_writes_sweep_expired_entries(self, store, clock):
        store.start("old", "u-1")
        clock.advance(700)
        store.start("new", "u-1")
        assert len(store) == 1


class TestTerminalStates:
    def test_complete_records_result(self, store):
        store.start("r-1", "u-1")
        store.complete("r-1", "u-1", "plan-1", [{"type": "deload"}])
        entry = store.get("r-1", "u-1")
        assert entry.status == CACHE_COMPLETE
        assert entry.result_ref == "plan-1"
        assert entry.insight_changes == [{"type": "deload"}]

    def test_error_records_category(self, store):
        store.start("r-1", "u-1")
        store.error("r-1", "u-1", "took too long", "timeout")
        entry = store.get("r-1", "u-1")
        assert entry.status == CACHE_ERROR
        assert entry.error_category == "timeout"

    def test_error_does_not_overwrite_complete(self, store):
        store.start("r-1", "u-1")
        store.complete("r-1", "u-1", "plan-1")
        store.error("r-1", "u-1", "late failure", "unknown")
        entry = store.get("r-1")
        assert entry.status == CACHE_COMPLETE
        assert entry.error is None

    def test_complete_does_not_overwrite_error(self, store):
        store.start("r-1", "u-1")
        store.error("r-1", "u-1", "failed", "timeout")
        store.complete("r-1", "u-1", "plan-1")
        assert store.get("r-1").status == CACHE_ERROR

    def test_complete_without_start_creates_entry(self, store):
        store.complete("r-9", "u-1", "plan-9")
        assert store.get("r-9", "u-1").result_ref == "plan-9"


class TestEstimateProgress:
    def test_estimate_follows_elapsed_time(self, store, clock):
        store.start("r-1", "u-1")
        clock.advance(45)
        estimate = store.estimate_progress("r-1")
        assert estimate.percent == 40
        assert estimate.phase == "generating"

    def test_no_estimate_for_terminal_entry(self, store):
        store.start("r-1", "u-1")
        store.complete("r-1", "u-1", "plan-1")
        assert store.estimate_progress("r-1") is None

    def test_no_estimate_for_missing_entry(self, store):
        assert store.estimate_progress("missing") is None
