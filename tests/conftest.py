"""Shared fixtures for generation API tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from application.models.generation import GeneratedPlan, UserProfile
from backend.services.generation_cache import GenerationCache
from backend.services.generation_runner import GenerationRunner
from infrastructure.db.in_memory_stores import (
    InMemoryGenerationLedger,
    InMemoryGenerationMetrics,
    InMemoryProfileRepository,
)

TEST_USER_ID = "user-test-1"
OTHER_USER_ID = "user-test-2"


class FakeClock:
    """Monotonic-style clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUtcNow:
    """Wall clock for ledger timestamps and retention checks."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class StubGenerator:
    """PlanGenerator double. Blocks on ``gate`` when given, then returns or raises."""

    def __init__(
        self,
        result_ref: str = "plan-001",
        error: Optional[BaseException] = None,
        gate: Optional[asyncio.Event] = None,
        insight_changes: Optional[List[dict]] = None,
    ):
        self.result_ref = result_ref
        self.error = error
        self.gate = gate
        self.insight_changes = insight_changes or []
        self.calls = []

    async def generate(self, profile, context):
        self.calls.append((profile.user_id, context))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return GeneratedPlan(result_ref=self.result_ref, insight_changes=self.insight_changes)


@pytest.fixture
def utcnow():
    return FakeUtcNow()


@pytest.fixture
def ledger(utcnow):
    return InMemoryGenerationLedger(now=utcnow)


@pytest.fixture
def metrics_store():
    return InMemoryGenerationMetrics()


@pytest.fixture
def profiles():
    return InMemoryProfileRepository({
        TEST_USER_ID: UserProfile(user_id=TEST_USER_ID, current_cycle_day=3),
        OTHER_USER_ID: UserProfile(user_id=OTHER_USER_ID, current_cycle_day=1),
    })


@pytest.fixture
def cache():
    return GenerationCache(ttl_seconds=600)


@pytest.fixture
def generator():
    return StubGenerator()


def build_runner(ledger, cache, metrics_store, profiles, generator, **overrides):
    options = {
        "generation_timeout": 5.0,
        "fallback_estimate_ms": 1000,
        "tick_interval": 0.01,
    }
    options.update(overrides)
    return GenerationRunner(ledger, cache, metrics_store, profiles, generator, **options)


@pytest.fixture
def runner(ledger, cache, metrics_store, profiles, generator):
    return build_runner(ledger, cache, metrics_store, profiles, generator)
