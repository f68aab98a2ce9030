"""Tests for the background hand-off consumer."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from application.models.generation import GenerationStatus, PlanContext
from backend.services.generation_errors import GenerationNotFoundError, LedgerUnavailableError
from backend.services.generation_publisher import build_envelope
from backend.services.generation_worker import GenerationEnvelope, GenerationWorker
from tests.conftest import OTHER_USER_ID, TEST_USER_ID, StubGenerator, build_runner

REQUEST_ID = "44444444-4444-4444-8444-444444444444"


@pytest.fixture
def worker(ledger, runner):
    return GenerationWorker(ledger, runner)


def _envelope(**overrides):
    values = {"request_id": REQUEST_ID, "user_id": TEST_USER_ID, "context": {"target_day": 3, "kind": "plan"}}
    values.update(overrides)
    return GenerationEnvelope(**values)


async def _until_status(ledger, status):
    while (await ledger.get_by_request_id(REQUEST_ID)).status != status:
        await asyncio.sleep(0.005)


class TestAccept:
    @pytest.mark.asyncio
    async def test_accepts_published_envelope(self, ledger, worker):
        record = await ledger.create(TEST_USER_ID, REQUEST_ID, PlanContext(target_day=3))

        envelope = GenerationEnvelope.model_validate(build_envelope(record))

        assert await worker.accept(envelope) is True

    @pytest.mark.asyncio
    async def test_rejects_unknown_event(self, worker):
        with pytest.raises(ValueError):
            await worker.accept(_envelope(event="generation.cancelled"))

    @pytest.mark.asyncio
    async def test_missing_record_is_not_found(self, worker):
        with pytest.raises(GenerationNotFoundError):
            await worker.accept(_envelope())

    @pytest.mark.asyncio
    async def test_foreign_record_is_not_found(self, ledger, worker):
        await ledger.create(OTHER_USER_ID, REQUEST_ID, PlanContext())
        with pytest.raises(GenerationNotFoundError):
            await worker.accept(_envelope())

    @pytest.mark.asyncio
    async def test_terminal_record_is_skipped(self, ledger, worker):
        await ledger.create(TEST_USER_ID, REQUEST_ID, PlanContext(target_day=3))
        await ledger.mark_completed(REQUEST_ID, "plan-1")

        assert await worker.accept(_envelope()) is False

    @pytest.mark.asyncio
    async def test_context_mismatch_is_logged(self, ledger, worker, caplog):
        await ledger.create(TEST_USER_ID, REQUEST_ID, PlanContext(target_day=3))

        assert await worker.accept(_envelope(context={"kind": "plan", "target_day": 5})) is True
        assert "differs from the ledger" in caplog.text

    @pytest.mark.asyncio
    async def test_ledger_failure_propagates(self, ledger, worker):
        ledger.get_by_request_id = AsyncMock(side_effect=LedgerUnavailableError("down"))
        with pytest.raises(LedgerUnavailableError):
            await worker.accept(_envelope())

    def test_envelope_rejects_unknown_context_kind(self):
        with pytest.raises(ValidationError):
            _envelope(context={"kind": "program"})


class TestExecute:
    @pytest.mark.asyncio
    async def test_runs_to_completion(self, ledger, worker, generator):
        await ledger.create(TEST_USER_ID, REQUEST_ID, PlanContext(target_day=3))

        outcome = await worker.execute(REQUEST_ID)

        assert outcome.success is True
        record = await ledger.get_by_request_id(REQUEST_ID)
        assert record.status == GenerationStatus.completed
        assert len(generator.calls) == 1

    @pytest.mark.asyncio
    async def test_skips_terminal_record(self, ledger, worker, generator):
        await ledger.create(TEST_USER_ID, REQUEST_ID, PlanContext(target_day=3))
        await ledger.mark_failed(REQUEST_ID, "boom", "unknown")

        assert await worker.execute(REQUEST_ID) is None
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_finalization_failure_is_logged_not_raised(self, ledger, worker, caplog):
        await ledger.create(TEST_USER_ID, REQUEST_ID, PlanContext(target_day=3))
        ledger.mark_completed = AsyncMock(side_effect=LedgerUnavailableError("db down"))

        assert await worker.execute(REQUEST_ID) is None
        assert "could not finalize" in caplog.text


class TestRedelivery:
    @pytest.mark.asyncio
    async def test_redelivery_while_running_does_not_generate_twice(
        self, ledger, cache, metrics_store, profiles
    ):
        gate = asyncio.Event()
        generator = StubGenerator(result_ref="plan-r1", gate=gate)
        worker = GenerationWorker(
            ledger, build_runner(ledger, cache, metrics_store, profiles, generator)
        )
        await ledger.create(TEST_USER_ID, REQUEST_ID, PlanContext(target_day=3))

        assert await worker.accept(_envelope()) is True
        running = asyncio.create_task(worker.execute(REQUEST_ID))
        await asyncio.wait_for(_until_status(ledger, GenerationStatus.in_progress), 2.0)

        assert await worker.accept(_envelope()) is False
        assert await worker.execute(REQUEST_ID) is None

        gate.set()
        outcome = await running
        assert outcome.success is True
        assert len(generator.calls) == 1

