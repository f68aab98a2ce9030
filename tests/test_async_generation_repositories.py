"""Unit tests for the Supabase generation ledger, metrics and profile repositories.

Tests Supabase query construction and response handling using a mocked
AsyncClient. client.table() is synchronous in the Supabase async client;
only .execute() is async.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from application.models.generation import MetricsSample, PlanContext, SplitContext
from backend.services.generation_errors import (
    GenerationConflictError,
    GenerationNotFoundError,
    LedgerUnavailableError,
)
from infrastructure.db.async_generation_ledger_repository import AsyncGenerationLedgerRepository
from infrastructure.db.async_generation_metrics_repository import (
    AsyncGenerationMetricsRepository,
    weighted_recent_average,
)
from infrastructure.db.async_profile_repository import AsyncSupabaseProfileRepository


def _row(**overrides):
    row = {
        "request_id": "r-1",
        "user_id": "u-1",
        "context": {"kind": "plan", "target_day": 3},
        "status": "pending",
        "progress_percent": 0,
        "current_phase": None,
        "result_ref": None,
        "error_message": None,
        "error_category": None,
        "created_at": "2026-03-01T12:00:00+00:00",
        "updated_at": "2026-03-01T12:00:00+00:00",
    }
    row.update(overrides)
    return row


@pytest.fixture
def mock_client():
    client = MagicMock()
    table_mock = MagicMock()
    client.table.return_value = table_mock
    return client, table_mock


def _chain_mock(table_mock, terminal_data):
    """Set up a chainable query builder that returns terminal_data on .execute()."""
    result = MagicMock()
    result.data = terminal_data

    execute_mock = AsyncMock(return_value=result)

    chain = MagicMock()
    chain.execute = execute_mock
    for method in ("eq", "in_", "lte", "order", "limit"):
        getattr(chain, method).return_value = chain

    table_mock.insert.return_value = chain
    table_mock.update.return_value = chain
    table_mock.select.return_value = chain

    return chain


class _UniqueViolation(Exception):
    code = "23505"


class TestLedgerCreate:
    @pytest.mark.asyncio
    async def test_inserts_pending_row(self, mock_client):
        client, table_mock = mock_client
        _chain_mock(table_mock, [_row()])
        repo = AsyncGenerationLedgerRepository(client)

        record = await repo.create("u-1", "r-1", PlanContext(target_day=3))

        client.table.assert_called_with("generation_requests")
        inserted = table_mock.insert.call_args[0][0]
        assert inserted["status"] == "pending"
        assert inserted["context"] == {"kind": "plan", "target_day": 3}
        assert record.request_id == "r-1"
        assert record.context.target_day == 3

    @pytest.mark.asyncio
    async def test_unique_violation_is_conflict(self, mock_client):
        client, table_mock = mock_client
        chain = _chain_mock(table_mock, [])
        chain.execute.side_effect = _UniqueViolation("duplicate key")
        repo = AsyncGenerationLedgerRepository(client)

        with pytest.raises(GenerationConflictError):
            await repo.create("u-1", "r-1", PlanContext())

    @pytest.mark.asyncio
    async def test_other_errors_are_ledger_unavailable(self, mock_client):
        client, table_mock = mock_client
        chain = _chain_mock(table_mock, [])
        chain.execute.side_effect = RuntimeError("connection reset")
        repo = AsyncGenerationLedgerRepository(client)

        with pytest.raises(LedgerUnavailableError):
            await repo.create("u-1", "r-1", PlanContext())


class TestLedgerReads:
    @pytest.mark.asyncio
    async def test_get_by_request_id(self, mock_client):
        client, table_mock = mock_client
        chain = _chain_mock(table_mock, [_row(status="in_progress", progress_percent=45)])
        repo = AsyncGenerationLedgerRepository(client)

        record = await repo.get_by_request_id("r-1")

        chain.eq.assert_called_with("request_id", "r-1")
        assert record.progress_percent == 45

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, mock_client):
        client, table_mock = mock_client
        _chain_mock(table_mock, [])
        repo = AsyncGenerationLedgerRepository(client)
        assert await repo.get_by_request_id("nope") is None

    @pytest.mark.asyncio
    async def test_legacy_row_without_kind_is_plan(self, mock_client):
        client, table_mock = mock_client
        _chain_mock(table_mock, [_row(context={"target_day": 5})])
        repo = AsyncGenerationLedgerRepository(client)
        record = await repo.get_by_request_id("r-1")
        assert record.context.kind == "plan"
        assert record.context.target_day == 5

    @pytest.mark.asyncio
    async def test_active_filters_on_active_statuses(self, mock_client):
        client, table_mock = mock_client
        chain = _chain_mock(table_mock, [_row(context={"kind": "split", "split_type": "ppl"})])
        repo = AsyncGenerationLedgerRepository(client)

        record = await repo.get_active_for_user("u-1")

        status_filter = chain.in_.call_args[0]
        assert status_filter[0] == "status"
        assert set(status_filter[1]) == {"pending", "in_progress"}
        chain.order.assert_called_with("created_at", desc=True)
        assert isinstance(record.context, SplitContext)

    @pytest.mark.asyncio
    async def test_read_failure_is_ledger_unavailable(self, mock_client):
        client, table_mock = mock_client
        chain = _chain_mock(table_mock, [])
        chain.execute.side_effect = RuntimeError("timeout")
        repo = AsyncGenerationLedgerRepository(client)
        with pytest.raises(LedgerUnavailableError):
            await repo.list_recent("u-1")


class TestLedgerWrites:
    @pytest.mark.asyncio
    async def test_progress_is_conditional_on_active_and_not_lower(self, mock_client):
        client, table_mock = mock_client
        chain = _chain_mock(table_mock, [])
        repo = AsyncGenerationLedgerRepository(client)

        await repo.update_progress("r-1", 60, "generating")

        update = table_mock.update.call_args[0][0]
        assert update["progress_percent"] == 60
        assert update["current_phase"] == "generating"
        chain.lte.assert_called_with("progress_percent", 60)
        assert "updated_at" in update

    @pytest.mark.asyncio
    async def test_mark_started_claims_only_pending_rows(self, mock_client):
        client, table_mock = mock_client
        chain = _chain_mock(table_mock, [_row(status="in_progress")])
        repo = AsyncGenerationLedgerRepository(client)

        assert await repo.mark_started("r-1") is True
        assert table_mock.update.call_args[0][0]["status"] == "in_progress"
        chain.eq.assert_called_with("status", "pending")

    @pytest.mark.asyncio
    async def test_mark_started_on_claimed_row_is_false(self, mock_client):
        client, table_mock = mock_client
        _chain_mock(table_mock, [])
        repo = AsyncGenerationLedgerRepository(client)

        assert await repo.mark_started("r-1") is False

    @pytest.mark.asyncio
    async def test_mark_completed_sets_result(self, mock_client):
        client, table_mock = mock_client
        _chain_mock(table_mock, [_row(status="completed", result_ref="plan-1")])
        repo = AsyncGenerationLedgerRepository(client)

        await repo.mark_completed("r-1", "plan-1")

        update = table_mock.update.call_args[0][0]
        assert update["status"] == "completed"
        assert update["result_ref"] == "plan-1"
        assert update["progress_percent"] == 100

    @pytest.mark.asyncio
    async def test_ignored_terminal_write_is_logged(self, mock_client, caplog):
        client, table_mock = mock_client
        chain = _chain_mock(table_mock, [])
        # update matches nothing, then the lookup finds a failed row
        first, second = MagicMock(data=[]), MagicMock(data=[_row(status="failed")])
        chain.execute = AsyncMock(side_effect=[first, second])
        repo = AsyncGenerationLedgerRepository(client)

        await repo.mark_completed("r-1", "plan-1")

        assert "already failed" in caplog.text

    @pytest.mark.asyncio
    async def test_terminal_write_on_missing_row_raises(self, mock_client):
        client, table_mock = mock_client
        chain = _chain_mock(table_mock, [])
        chain.execute = AsyncMock(side_effect=[MagicMock(data=[]), MagicMock(data=[])])
        repo = AsyncGenerationLedgerRepository(client)

        with pytest.raises(GenerationNotFoundError):
            await repo.mark_failed("r-1", "boom", "unknown")

    @pytest.mark.asyncio
    async def test_terminal_write_failure_propagates(self, mock_client):
        client, table_mock = mock_client
        chain = _chain_mock(table_mock, [])
        chain.execute.side_effect = RuntimeError("db down")
        repo = AsyncGenerationLedgerRepository(client)

        with pytest.raises(LedgerUnavailableError):
            await repo.mark_failed("r-1", "boom", "unknown")


class TestMetricsRepository:
    def test_weighted_recent_average(self):
        assert weighted_recent_average([]) is None
        assert weighted_recent_average([40_000, 100_000]) == 60_000

    @pytest.mark.asyncio
    async def test_record_inserts_sample(self, mock_client):
        client, table_mock = mock_client
        _chain_mock(table_mock, [{}])
        repo = AsyncGenerationMetricsRepository(client)

        await repo.record(MetricsSample(user_id="u-1", operation_kind="plan", duration_ms=90_000, success=True))

        client.table.assert_called_with("generation_metrics")
        inserted = table_mock.insert.call_args[0][0]
        assert inserted == {
            "user_id": "u-1",
            "operation_kind": "plan",
            "duration_ms": 90_000,
            "success": True,
        }

    @pytest.mark.asyncio
    async def test_estimate_queries_recent_successes(self, mock_client):
        client, table_mock = mock_client
        chain = _chain_mock(table_mock, [{"duration_ms": 40_000}, {"duration_ms": 100_000}])
        repo = AsyncGenerationMetricsRepository(client)

        estimate = await repo.estimate_duration_ms("u-1", "plan")

        assert estimate == 60_000
        chain.eq.assert_any_call("success", True)
        chain.limit.assert_called_with(10)

    @pytest.mark.asyncio
    async def test_estimate_without_history_is_none(self, mock_client):
        client, table_mock = mock_client
        _chain_mock(table_mock, [])
        repo = AsyncGenerationMetricsRepository(client)
        assert await repo.estimate_duration_ms("u-1", "plan") is None


class TestProfileRepository:
    @pytest.mark.asyncio
    async def test_returns_profile(self, mock_client):
        client, table_mock = mock_client
        _chain_mock(table_mock, [{"user_id": "u-1", "current_cycle_day": 4, "goal": "strength"}])
        repo = AsyncSupabaseProfileRepository(client)

        profile = await repo.get_profile("u-1")

        assert profile.current_cycle_day == 4
        assert profile.model_dump()["goal"] == "strength"

    @pytest.mark.asyncio
    async def test_missing_profile_is_none(self, mock_client):
        client, table_mock = mock_client
        _chain_mock(table_mock, [])
        repo = AsyncSupabaseProfileRepository(client)
        assert await repo.get_profile("u-1") is None
