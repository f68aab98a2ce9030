"""Streaming entry point for plan generation.

One call to ``stream()`` serves one SSE connection. It resolves the request
against the ledger (replay, resume, dedup, conflict), starts new work either
on the background worker or in a detached task, and yields progress events
until a terminal state or the stream ceiling.

Work started here never belongs to the connection: a client disconnect
closes the generator and detaches its sink, while the task keeps running and
records its outcome in the ledger.
"""

import asyncio
import logging
import time
import weakref
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Optional, Set, Tuple

from application.models.generation import (
    GenerationContext,
    GenerationRequest,
    GenerationStatus,
    same_target,
)
from application.ports.generation_ledger import GenerationLedger
from application.ports.generation_publisher import GenerationPublisher
from backend.observability import GenerationMetrics
from backend.services.generation_cache import (
    CACHE_COMPLETE,
    CACHE_ERROR,
    CacheEntry,
    GenerationCache,
)
from backend.services.generation_errors import (
    RETRIABLE_CATEGORIES,
    GenerationConflictError,
    GenerationNotFoundError,
    LedgerUnavailableError,
    classify_generation_error,
    user_message_for,
)
from backend.services.generation_events import (
    PipelineEvent,
    complete_event,
    error_event,
    phase_message,
    progress_event,
    resume_event,
)
from backend.services.generation_runner import GenerationRunner
from backend.services.progress_estimator import remaining_eta_seconds

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionSink:
    """Event buffer between a detached work task and one SSE connection.

    Progress is clamped so a connection never sees it go backwards. After
    ``detach()`` every write is dropped.
    """

    def __init__(self, floor: int = 0):
        self._queue: "asyncio.Queue[PipelineEvent]" = asyncio.Queue()
        self._attached = True
        self._progress = floor

    @property
    def attached(self) -> bool:
        return self._attached

    @property
    def progress(self) -> int:
        return self._progress

    def clamp(self, percent: int) -> int:
        self._progress = max(self._progress, percent)
        return self._progress

    def put(self, event: PipelineEvent) -> None:
        if self._attached:
            self._queue.put_nowait(event)

    def detach(self) -> None:
        self._attached = False

    async def get(self) -> PipelineEvent:
        return await self._queue.get()


@dataclass
class _Resolution:
    action: str  # "replay_complete", "replay_error", "follow", "resume", "start"
    request_id: str
    record: Optional[GenerationRequest] = None
    entry: Optional[CacheEntry] = None


class GenerationOrchestrator:
    """Resolves, starts and streams generations for one process."""

    def __init__(
        self,
        ledger: GenerationLedger,
        cache: GenerationCache,
        runner: GenerationRunner,
        publisher: Optional[GenerationPublisher] = None,
        *,
        retention_seconds: int = 600,
        poll_interval: float = 2.0,
        stream_ceiling: float = 300.0,
        now: Callable[[], datetime] = _utcnow,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ledger = ledger
        self._cache = cache
        self._runner = runner
        self._publisher = publisher
        self._retention_seconds = retention_seconds
        self._poll_interval = poll_interval
        self._stream_ceiling = stream_ceiling
        self._now = now
        self._clock = clock
        # Per-user locks serialize the dedup check with record creation in this
        # process. Across instances the ledger's unique request_id is the backstop.
        self._user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def wait_for_pending(self) -> None:
        """Wait for detached work started by this process (shutdown, tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stream(
        self,
        user_id: str,
        request_id: str,
        context: GenerationContext,
    ) -> AsyncIterator[PipelineEvent]:
        """Yield SSE events for a generation until it is terminal or the ceiling passes."""
        try:
            resolution = await self._resolve(user_id, request_id, context)
        except GenerationConflictError as e:
            _count("conflict")
            logger.info(
                "Rejected generation %s for user %s: %s is active",
                request_id,
                user_id,
                e.active_request_id,
            )
            yield error_event(
                "conflict",
                recoverable=False,
                request_id=request_id,
                active_request_id=e.active_request_id,
            )
            return
        except GenerationNotFoundError:
            _count("not_found")
            yield error_event("not_found", recoverable=False, request_id=request_id)
            return
        except Exception as e:
            logger.exception("Failed to resolve generation %s", request_id)
            classified = classify_generation_error(e)
            yield error_event(
                classified.category, recoverable=classified.retriable, request_id=request_id
            )
            return

        _count(resolution.action)
        try:
            if resolution.action == "replay_complete":
                yield self._complete_from(
                    resolution.request_id, resolution.record, resolution.entry
                )
            elif resolution.action == "replay_error":
                yield self._error_from(resolution.record, resolution.entry, 0)
            elif resolution.action == "start":
                async for event in self._start(resolution.record):
                    yield event
            else:
                async for event in self._follow(
                    resolution.request_id,
                    user_id,
                    context.kind,
                    resolution.record,
                    resumed=resolution.action == "resume",
                ):
                    yield event
        except Exception as e:
            # Nothing terminal has been yielded yet: every branch returns after one
            logger.exception("Stream for generation %s failed", resolution.request_id)
            classified = classify_generation_error(e)
            yield error_event(
                classified.category,
                recoverable=classified.retriable,
                request_id=resolution.request_id,
            )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def _resolve(
        self, user_id: str, request_id: str, context: GenerationContext
    ) -> _Resolution:
        async with self._user_lock(user_id):
            existing = await self._lookup(request_id, user_id)
            if existing is not None:
                return existing

            active = await self._ledger.get_active_for_user(user_id)
            if active is not None and self._expired(active):
                logger.warning(
                    "Ignoring abandoned generation %s for user %s (last update %s)",
                    active.request_id,
                    user_id,
                    active.updated_at.isoformat(),
                )
                active = None
            if active is not None:
                if same_target(active.context, context):
                    logger.info(
                        "Generation %s resumes active %s for user %s",
                        request_id,
                        active.request_id,
                        user_id,
                    )
                    return _Resolution("resume", active.request_id, record=active)
                raise GenerationConflictError(
                    f"Generation {active.request_id} is already active for user {user_id}",
                    active_request_id=active.request_id,
                )

            try:
                record = await self._ledger.create(user_id, request_id, context)
            except GenerationConflictError:
                # Created concurrently by another instance
                record = await self._ledger.get_by_request_id(request_id)
                if record is None or record.user_id != user_id:
                    raise
                return _Resolution("follow", request_id, record=record)

            self._cache_start(record)
            logger.info(
                "Created generation %s for user %s (%s)", request_id, user_id, context.kind
            )
            return _Resolution("start", request_id, record=record)

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    async def _lookup(self, request_id: str, user_id: str) -> Optional[_Resolution]:
        """Resume check: ledger first, then the cache."""
        try:
            record = await self._ledger.get_by_request_id(request_id)
        except LedgerUnavailableError as e:
            logger.warning("Ledger lookup for %s failed, checking cache: %s", request_id, e)
            record = None

        if record is not None:
            if record.user_id != user_id or self._expired(record):
                raise GenerationNotFoundError(f"Generation {request_id} not found")
            if record.status == GenerationStatus.completed:
                return _Resolution("replay_complete", request_id, record=record,
                                   entry=self._cache_get(request_id, user_id))
            if record.status == GenerationStatus.failed:
                return _Resolution("replay_error", request_id, record=record)
            return _Resolution("follow", request_id, record=record)

        entry = self._cache_get(request_id, user_id)
        if entry is None:
            return None
        if entry.status == CACHE_COMPLETE:
            return _Resolution("replay_complete", request_id, entry=entry)
        if entry.status == CACHE_ERROR:
            return _Resolution("replay_error", request_id, entry=entry)
        return _Resolution("follow", request_id, entry=entry)

    def _expired(self, record: GenerationRequest) -> bool:
        age = (self._now() - record.updated_at).total_seconds()
        return age > self._retention_seconds

    # ------------------------------------------------------------------
    # Starting work
    # ------------------------------------------------------------------

    async def _start(self, record: GenerationRequest) -> AsyncIterator[PipelineEvent]:
        estimate = await self._runner.estimate_duration_ms(record.user_id, record.operation_kind)

        if self._publisher is not None:
            try:
                await self._publisher.publish(record)
            except Exception as e:
                logger.warning(
                    "Publishing generation %s failed, running inline: %s", record.request_id, e
                )
            else:
                async for event in self._follow(
                    record.request_id, record.user_id, record.operation_kind, record,
                    estimate=estimate,
                ):
                    yield event
                return

        sink = ConnectionSink()
        self._spawn(self._drive(record, sink, estimate))
        try:
            async for event in self._drain(sink, record.request_id):
                yield event
        finally:
            sink.detach()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _drive(
        self, record: GenerationRequest, sink: ConnectionSink, estimate: Optional[int]
    ) -> None:
        """Detached work task: outlives the connection that started it."""

        def on_progress(percent: int, phase: str, message: str) -> None:
            value = sink.clamp(percent)
            sink.put(progress_event(value, phase, message, remaining_eta_seconds(estimate, value)))

        try:
            outcome = await self._runner.run(record, on_progress, estimate)
        except Exception:
            logger.exception("Generation %s could not be finalized", record.request_id)
            sink.put(error_event(
                "storage_error", progress=sink.progress, request_id=record.request_id
            ))
            return

        if outcome is None:
            # Claimed elsewhere, e.g. a worker that got the envelope despite a failed publish
            async for event in self._follow(
                record.request_id, record.user_id, record.operation_kind, record,
                estimate=estimate,
            ):
                if not sink.attached:
                    break
                sink.put(event)
            return

        if outcome.success:
            sink.put(complete_event(record.request_id, outcome.result_ref, outcome.insight_changes))
        else:
            sink.put(error_event(
                outcome.error.category,
                progress=sink.progress,
                recoverable=outcome.error.retriable,
                request_id=record.request_id,
            ))

    async def _drain(self, sink: ConnectionSink, request_id: str) -> AsyncIterator[PipelineEvent]:
        deadline = self._clock() + self._stream_ceiling
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                yield self._ceiling_event(request_id, sink.progress)
                return
            try:
                event = await asyncio.wait_for(sink.get(), timeout=remaining)
            except asyncio.TimeoutError:
                yield self._ceiling_event(request_id, sink.progress)
                return
            yield event
            if event.is_terminal:
                return

    # ------------------------------------------------------------------
    # Following work driven elsewhere
    # ------------------------------------------------------------------

    async def _follow(
        self,
        request_id: str,
        user_id: str,
        operation_kind: str,
        record: Optional[GenerationRequest],
        *,
        resumed: bool = False,
        estimate: Optional[int] = None,
    ) -> AsyncIterator[PipelineEvent]:
        """Poll the ledger until terminal or the ceiling. Never marks the record failed."""
        if estimate is None:
            estimate = await self._runner.estimate_duration_ms(user_id, operation_kind)

        last = -1
        if resumed and record is not None:
            last = record.progress_percent
            yield resume_event(
                request_id, last, record.current_phase, remaining_eta_seconds(estimate, last)
            )

        deadline = self._clock() + self._stream_ceiling
        while True:
            entry = self._cache_get(request_id, user_id)
            if record is not None and record.is_terminal:
                self._mirror_terminal(record, entry)
                if record.status == GenerationStatus.completed:
                    yield self._complete_from(request_id, record, entry)
                else:
                    yield self._error_from(record, None, max(last, 0))
                return
            if entry is not None and entry.is_terminal:
                if entry.status == CACHE_COMPLETE:
                    yield self._complete_from(request_id, None, entry)
                else:
                    yield self._error_from(None, entry, max(last, 0))
                return

            percent, phase = self._observed_progress(request_id, record)
            if percent > last:
                last = percent
                yield progress_event(
                    percent, phase, phase_message(phase), remaining_eta_seconds(estimate, percent)
                )

            remaining = deadline - self._clock()
            if remaining <= 0:
                yield self._ceiling_event(request_id, max(last, 0))
                return
            await asyncio.sleep(min(self._poll_interval, remaining))
            record = await self._poll(request_id) or record

    def _observed_progress(
        self, request_id: str, record: Optional[GenerationRequest]
    ) -> Tuple[int, str]:
        percent, phase = 0, "queued"
        if record is not None:
            percent, phase = record.progress_percent, record.current_phase or "queued"
        try:
            estimate = self._cache.estimate_progress(request_id)
        except Exception as e:
            logger.warning("Cache estimate for %s failed: %s", request_id, e)
            estimate = None
        if estimate is not None and estimate.percent > percent:
            percent, phase = estimate.percent, estimate.phase
        return percent, phase

    async def _poll(self, request_id: str) -> Optional[GenerationRequest]:
        try:
            return await self._ledger.get_by_request_id(request_id)
        except LedgerUnavailableError as e:
            logger.warning("Ledger poll for %s failed: %s", request_id, e)
            return None

    # ------------------------------------------------------------------
    # Events from stored state
    # ------------------------------------------------------------------

    @staticmethod
    def _complete_from(
        request_id: str,
        record: Optional[GenerationRequest],
        entry: Optional[CacheEntry],
    ) -> PipelineEvent:
        result_ref = record.result_ref if record is not None else entry.result_ref
        insight_changes = entry.insight_changes if entry is not None else []
        return complete_event(request_id, result_ref, insight_changes)

    @staticmethod
    def _error_from(
        record: Optional[GenerationRequest],
        entry: Optional[CacheEntry],
        progress: int,
    ) -> PipelineEvent:
        if record is not None:
            category, request_id = record.error_category or "unknown", record.request_id
        else:
            category, request_id = entry.error_category or "unknown", entry.request_id
        return error_event(
            category,
            progress=progress,
            recoverable=category in RETRIABLE_CATEGORIES,
            request_id=request_id,
        )

    def _ceiling_event(self, request_id: str, progress: int) -> PipelineEvent:
        GenerationMetrics.stream_ceiling_hits_total().add(1)
        logger.warning(
            "Stream for generation %s reached the %.0fs ceiling at %d%%",
            request_id,
            self._stream_ceiling,
            progress,
        )
        return error_event("timeout", progress=progress, request_id=request_id)

    # ------------------------------------------------------------------
    # Cache helpers (best-effort)
    # ------------------------------------------------------------------

    def _cache_get(self, request_id: str, user_id: str) -> Optional[CacheEntry]:
        try:
            return self._cache.get(request_id, user_id)
        except Exception as e:
            logger.warning("Cache read for %s failed: %s", request_id, e)
            return None

    def _cache_start(self, record: GenerationRequest) -> None:
        try:
            self._cache.start(record.request_id, record.user_id)
        except Exception as e:
            logger.warning("Cache start for %s failed: %s", record.request_id, e)

    def _mirror_terminal(self, record: GenerationRequest, entry: Optional[CacheEntry]) -> None:
        """Copy a terminal ledger state into the cache so local polls stop at the cache."""
        if entry is not None and entry.is_terminal:
            return
        try:
            if record.status == GenerationStatus.completed:
                self._cache.complete(record.request_id, record.user_id, record.result_ref)
            else:
                self._cache.error(
                    record.request_id,
                    record.user_id,
                    user_message_for(record.error_category),
                    record.error_category,
                )
        except Exception as e:
            logger.warning("Cache mirror for %s failed: %s", record.request_id, e)


def _count(resolution: str) -> None:
    GenerationMetrics.generation_streams_total().add(1, {"resolution": resolution})
