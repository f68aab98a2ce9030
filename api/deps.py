"""
FastAPI Dependency Providers for the Generation API.

This module provides FastAPI dependency injection functions that return
interface types (Protocols) rather than concrete implementations.

Architecture:
- Settings and the async Supabase client are cached per-process
- The generation cache and orchestrator are process singletons: the
  orchestrator owns the dedup lock and the detached work tasks
- Without Supabase credentials the in-memory stores are used (single
  instance only)
"""

import asyncio
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException
from supabase import AsyncClient, create_async_client

from application.ports.generation_ledger import GenerationLedger
from application.ports.generation_metrics_store import GenerationMetricsStore
from application.ports.generation_publisher import GenerationPublisher
from application.ports.plan_generator import ProfileRepository
from backend.auth import get_current_user as _get_current_user
from backend.services.generation_cache import GenerationCache
from backend.services.generation_orchestrator import GenerationOrchestrator
from backend.services.generation_publisher import HttpGenerationPublisher
from backend.services.generation_runner import GenerationRunner
from backend.services.generation_status_service import GenerationStatusService
from backend.services.generation_worker import GenerationWorker
from backend.services.plan_generator_client import HttpPlanGenerator
from backend.settings import Settings, get_settings as _get_settings
from infrastructure.db.async_generation_ledger_repository import AsyncGenerationLedgerRepository
from infrastructure.db.async_generation_metrics_repository import AsyncGenerationMetricsRepository
from infrastructure.db.async_profile_repository import AsyncSupabaseProfileRepository
from infrastructure.db.in_memory_stores import (
    InMemoryGenerationLedger,
    InMemoryGenerationMetrics,
    InMemoryProfileRepository,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Settings Provider
# =============================================================================


def get_settings() -> Settings:
    """
    Get application settings.

    Returns cached Settings instance from backend.settings.
    Use this as a FastAPI dependency for settings access.
    """
    return _get_settings()


# =============================================================================
# Async Supabase Client Provider
# =============================================================================

# Async singleton state (lru_cache doesn't work with async functions)
_async_supabase_client: Optional[AsyncClient] = None
_async_supabase_lock = asyncio.Lock()


async def get_supabase_async_client() -> Optional[AsyncClient]:
    """
    Get async Supabase client instance (singleton).

    Returns None if credentials are not configured. Uses asyncio.Lock so only
    one client is created under concurrent access.
    """
    global _async_supabase_client

    if _async_supabase_client is not None:
        return _async_supabase_client

    async with _async_supabase_lock:
        # Another coroutine may have initialized while we waited
        if _async_supabase_client is not None:
            return _async_supabase_client

        settings = _get_settings()
        if not settings.supabase_url or not settings.supabase_key:
            return None

        _async_supabase_client = await create_async_client(
            settings.supabase_url, settings.supabase_key
        )
        return _async_supabase_client


# =============================================================================
# Authentication Providers
# =============================================================================


async def get_current_user(
    authorization: Optional[str] = Header(None),
    x_test_auth: Optional[str] = Header(None, alias="X-Test-Auth"),
    x_test_user_id: Optional[str] = Header(None, alias="X-Test-User-Id"),
) -> str:
    """
    Get the current authenticated user ID.

    Wraps backend.auth.get_current_user for dependency injection.

    Raises:
        HTTPException: 401 if authentication fails
    """
    return await _get_current_user(
        authorization=authorization,
        x_test_auth=x_test_auth,
        x_test_user_id=x_test_user_id,
    )


def verify_internal_key(
    x_internal_key: str = Header(..., alias="X-Internal-Key"),
    settings: Settings = Depends(get_settings),
) -> None:
    """Verify the shared key on service-to-service calls."""
    if not settings.internal_api_key:
        raise HTTPException(status_code=503, detail="Internal API key not configured")
    if x_internal_key != settings.internal_api_key:
        raise HTTPException(status_code=403, detail="Invalid internal API key")


# =============================================================================
# Process Singletons
# =============================================================================


@lru_cache
def get_generation_cache() -> GenerationCache:
    """Process-wide generation cache."""
    return GenerationCache(ttl_seconds=_get_settings().generation_cache_ttl_seconds)


@lru_cache
def _in_memory_ledger() -> InMemoryGenerationLedger:
    logger.warning("Supabase not configured; generation ledger is in-memory (single instance only)")
    return InMemoryGenerationLedger()


@lru_cache
def _in_memory_metrics() -> InMemoryGenerationMetrics:
    return InMemoryGenerationMetrics()


@lru_cache
def _in_memory_profiles() -> InMemoryProfileRepository:
    return InMemoryProfileRepository()


# =============================================================================
# Repository Providers
# =============================================================================


async def get_generation_ledger(
    client: Optional[AsyncClient] = Depends(get_supabase_async_client),
) -> GenerationLedger:
    """Supabase ledger, or the in-memory one without credentials."""
    if client is None:
        return _in_memory_ledger()
    return AsyncGenerationLedgerRepository(client)


async def get_generation_metrics_store(
    client: Optional[AsyncClient] = Depends(get_supabase_async_client),
) -> GenerationMetricsStore:
    """Get generation metrics store instance."""
    if client is None:
        return _in_memory_metrics()
    return AsyncGenerationMetricsRepository(client)


async def get_profile_repository(
    client: Optional[AsyncClient] = Depends(get_supabase_async_client),
) -> ProfileRepository:
    """Get profile repository instance."""
    if client is None:
        return _in_memory_profiles()
    return AsyncSupabaseProfileRepository(client)


def get_generation_publisher(
    settings: Settings = Depends(get_settings),
) -> Optional[GenerationPublisher]:
    """Worker hand-off publisher, or None to run generations inline."""
    if not settings.generation_worker_url:
        return None
    return HttpGenerationPublisher(
        settings.generation_worker_url,
        internal_api_key=settings.internal_api_key,
    )


# =============================================================================
# Generation Services
# =============================================================================


@dataclass
class GenerationComponents:
    runner: GenerationRunner
    orchestrator: GenerationOrchestrator
    worker: GenerationWorker


_generation_components: Optional[GenerationComponents] = None
_generation_components_lock = asyncio.Lock()


def build_generation_components(
    settings: Settings,
    ledger: GenerationLedger,
    metrics: GenerationMetricsStore,
    profiles: ProfileRepository,
    publisher: Optional[GenerationPublisher],
    cache: GenerationCache,
) -> GenerationComponents:
    """Wire the runner, orchestrator and worker from their collaborators."""
    generator = HttpPlanGenerator(
        settings.plan_generator_url,
        auth_token=f"Bearer {settings.internal_api_key}" if settings.internal_api_key else None,
        timeout=settings.generation_timeout_seconds,
    )
    runner = GenerationRunner(
        ledger,
        cache,
        metrics,
        profiles,
        generator,
        generation_timeout=settings.generation_timeout_seconds,
        fallback_estimate_ms=settings.generation_fallback_estimate_ms,
        tick_interval=settings.generation_tick_interval_seconds,
        simulated_start=settings.generation_simulated_start_percent,
        simulated_end=settings.generation_simulated_end_percent,
    )
    orchestrator = GenerationOrchestrator(
        ledger,
        cache,
        runner,
        publisher,
        retention_seconds=settings.generation_retention_seconds,
        poll_interval=settings.generation_poll_interval_seconds,
        stream_ceiling=settings.generation_stream_ceiling_seconds,
    )
    return GenerationComponents(
        runner=runner,
        orchestrator=orchestrator,
        worker=GenerationWorker(ledger, runner),
    )


async def get_generation_components(
    settings: Settings = Depends(get_settings),
    ledger: GenerationLedger = Depends(get_generation_ledger),
    metrics: GenerationMetricsStore = Depends(get_generation_metrics_store),
    profiles: ProfileRepository = Depends(get_profile_repository),
    publisher: Optional[GenerationPublisher] = Depends(get_generation_publisher),
    cache: GenerationCache = Depends(get_generation_cache),
) -> GenerationComponents:
    """Build the generation services once per process."""
    global _generation_components

    if _generation_components is not None:
        return _generation_components

    async with _generation_components_lock:
        if _generation_components is None:
            _generation_components = build_generation_components(
                settings, ledger, metrics, profiles, publisher, cache
            )
        return _generation_components


def peek_generation_components() -> Optional[GenerationComponents]:
    """The built components, if any request has needed them yet (shutdown)."""
    return _generation_components


async def get_generation_orchestrator(
    components: GenerationComponents = Depends(get_generation_components),
) -> GenerationOrchestrator:
    """Get the process-wide generation orchestrator."""
    return components.orchestrator


async def get_generation_worker(
    components: GenerationComponents = Depends(get_generation_components),
) -> GenerationWorker:
    """Get the worker that consumes hand-off envelopes."""
    return components.worker


async def get_generation_runner(
    components: GenerationComponents = Depends(get_generation_components),
) -> GenerationRunner:
    """Get the generation runner (estimates, execution)."""
    return components.runner


def get_generation_status_service(
    ledger: GenerationLedger = Depends(get_generation_ledger),
    cache: GenerationCache = Depends(get_generation_cache),
    settings: Settings = Depends(get_settings),
) -> GenerationStatusService:
    """Get the polling status service."""
    return GenerationStatusService(
        ledger, cache, retention_seconds=settings.generation_retention_seconds
    )
