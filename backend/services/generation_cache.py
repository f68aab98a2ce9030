"""In-memory mirror of active and recently finished generations.

A latency optimization for polling only: entries are process-local, lost on
restart, and never authoritative. Every reader must fall back to the ledger.
Terminal states are written here only after the ledger has accepted them.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from backend.services.progress_estimator import ProgressEstimate, estimate_progress

CACHE_IN_PROGRESS = "in_progress"
CACHE_COMPLETE = "complete"
CACHE_ERROR = "error"


@dataclass
class CacheEntry:
    request_id: str
    user_id: str
    status: str
    started_at: float
    updated_at: float
    result_ref: Optional[str] = None
    error: Optional[str] = None
    error_category: Optional[str] = None
    insight_changes: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in (CACHE_COMPLETE, CACHE_ERROR)


class GenerationCache:
    """Thread-safe TTL cache keyed by request id, with an injectable clock."""

    def __init__(self, ttl_seconds: int = 600, clock: Callable[[], float] = time.time):
        self._ttl = ttl_seconds
        self._clock = clock
        self._store: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def start(self, request_id: str, user_id: str) -> CacheEntry:
        """Record that generation started now. Restarting resets the entry."""
        now = self._clock()
        with self._lock:
            self._evict_expired(now)
            entry = CacheEntry(
                request_id=request_id,
                user_id=user_id,
                status=CACHE_IN_PROGRESS,
                started_at=now,
                updated_at=now,
            )
            self._store[request_id] = entry
            return entry

    def get(self, request_id: str, user_id: Optional[str] = None) -> Optional[CacheEntry]:
        """Return the entry, or None if missing, expired, or owned by another user."""
        with self._lock:
            entry = self._store.get(request_id)
            if entry is None:
                return None
            if self._clock() - entry.updated_at > self._ttl:
                del self._store[request_id]
                return None
            if user_id is not None and entry.user_id != user_id:
                return None
            return entry

    def complete(
        self,
        request_id: str,
        user_id: str,
        result_ref: str,
        insight_changes: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        """Mirror a completed generation. An existing error entry is never overwritten."""
        now = self._clock()
        with self._lock:
            entry = self._store.get(request_id)
            if entry is not None and entry.is_terminal:
                return
            if entry is None:
                entry = CacheEntry(
                    request_id=request_id,
                    user_id=user_id,
                    status=CACHE_IN_PROGRESS,
                    started_at=now,
                    updated_at=now,
                )
                self._store[request_id] = entry
            entry.status = CACHE_COMPLETE
            entry.result_ref = result_ref
            entry.insight_changes = list(insight_changes or [])
            entry.updated_at = now

    def error(
        self,
        request_id: str,
        user_id: str,
        message: str,
        category: Optional[str] = None,
    ) -> None:
        """Mirror a failed generation. An existing complete entry is never overwritten."""
        now = self._clock()
        with self._lock:
            entry = self._store.get(request_id)
            if entry is not None and entry.is_terminal:
                return
            if entry is None:
                entry = CacheEntry(
                    request_id=request_id,
                    user_id=user_id,
                    status=CACHE_IN_PROGRESS,
                    started_at=now,
                    updated_at=now,
                )
                self._store[request_id] = entry
            entry.status = CACHE_ERROR
            entry.error = message
            entry.error_category = category
            entry.updated_at = now

    def estimate_progress(self, request_id: str) -> Optional[ProgressEstimate]:
        """Time-based estimate for an in-progress entry, or None if absent or terminal."""
        entry = self.get(request_id)
        if entry is None or entry.is_terminal:
            return None
        return estimate_progress(self._clock() - entry.started_at)

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def _evict_expired(self, now: float) -> None:
        """Remove expired entries. Must be called with lock held."""
        expired = [k for k, v in self._store.items() if now - v.updated_at > self._ttl]
        for k in expired:
            del self._store[k]
