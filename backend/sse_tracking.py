"""Process-wide count of open SSE connections, used for graceful shutdown."""

import threading

from backend.observability import GenerationMetrics

_sse_connection_count = 0
_sse_lock = threading.Lock()


def sse_connect() -> int:
    """Increment SSE connection count. Returns new count."""
    global _sse_connection_count
    with _sse_lock:
        _sse_connection_count += 1
        GenerationMetrics.active_sse_connections().add(1)
        return _sse_connection_count


def sse_disconnect() -> int:
    """Decrement SSE connection count. Returns new count."""
    global _sse_connection_count
    with _sse_lock:
        _sse_connection_count = max(0, _sse_connection_count - 1)
        GenerationMetrics.active_sse_connections().add(-1)
        return _sse_connection_count


def get_sse_connection_count() -> int:
    """Get current SSE connection count."""
    return _sse_connection_count
