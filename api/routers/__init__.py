"""
Router package for the Generation API.

This package contains all API routers organized by domain:
- health: Health check endpoints
- generations: SSE streaming and polling for plan generation
- internal_generations: Worker hand-off consumer (X-Internal-Key)
"""

from api.routers.health import router as health_router
from api.routers.generations import router as generations_router
from api.routers.internal_generations import router as internal_generations_router

__all__ = [
    "health_router",
    "generations_router",
    "internal_generations_router",
]
