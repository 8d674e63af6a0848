"""API router composition for the backend.

The module assembles individual route groups into a single `api_router` that can be mounted on the app.
"""

from fastapi import APIRouter

from scenario_engine.api.routes import (
    candidates_router,
    clusters_router,
    debug_router,
    scenarios_router,
)

api_router = APIRouter()
api_router.include_router(scenarios_router)
api_router.include_router(clusters_router)
api_router.include_router(debug_router)
api_router.include_router(candidates_router)

__all__ = ["api_router"]
