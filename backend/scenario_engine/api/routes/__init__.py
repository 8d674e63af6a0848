"""Route exports for the API layer.

Re-exports each router so callers can include every endpoint group with a single import.
"""

from .candidates import router as candidates_router
from .clusters import router as clusters_router
from .debug import router as debug_router
from .scenarios import router as scenarios_router

__all__ = ["candidates_router", "clusters_router", "debug_router", "scenarios_router"]
