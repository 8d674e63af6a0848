"""Service layer exports.

Expose the scenario, promotion, production store, and candidate services for easy importing.
"""

from .candidates import CandidateScorer, score_solution
from .production import VersionedProductionStore
from .promotion import PromotionService
from .scenarios import ClusteringService, run_scenario_job

__all__ = [
    "CandidateScorer",
    "ClusteringService",
    "PromotionService",
    "VersionedProductionStore",
    "run_scenario_job",
    "score_solution",
]
