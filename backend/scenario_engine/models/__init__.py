"""Convenience exports for ORM models.

Surface frequently used SQLModel classes so calling code can import them from a single module.
"""

from .entity import Entity, EntityType, ProblemSolutionLink
from .scenario import ClusteringScenario, ScenarioAssignment, ScenarioCluster, ScenarioStatus
from .production import ClusterCentroid, ClusteringConfig, ClusterVersion
from .work import ClusteringWorkCentroid, ClusteringWorkItem

__all__ = [
    "Entity",
    "EntityType",
    "ProblemSolutionLink",
    "ClusteringScenario",
    "ScenarioAssignment",
    "ScenarioCluster",
    "ScenarioStatus",
    "ClusterCentroid",
    "ClusteringConfig",
    "ClusterVersion",
    "ClusteringWorkCentroid",
    "ClusteringWorkItem",
]
