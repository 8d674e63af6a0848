"""Error taxonomy for clustering scenarios and production promotion.

Validation and precondition errors surface synchronously to the caller.
Run-time failures inside a background run are recorded on the scenario row
instead of being raised into an unrelated request.
"""

from __future__ import annotations

from typing import Any


class ClusteringError(Exception):
    """Base class for every error raised by the scenario engine."""


class ValidationError(ClusteringError, ValueError):
    """Scenario parameters were rejected before any work started."""


class ScenarioNotFoundError(ClusteringError, LookupError):
    def __init__(self, scenario_id: Any) -> None:
        super().__init__(f"Scenario {scenario_id} not found")
        self.scenario_id = scenario_id


class ClusterNotFoundError(ClusteringError, LookupError):
    def __init__(self, cluster_id: Any, version: int | None = None) -> None:
        where = f" at version {version}" if version is not None else ""
        super().__init__(f"Cluster {cluster_id} not found{where}")
        self.cluster_id = cluster_id
        self.version = version


class NoEmbeddingsError(ClusteringError):
    def __init__(self, entity_type: str) -> None:
        super().__init__(f"No {entity_type} entities with embeddings are eligible for clustering")
        self.entity_type = entity_type


class ConvergenceError(ClusteringError):
    def __init__(self, iterations: int, changed: int) -> None:
        super().__init__(
            f"Clustering did not stabilise within {iterations} iterations "
            f"({changed} assignments still changing)"
        )
        self.iterations = iterations
        self.changed = changed


class PromotionPreconditionError(ClusteringError):
    """Only completed scenarios can be promoted; nothing was changed."""


class PromotionError(ClusteringError):
    """Promotion failed part way and the whole unit of work was rolled back."""


class OrphanedClusterInvariantViolation(ClusteringError):
    def __init__(self, report: Any) -> None:
        count = len(getattr(report, "orphaned_entities", []) or [])
        super().__init__(f"{count} entities reference clusters with no centroid at their version")
        self.report = report


__all__ = [
    "ClusteringError",
    "ValidationError",
    "ScenarioNotFoundError",
    "ClusterNotFoundError",
    "NoEmbeddingsError",
    "ConvergenceError",
    "PromotionPreconditionError",
    "PromotionError",
    "OrphanedClusterInvariantViolation",
]
