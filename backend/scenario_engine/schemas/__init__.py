"""Convenience exports for API schemas.

Re-exports the pydantic models used across the backend so consumers can import from one module.
"""

from .production import (
    CandidateResource,
    ClusterDebugResponse,
    ClusterLabelRequest,
    ClusterMember,
    ClusterResource,
    ClusterVersionResource,
    ClusteringConfigResponse,
    OrphanedEntityResource,
    OrphanedSourceResource,
    OrphanReportResponse,
    PipelineStatsResponse,
)
from .scenario import (
    PromotionResponse,
    ScenarioClusterResource,
    ScenarioCreatedResponse,
    ScenarioCreateRequest,
    ScenarioDetailsResponse,
    ScenarioItemPreview,
    ScenarioNoteRequest,
    ScenarioResource,
)

__all__ = [
    "CandidateResource",
    "ClusterDebugResponse",
    "ClusterLabelRequest",
    "ClusterMember",
    "ClusterResource",
    "ClusterVersionResource",
    "ClusteringConfigResponse",
    "OrphanedEntityResource",
    "OrphanedSourceResource",
    "OrphanReportResponse",
    "PipelineStatsResponse",
    "PromotionResponse",
    "ScenarioClusterResource",
    "ScenarioCreatedResponse",
    "ScenarioCreateRequest",
    "ScenarioDetailsResponse",
    "ScenarioItemPreview",
    "ScenarioNoteRequest",
    "ScenarioResource",
]
