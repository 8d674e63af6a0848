"""Schemas for production clusters, diagnostics, and candidate ranking."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class ClusteringConfigResponse(BaseModel):
    entity_type: str
    k_value: int
    similarity_threshold: float
    outlier_percentage: Optional[float] = None
    cluster_count: Optional[int] = None
    avg_cluster_size: Optional[float] = None
    active_version: Optional[int] = None
    last_updated: Optional[datetime] = None


class ClusterVersionResource(BaseModel):
    version: int
    entity_type: str
    is_active: bool
    scenario_id: Optional[UUID] = None
    k_value: Optional[int] = None
    similarity_threshold: Optional[float] = None
    created_at: datetime
    activated_at: Optional[datetime] = None


class ClusterResource(BaseModel):
    version: int
    cluster_id: UUID
    entity_type: str
    label: Optional[str] = None
    primary_industry: Optional[str] = None
    avg_similarity: Optional[float] = None
    item_count: int
    member_count: Optional[int] = None
    is_outlier_bucket: bool = False
    created_at: datetime


class ClusterMember(BaseModel):
    id: UUID
    entity_type: str
    title: str
    industry: Optional[str] = None
    cluster_label: Optional[str] = None
    cluster_similarity: Optional[float] = None
    cluster_version: Optional[int] = None


class ClusterLabelRequest(BaseModel):
    label: str = Field(min_length=1, max_length=300)


class OrphanedEntityResource(BaseModel):
    entity_id: UUID
    entity_type: str
    title: Optional[str] = None
    cluster_id: UUID
    cluster_version: Optional[int] = None


class OrphanedSourceResource(BaseModel):
    solution_id: UUID
    title: Optional[str] = None
    source_cluster_id: UUID
    source_cluster_label: Optional[str] = None


class OrphanReportResponse(BaseModel):
    checked_at: datetime
    is_clean: bool
    orphaned_entities: list[OrphanedEntityResource] = Field(default_factory=list)
    orphaned_sources: list[OrphanedSourceResource] = Field(default_factory=list)


class ClusterDebugResponse(BaseModel):
    cluster_id: UUID
    centroids: list[ClusterResource]
    member_count: int
    sample_members: list[ClusterMember]
    active_version: Optional[int] = None
    visible_at_active_version: bool


class PipelineStatsResponse(BaseModel):
    entities: dict[str, dict[str, Any]]
    scenarios: dict[str, int]
    versions: int


class CandidateResource(BaseModel):
    solution_id: UUID
    title: str
    score: float
    viability: float
    ltv_cac: float
    problems: float
    problem_count: int
    source_cluster_id: Optional[UUID] = None
    source_cluster_label: str
