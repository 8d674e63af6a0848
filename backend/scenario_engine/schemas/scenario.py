"""Pydantic schemas for scenario lifecycle and promotion payloads.

Classes:
    ScenarioCreateRequest, ScenarioCreatedResponse, ScenarioNoteRequest: Request and acknowledgement shapes.
    ScenarioResource: Flat scenario record with frozen comparison metrics.
    ScenarioClusterResource, ScenarioItemPreview, ScenarioDetailsResponse: Completed scenario drill-down.
    PromotionResponse: Result of promoting a scenario to production.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class ScenarioCreateRequest(BaseModel):
    entity_type: str
    k_value: Optional[int] = None
    similarity_threshold: Optional[float] = None
    requested_by: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=4000)


class ScenarioCreatedResponse(BaseModel):
    scenario_id: UUID
    status: str


class ScenarioNoteRequest(BaseModel):
    note: str = Field(min_length=1, max_length=2000)


class ScenarioResource(BaseModel):
    id: UUID
    entity_type: str
    k_value: int
    similarity_threshold: float
    status: str
    requested_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    requested_by: Optional[str] = None
    notes: Optional[str] = None
    error_message: Optional[str] = None
    total_items: Optional[int] = None
    outlier_count: Optional[int] = None
    outlier_percentage: Optional[float] = None
    production_outlier_percentage: Optional[float] = None
    production_version: Optional[int] = None
    outlier_improvement_percentage: Optional[float] = None
    cluster_count: Optional[int] = None
    silhouette_score: Optional[float] = None
    iterations: Optional[int] = None


class ScenarioItemPreview(BaseModel):
    entity_id: UUID
    title: Optional[str] = None
    similarity: Optional[float] = None


class ScenarioClusterResource(BaseModel):
    cluster_id: UUID
    label: str
    item_count: int
    avg_similarity: Optional[float] = None
    min_similarity: Optional[float] = None
    max_similarity: Optional[float] = None
    is_outlier_bucket: bool = False
    primary_industry: Optional[str] = None
    sample_titles: list[str] = Field(default_factory=list)
    items: list[ScenarioItemPreview] = Field(default_factory=list)


class ScenarioDetailsResponse(BaseModel):
    scenario: ScenarioResource
    clusters: list[ScenarioClusterResource] = Field(default_factory=list)


class PromotionResponse(BaseModel):
    scenario_id: UUID
    entity_type: str
    new_version: int
    previous_version: Optional[int] = None
    clusters_promoted: int
    entities_updated: int
    promoted_at: datetime
