"""Clustering scenario ORM models.

Classes:
    ScenarioStatus: Enumeration of valid scenario lifecycle states.
    ClusteringScenario: Parameters, lifecycle timestamps, and frozen comparison metrics for one trial run.
    ScenarioCluster: Per-cluster summary produced by a completed scenario.
    ScenarioAssignment: Scenario-scoped entity to cluster mapping, never visible to production reads.

Functions:
    set_updated_at(_, __, target): SQLAlchemy event hook that maintains the `updated_at` timestamp.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Float, Integer, LargeBinary, Text, event
from sqlmodel import Field, SQLModel

from scenario_engine.utils.vectors import utcnow


class ScenarioStatus(str):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = frozenset({COMPLETED, FAILED})


class ClusteringScenario(SQLModel, table=True):
    __tablename__ = "clustering_scenarios"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    entity_type: str = Field(index=True)
    k_value: int
    similarity_threshold: float
    status: str = Field(default=ScenarioStatus.PENDING, index=True)
    requested_at: datetime = Field(default_factory=utcnow, index=True)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)
    requested_by: Optional[str] = None
    notes: Optional[str] = Field(default=None, sa_column=Column(Text))
    error_message: Optional[str] = Field(default=None, sa_column=Column(Text))
    total_items: Optional[int] = Field(default=None, sa_column=Column(Integer))
    outlier_count: Optional[int] = Field(default=None, sa_column=Column(Integer))
    outlier_percentage: Optional[float] = Field(default=None, sa_column=Column(Float))
    production_outlier_percentage: Optional[float] = Field(default=None, sa_column=Column(Float))
    production_version: Optional[int] = Field(default=None, sa_column=Column(Integer))
    outlier_improvement_percentage: Optional[float] = Field(default=None, sa_column=Column(Float))
    cluster_count: Optional[int] = Field(default=None, sa_column=Column(Integer))
    silhouette_score: Optional[float] = Field(default=None, sa_column=Column(Float))
    iterations: Optional[int] = Field(default=None, sa_column=Column(Integer))


@event.listens_for(ClusteringScenario, "before_update", propagate=True)
def set_updated_at(_, __, target):
    target.updated_at = utcnow()


class ScenarioCluster(SQLModel, table=True):
    __tablename__ = "scenario_clusters"

    scenario_id: UUID = Field(foreign_key="clustering_scenarios.id", primary_key=True)
    cluster_id: UUID = Field(default_factory=uuid4, primary_key=True)
    item_count: int = Field(default=0)
    avg_similarity: Optional[float] = None
    min_similarity: Optional[float] = None
    max_similarity: Optional[float] = None
    is_outlier_bucket: bool = Field(default=False)
    label: Optional[str] = None
    primary_industry: Optional[str] = None
    sample_titles: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    centroid_dim: Optional[int] = None
    centroid_vector: Optional[bytes] = Field(default=None, sa_column=Column(LargeBinary))


class ScenarioAssignment(SQLModel, table=True):
    __tablename__ = "scenario_assignments"

    scenario_id: UUID = Field(foreign_key="clustering_scenarios.id", primary_key=True)
    entity_id: UUID = Field(primary_key=True)
    cluster_id: UUID = Field(index=True)
    similarity: Optional[float] = None
