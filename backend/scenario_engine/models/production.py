"""Versioned production clustering models.

Classes:
    ClusterVersion: One generation of production clustering for an entity type.
    ClusterCentroid: Centroid and aggregate metadata for a cluster at a specific version.
    ClusteringConfig: Production parameters and headline metrics per entity type.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import Column, Index, LargeBinary
from sqlmodel import Field, SQLModel

from scenario_engine.utils.vectors import utcnow


class ClusterVersion(SQLModel, table=True):
    """Version row; `is_active` is flipped only by the promotion transaction."""

    __tablename__ = "cluster_versions"
    __table_args__ = (
        Index("ix_cluster_versions_type_active", "entity_type", "is_active"),
    )

    version: int = Field(primary_key=True)
    entity_type: str = Field(index=True)
    is_active: bool = Field(default=False)
    scenario_id: Optional[UUID] = None
    k_value: Optional[int] = None
    similarity_threshold: Optional[float] = None
    created_at: datetime = Field(default_factory=utcnow)
    activated_at: Optional[datetime] = None


class ClusterCentroid(SQLModel, table=True):
    __tablename__ = "cluster_centroids"

    version: int = Field(foreign_key="cluster_versions.version", primary_key=True)
    cluster_id: UUID = Field(primary_key=True, index=True)
    entity_type: str
    label: Optional[str] = None
    primary_industry: Optional[str] = None
    avg_similarity: Optional[float] = None
    item_count: int = Field(default=0)
    is_outlier_bucket: bool = Field(default=False)
    centroid_dim: Optional[int] = None
    centroid_vector: Optional[bytes] = Field(default=None, sa_column=Column(LargeBinary))
    created_at: datetime = Field(default_factory=utcnow)


class ClusteringConfig(SQLModel, table=True):
    __tablename__ = "clustering_config"

    entity_type: str = Field(primary_key=True)
    k_value: int
    similarity_threshold: float
    outlier_percentage: Optional[float] = None
    cluster_count: Optional[int] = None
    avg_cluster_size: Optional[float] = None
    active_version: Optional[int] = None
    last_updated: datetime = Field(default_factory=utcnow)
