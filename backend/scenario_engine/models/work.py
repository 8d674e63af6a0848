"""Scratch tables used while a scenario run is in flight.

Rows are keyed by a per-run `session_id` and are purged when the run ends.
"""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from sqlalchemy import Column, LargeBinary
from sqlmodel import Field, SQLModel


class ClusteringWorkItem(SQLModel, table=True):
    __tablename__ = "clustering_work_items"

    session_id: UUID = Field(primary_key=True, index=True)
    item_id: UUID = Field(primary_key=True)
    embedding_dim: int
    embedding_vector: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    assigned_cluster: Optional[int] = None
    similarity: Optional[float] = None


class ClusteringWorkCentroid(SQLModel, table=True):
    __tablename__ = "clustering_work_centroids"

    session_id: UUID = Field(primary_key=True, index=True)
    cluster_index: int = Field(primary_key=True)
    centroid_dim: Optional[int] = None
    centroid_vector: Optional[bytes] = Field(default=None, sa_column=Column(LargeBinary))
    is_outlier_bucket: bool = Field(default=False)
