"""Clusterable entity ORM models.

Classes:
    EntityType: Valid entity kinds that can be clustered.
    Entity: A problem or solution with its embedding and production cluster stamp.
    ProblemSolutionLink: Many-to-many mapping between problems and the solutions addressing them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, Index, LargeBinary, Text
from sqlmodel import Field, SQLModel

from scenario_engine.utils.vectors import utcnow


class EntityType(str):
    PROBLEM = "problem"
    SOLUTION = "solution"

    ALL = frozenset({PROBLEM, SOLUTION})


class Entity(SQLModel, table=True):
    """Upstream content item.

    The core reads `embedding_vector` and metadata only. The four `cluster_*`
    columns are production state and are written exclusively by promotion.
    Solution-only attributes feed the candidate scorer.
    """

    __tablename__ = "entities"
    __table_args__ = (
        Index("ix_entities_type_cluster", "entity_type", "cluster_id"),
        Index("ix_entities_version_cluster", "cluster_version", "cluster_id"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    entity_type: str = Field(index=True)
    title: str
    description: Optional[str] = Field(default=None, sa_column=Column(Text))
    industry: Optional[str] = None
    embedding_dim: Optional[int] = None
    embedding_vector: Optional[bytes] = Field(default=None, sa_column=Column(LargeBinary))

    cluster_id: Optional[UUID] = None
    cluster_label: Optional[str] = None
    cluster_similarity: Optional[float] = None
    cluster_version: Optional[int] = None

    status: Optional[str] = None
    overall_viability: Optional[float] = None
    ltv_estimate: Optional[float] = None
    cac_estimate: Optional[float] = None
    is_saas_compatible: bool = Field(default=False)
    has_project: bool = Field(default=False)
    source_cluster_id: Optional[UUID] = None
    source_cluster_label: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)


class ProblemSolutionLink(SQLModel, table=True):
    __tablename__ = "problem_solution_links"

    problem_id: UUID = Field(foreign_key="entities.id", primary_key=True)
    solution_id: UUID = Field(foreign_key="entities.id", primary_key=True, index=True)
