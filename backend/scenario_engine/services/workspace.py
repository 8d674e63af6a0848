"""Session-scoped scratch space for a single scenario run.

Classes:
    ScenarioWorkspace: Async context manager that stages embeddings into the work tables under a fresh
        `session_id` and always purges them on exit, whether the run succeeded or not.
    WorkItemResult: Provisional assignment for one staged item joined with its display metadata.
    WorkCentroid: Provisional centroid row read back from the work tables.

Functions:
    purge_workspace(session, session_id): Delete every scratch row for a session and commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence
from uuid import UUID, uuid4

import numpy as np
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from scenario_engine.core.errors import ClusteringError
from scenario_engine.models import ClusteringWorkCentroid, ClusteringWorkItem, Entity
from scenario_engine.services.clustering import OUTLIER_LABEL, ClusterResult
from scenario_engine.utils.vectors import decode_vector, encode_vector

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkItemResult:
    item_id: UUID
    cluster_index: int
    similarity: float
    title: Optional[str]
    industry: Optional[str]


@dataclass(slots=True)
class WorkCentroid:
    cluster_index: int
    vector: Optional[np.ndarray]
    is_outlier_bucket: bool


async def purge_workspace(session, session_id: UUID) -> int:
    items = await session.execute(
        delete(ClusteringWorkItem).where(ClusteringWorkItem.session_id == session_id)
    )
    await session.execute(
        delete(ClusteringWorkCentroid).where(ClusteringWorkCentroid.session_id == session_id)
    )
    await session.commit()
    return int(items.rowcount or 0)


class ScenarioWorkspace:
    """Scratch rows owned exclusively by one run.

    Production tables are only read while staging; everything the algorithm
    writes goes under `session_id` until the caller turns it into scenario rows.
    """

    def __init__(self, session, *, session_id: UUID | None = None) -> None:
        self._session = session
        self.session_id = session_id or uuid4()
        self.staged = 0

    async def __aenter__(self) -> "ScenarioWorkspace":
        _LOGGER.debug("Opened clustering workspace %s", self.session_id)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            await self._session.rollback()
        try:
            removed = await purge_workspace(self._session, self.session_id)
            _LOGGER.debug("Purged %d work items for workspace %s", removed, self.session_id)
        except SQLAlchemyError:
            await self._session.rollback()
            _LOGGER.warning("Failed to purge clustering workspace %s", self.session_id, exc_info=True)
        return False

    async def stage(self, entity_type: str, *, cutoff: datetime | None = None) -> int:
        """Copy eligible embeddings into the work table and return how many were staged."""

        stmt = (
            select(Entity.id, Entity.embedding_vector, Entity.embedding_dim)
            .where(Entity.entity_type == entity_type)
            .where(Entity.embedding_vector.is_not(None))
            .order_by(Entity.created_at, Entity.id)
        )
        if cutoff is not None:
            stmt = stmt.where(Entity.created_at <= cutoff)
        rows = (await self._session.exec(stmt)).all()

        items: list[ClusteringWorkItem] = []
        for entity_id, blob, dim in rows:
            vector = decode_vector(blob, dim)
            if vector is None or vector.size == 0:
                continue
            encoded, size = encode_vector(vector)
            items.append(
                ClusteringWorkItem(
                    session_id=self.session_id,
                    item_id=entity_id,
                    embedding_dim=size,
                    embedding_vector=encoded,
                )
            )
        self._session.add_all(items)
        await self._session.commit()
        self.staged = len(items)
        _LOGGER.info(
            "Staged %d %s embeddings into workspace %s", self.staged, entity_type, self.session_id
        )
        return self.staged

    async def load(self) -> tuple[list[UUID], np.ndarray]:
        rows = (
            await self._session.exec(
                select(ClusteringWorkItem)
                .where(ClusteringWorkItem.session_id == self.session_id)
                .order_by(ClusteringWorkItem.item_id)
            )
        ).scalars().all()
        if not rows:
            return [], np.zeros((0, 0), dtype=np.float32)

        dims = {row.embedding_dim for row in rows}
        if len(dims) != 1:
            raise ClusteringError(f"Mixed embedding dimensions in workspace: {sorted(dims)}")
        ids = [row.item_id for row in rows]
        matrix = np.vstack([decode_vector(row.embedding_vector, row.embedding_dim) for row in rows])
        return ids, matrix

    async def record(self, item_ids: Sequence[UUID], result: ClusterResult) -> None:
        """Write provisional assignments and centroids for the staged items."""

        rows = (
            await self._session.exec(
                select(ClusteringWorkItem).where(ClusteringWorkItem.session_id == self.session_id)
            )
        ).scalars().all()
        by_id = {row.item_id: row for row in rows}
        for item_id, label, similarity in zip(item_ids, result.labels, result.similarities):
            row = by_id[item_id]
            row.assigned_cluster = int(label)
            row.similarity = float(similarity)
            self._session.add(row)

        for index in range(result.n_clusters):
            blob, dim = encode_vector(result.centroids[index])
            self._session.add(
                ClusteringWorkCentroid(
                    session_id=self.session_id,
                    cluster_index=index,
                    centroid_dim=dim,
                    centroid_vector=blob,
                )
            )
        if result.outlier_count:
            self._session.add(
                ClusteringWorkCentroid(
                    session_id=self.session_id,
                    cluster_index=OUTLIER_LABEL,
                    is_outlier_bucket=True,
                )
            )
        await self._session.commit()

    async def results(self) -> list[WorkItemResult]:
        stmt = (
            select(
                ClusteringWorkItem.item_id,
                ClusteringWorkItem.assigned_cluster,
                ClusteringWorkItem.similarity,
                Entity.title,
                Entity.industry,
            )
            .outerjoin(Entity, Entity.id == ClusteringWorkItem.item_id)
            .where(ClusteringWorkItem.session_id == self.session_id)
            .order_by(ClusteringWorkItem.item_id)
        )
        rows = (await self._session.exec(stmt)).all()
        return [
            WorkItemResult(
                item_id=item_id,
                cluster_index=OUTLIER_LABEL if cluster is None else int(cluster),
                similarity=float(similarity or 0.0),
                title=title,
                industry=industry,
            )
            for item_id, cluster, similarity, title, industry in rows
        ]

    async def centroids(self) -> list[WorkCentroid]:
        rows = (
            await self._session.exec(
                select(ClusteringWorkCentroid)
                .where(ClusteringWorkCentroid.session_id == self.session_id)
                .order_by(ClusteringWorkCentroid.cluster_index)
            )
        ).scalars().all()
        return [
            WorkCentroid(
                cluster_index=row.cluster_index,
                vector=decode_vector(row.centroid_vector, row.centroid_dim),
                is_outlier_bucket=row.is_outlier_bucket,
            )
            for row in rows
        ]
