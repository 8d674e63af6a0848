"""Versioned production clustering store.

Classes:
    VersionedProductionStore: Owns the active-version pointer and every read of production cluster state.
    ClusterView: A centroid row at some version with its live member count.
    OrphanReport: Entities and solutions whose cluster references resolve to no centroid.
    ClusterDebugReport: Everything known about one cluster id across versions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Sequence
from uuid import UUID

from sqlalchemy import and_, exists, func, select, update

from scenario_engine.core.config import Settings, get_settings
from scenario_engine.core.errors import ClusterNotFoundError, OrphanedClusterInvariantViolation
from scenario_engine.models import (
    ClusterCentroid,
    ClusteringConfig,
    ClusteringScenario,
    ClusterVersion,
    Entity,
    EntityType,
)
from scenario_engine.utils.vectors import utcnow

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ClusterView:
    centroid: ClusterCentroid
    member_count: int


@dataclass(slots=True)
class OrphanedEntity:
    entity_id: UUID
    entity_type: str
    title: Optional[str]
    cluster_id: UUID
    cluster_version: Optional[int]


@dataclass(slots=True)
class OrphanedSource:
    solution_id: UUID
    title: Optional[str]
    source_cluster_id: UUID
    source_cluster_label: Optional[str]


@dataclass(slots=True)
class OrphanReport:
    checked_at: datetime
    orphaned_entities: list[OrphanedEntity] = field(default_factory=list)
    orphaned_sources: list[OrphanedSource] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.orphaned_entities and not self.orphaned_sources


@dataclass(slots=True)
class ClusterDebugReport:
    cluster_id: UUID
    centroids: list[ClusterCentroid]
    member_count: int
    sample_members: list[Entity]
    active_version: Optional[int]
    visible_at_active_version: bool


class VersionedProductionStore:
    """Single owner of `ClusterVersion.is_active`.

    Reads are plain queries. `allocate_version` and `activate` only stage changes
    on the caller's session; the promotion transaction commits them.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    async def active_version(self, session, entity_type: str) -> Optional[ClusterVersion]:
        result = await session.exec(
            select(ClusterVersion)
            .where(ClusterVersion.entity_type == entity_type)
            .where(ClusterVersion.is_active.is_(True))
        )
        return result.scalar_one_or_none()

    async def list_versions(self, session, entity_type: Optional[str] = None) -> Sequence[ClusterVersion]:
        stmt = select(ClusterVersion).order_by(ClusterVersion.version.desc())
        if entity_type:
            stmt = stmt.where(ClusterVersion.entity_type == entity_type)
        return (await session.exec(stmt)).scalars().all()

    async def allocate_version(self, session) -> int:
        current = (await session.exec(select(func.max(ClusterVersion.version)))).scalar_one_or_none()
        return int(current or 0) + 1

    async def activate(self, session, *, entity_type: str, version: int) -> None:
        """Point production for `entity_type` at `version`. Caller commits."""

        now = utcnow()
        await session.execute(
            update(ClusterVersion)
            .where(ClusterVersion.entity_type == entity_type)
            .where(ClusterVersion.version != version)
            .where(ClusterVersion.is_active.is_(True))
            .values(is_active=False)
        )
        await session.execute(
            update(ClusterVersion)
            .where(ClusterVersion.version == version)
            .values(is_active=True, activated_at=now)
        )

    async def get_centroids(self, session, version: int) -> Sequence[ClusterCentroid]:
        stmt = (
            select(ClusterCentroid)
            .where(ClusterCentroid.version == version)
            .order_by(ClusterCentroid.is_outlier_bucket, ClusterCentroid.item_count.desc())
        )
        return (await session.exec(stmt)).scalars().all()

    async def list_clusters(
        self,
        session,
        entity_type: str,
        version: Optional[int] = None,
    ) -> list[ClusterView]:
        if version is None:
            active = await self.active_version(session, entity_type)
            if active is None:
                return []
            version = active.version

        counts_stmt = (
            select(Entity.cluster_id, func.count())
            .where(Entity.cluster_version == version)
            .where(Entity.cluster_id.is_not(None))
            .group_by(Entity.cluster_id)
        )
        counts = {cluster_id: int(count) for cluster_id, count in (await session.exec(counts_stmt)).all()}
        centroids = [
            centroid
            for centroid in await self.get_centroids(session, version)
            if centroid.entity_type == entity_type
        ]
        return [ClusterView(centroid=centroid, member_count=counts.get(centroid.cluster_id, 0)) for centroid in centroids]

    async def cluster_members(
        self,
        session,
        cluster_id: UUID,
        *,
        limit: Optional[int] = None,
    ) -> Sequence[Entity]:
        stmt = (
            select(Entity)
            .where(Entity.cluster_id == cluster_id)
            .order_by(Entity.cluster_similarity.desc(), Entity.title)
        )
        if limit:
            stmt = stmt.limit(limit)
        return (await session.exec(stmt)).scalars().all()

    async def label_cluster(self, session, version: int, cluster_id: UUID, label: str) -> ClusterCentroid:
        """Attach an externally generated label to a centroid and its stamped members."""

        centroid = await session.get(ClusterCentroid, (version, cluster_id))
        if centroid is None:
            raise ClusterNotFoundError(cluster_id, version)
        centroid.label = label
        session.add(centroid)
        await session.execute(
            update(Entity)
            .where(Entity.cluster_version == version)
            .where(Entity.cluster_id == cluster_id)
            .values(cluster_label=label)
        )
        await session.commit()
        await session.refresh(centroid)
        _LOGGER.info("Labelled cluster %s at version %d as %r", cluster_id, version, label)
        return centroid

    async def get_clustering_config(self, session, entity_type: str) -> ClusteringConfig:
        config = await session.get(ClusteringConfig, entity_type)
        if config is not None:
            return config
        return ClusteringConfig(
            entity_type=entity_type,
            k_value=self._settings.default_k_value,
            similarity_threshold=self._settings.default_similarity_threshold,
        )

    async def find_orphans(self, session, entity_type: Optional[str] = None) -> OrphanReport:
        entity_stmt = (
            select(Entity.id, Entity.entity_type, Entity.title, Entity.cluster_id, Entity.cluster_version)
            .outerjoin(
                ClusterCentroid,
                and_(
                    ClusterCentroid.version == Entity.cluster_version,
                    ClusterCentroid.cluster_id == Entity.cluster_id,
                ),
            )
            .where(Entity.cluster_id.is_not(None))
            .where(ClusterCentroid.cluster_id.is_(None))
            .order_by(Entity.entity_type, Entity.cluster_version, Entity.cluster_id)
        )
        if entity_type:
            entity_stmt = entity_stmt.where(Entity.entity_type == entity_type)

        report = OrphanReport(checked_at=utcnow())
        for entity_id, kind, title, cluster_id, version in (await session.exec(entity_stmt)).all():
            report.orphaned_entities.append(
                OrphanedEntity(
                    entity_id=entity_id,
                    entity_type=kind,
                    title=title,
                    cluster_id=cluster_id,
                    cluster_version=version,
                )
            )

        if entity_type in (None, EntityType.SOLUTION):
            has_centroid = exists().where(ClusterCentroid.cluster_id == Entity.source_cluster_id)
            source_stmt = (
                select(Entity.id, Entity.title, Entity.source_cluster_id, Entity.source_cluster_label)
                .where(Entity.entity_type == EntityType.SOLUTION)
                .where(Entity.source_cluster_id.is_not(None))
                .where(~has_centroid)
                .order_by(Entity.title)
            )
            for solution_id, title, source_id, source_label in (await session.exec(source_stmt)).all():
                report.orphaned_sources.append(
                    OrphanedSource(
                        solution_id=solution_id,
                        title=title,
                        source_cluster_id=source_id,
                        source_cluster_label=source_label,
                    )
                )

        if not report.is_clean:
            _LOGGER.warning(
                "Orphan check found %d entities and %d solution sources without centroids",
                len(report.orphaned_entities),
                len(report.orphaned_sources),
            )
        return report

    async def assert_no_orphans(self, session, entity_type: Optional[str] = None) -> OrphanReport:
        report = await self.find_orphans(session, entity_type)
        if report.orphaned_entities:
            raise OrphanedClusterInvariantViolation(report)
        return report

    async def debug_cluster(self, session, cluster_id: UUID, *, sample_size: int = 5) -> ClusterDebugReport:
        centroids = (
            await session.exec(
                select(ClusterCentroid)
                .where(ClusterCentroid.cluster_id == cluster_id)
                .order_by(ClusterCentroid.version.desc())
            )
        ).scalars().all()
        members = await self.cluster_members(session, cluster_id)
        if not centroids and not members:
            raise ClusterNotFoundError(cluster_id)

        entity_type = centroids[0].entity_type if centroids else members[0].entity_type
        active = await self.active_version(session, entity_type)
        active_number = active.version if active is not None else None
        return ClusterDebugReport(
            cluster_id=cluster_id,
            centroids=list(centroids),
            member_count=len(members),
            sample_members=list(members[:sample_size]),
            active_version=active_number,
            visible_at_active_version=any(centroid.version == active_number for centroid in centroids),
        )

    async def pipeline_stats(self, session) -> dict[str, Any]:
        by_type: dict[str, dict[str, Any]] = {}
        for entity_type in sorted(EntityType.ALL):
            total = await self._count(session, Entity.entity_type == entity_type)
            embedded = await self._count(
                session, Entity.entity_type == entity_type, Entity.embedding_vector.is_not(None)
            )
            clustered = await self._count(
                session, Entity.entity_type == entity_type, Entity.cluster_id.is_not(None)
            )
            active = await self.active_version(session, entity_type)
            active_clusters = 0
            if active is not None:
                active_clusters = int(
                    (
                        await session.exec(
                            select(func.count())
                            .select_from(ClusterCentroid)
                            .where(ClusterCentroid.version == active.version)
                            .where(ClusterCentroid.is_outlier_bucket.is_(False))
                        )
                    ).scalar_one()
                )
            by_type[entity_type] = {
                "total": total,
                "with_embeddings": embedded,
                "clustered": clustered,
                "unclustered": total - clustered,
                "active_version": active.version if active is not None else None,
                "active_clusters": active_clusters,
            }

        status_rows = (
            await session.exec(
                select(ClusteringScenario.status, func.count()).group_by(ClusteringScenario.status)
            )
        ).all()
        return {
            "entities": by_type,
            "scenarios": {status: int(count) for status, count in status_rows},
            "versions": int((await session.exec(select(func.count()).select_from(ClusterVersion))).scalar_one()),
        }

    async def _count(self, session, *conditions) -> int:
        stmt = select(func.count()).select_from(Entity)
        for condition in conditions:
            stmt = stmt.where(condition)
        return int((await session.exec(stmt)).scalar_one())
