"""Promotion of a completed scenario into versioned production state.

Classes:
    PromotionResult: Outcome of a committed promotion.
    PromotionService: Copies scenario clusters and assignments into a new production version in one transaction.

`_PROMOTION_LOCK` serialises promotions within one process only. Across worker
processes, SQLite's single writer lock orders the transactions, and the primary
key on `cluster_versions.version` rejects a second promotion that allocated the
same number (it rolls back as a PromotionError). A server database deployment
running several workers needs its own lock around `promote`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select

from scenario_engine.core.errors import (
    PromotionError,
    PromotionPreconditionError,
    ScenarioNotFoundError,
)
from scenario_engine.models import (
    ClusterCentroid,
    ClusteringConfig,
    ClusteringScenario,
    ClusterVersion,
    Entity,
    ScenarioAssignment,
    ScenarioCluster,
    ScenarioStatus,
)
from scenario_engine.services.production import VersionedProductionStore
from scenario_engine.services.scenarios import append_note_text, cluster_display_label
from scenario_engine.utils.vectors import utcnow

_LOGGER = logging.getLogger(__name__)

_PROMOTION_LOCK = asyncio.Lock()
_ENTITY_BATCH = 500


@dataclass(slots=True)
class PromotionResult:
    scenario_id: UUID
    entity_type: str
    new_version: int
    previous_version: Optional[int]
    clusters_promoted: int
    entities_updated: int
    promoted_at: datetime


class PromotionService:
    def __init__(self, store: VersionedProductionStore | None = None) -> None:
        self._store = store or VersionedProductionStore()

    async def promote(self, session, scenario_id: UUID) -> PromotionResult:
        async with _PROMOTION_LOCK:
            scenario = await session.get(ClusteringScenario, scenario_id)
            if scenario is None:
                raise ScenarioNotFoundError(scenario_id)
            await session.refresh(scenario)
            if scenario.status != ScenarioStatus.COMPLETED:
                raise PromotionPreconditionError(
                    f"Scenario {scenario_id} is {scenario.status}; only completed scenarios can be promoted"
                )

            try:
                result = await self._apply(session, scenario)
                await session.commit()
            except Exception as exc:
                await session.rollback()
                _LOGGER.warning("Promotion of scenario %s rolled back", scenario_id, exc_info=True)
                raise PromotionError(f"Promotion of scenario {scenario_id} rolled back: {exc}") from exc

        _LOGGER.info(
            "Promoted scenario %s to %s version %d (%d clusters, %d entities; previous %s)",
            scenario_id,
            result.entity_type,
            result.new_version,
            result.clusters_promoted,
            result.entities_updated,
            result.previous_version,
        )
        return result

    async def _apply(self, session, scenario: ClusteringScenario) -> PromotionResult:
        now = utcnow()
        previous = await self._store.active_version(session, scenario.entity_type)
        previous_number = previous.version if previous is not None else None
        version = await self._store.allocate_version(session)

        session.add(
            ClusterVersion(
                version=version,
                entity_type=scenario.entity_type,
                is_active=False,
                scenario_id=scenario.id,
                k_value=scenario.k_value,
                similarity_threshold=scenario.similarity_threshold,
                created_at=now,
            )
        )
        await session.flush()

        clusters = await self._copy_centroids(session, scenario, version, now)
        labels = {cluster.cluster_id: cluster_display_label(cluster) for cluster in clusters}
        updated = await self._stamp_entities(session, scenario.id, version, labels)

        await self._store.activate(session, entity_type=scenario.entity_type, version=version)
        await self._upsert_config(session, scenario, clusters, version, now)

        scenario.notes = append_note_text(
            scenario.notes, f"Applied to production at {now:%Y-%m-%dT%H:%M:%SZ} (version {version})"
        )
        session.add(scenario)
        await session.flush()

        return PromotionResult(
            scenario_id=scenario.id,
            entity_type=scenario.entity_type,
            new_version=version,
            previous_version=previous_number,
            clusters_promoted=len(clusters),
            entities_updated=updated,
            promoted_at=now,
        )

    async def _copy_centroids(
        self,
        session,
        scenario: ClusteringScenario,
        version: int,
        now: datetime,
    ) -> list[ScenarioCluster]:
        clusters = (
            await session.exec(select(ScenarioCluster).where(ScenarioCluster.scenario_id == scenario.id))
        ).scalars().all()
        for cluster in clusters:
            session.add(
                ClusterCentroid(
                    version=version,
                    cluster_id=cluster.cluster_id,
                    entity_type=scenario.entity_type,
                    label=cluster_display_label(cluster),
                    primary_industry=cluster.primary_industry,
                    avg_similarity=cluster.avg_similarity,
                    item_count=cluster.item_count,
                    is_outlier_bucket=cluster.is_outlier_bucket,
                    centroid_dim=cluster.centroid_dim,
                    centroid_vector=cluster.centroid_vector,
                    created_at=now,
                )
            )
        await session.flush()
        return list(clusters)

    async def _stamp_entities(
        self,
        session,
        scenario_id: UUID,
        version: int,
        labels: dict[UUID, str],
    ) -> int:
        assignments = (
            await session.exec(select(ScenarioAssignment).where(ScenarioAssignment.scenario_id == scenario_id))
        ).scalars().all()
        by_entity = {assignment.entity_id: assignment for assignment in assignments}
        entity_ids = list(by_entity)

        updated = 0
        for start in range(0, len(entity_ids), _ENTITY_BATCH):
            batch = entity_ids[start : start + _ENTITY_BATCH]
            entities = (await session.exec(select(Entity).where(Entity.id.in_(batch)))).scalars().all()
            for entity in entities:
                assignment = by_entity[entity.id]
                entity.cluster_id = assignment.cluster_id
                entity.cluster_label = labels.get(assignment.cluster_id)
                entity.cluster_similarity = assignment.similarity
                entity.cluster_version = version
                session.add(entity)
                updated += 1
            await session.flush()
        return updated

    async def _upsert_config(
        self,
        session,
        scenario: ClusteringScenario,
        clusters: list[ScenarioCluster],
        version: int,
        now: datetime,
    ) -> None:
        real = [cluster for cluster in clusters if not cluster.is_outlier_bucket]
        config = await session.get(ClusteringConfig, scenario.entity_type)
        if config is None:
            config = ClusteringConfig(
                entity_type=scenario.entity_type,
                k_value=scenario.k_value,
                similarity_threshold=scenario.similarity_threshold,
            )
        config.k_value = scenario.k_value
        config.similarity_threshold = scenario.similarity_threshold
        config.outlier_percentage = scenario.outlier_percentage
        config.cluster_count = len(real)
        config.avg_cluster_size = (
            round(sum(cluster.item_count for cluster in real) / len(real), 1) if real else 0.0
        )
        config.active_version = version
        config.last_updated = now
        session.add(config)
        await session.flush()
