"""Scenario registry and background run orchestration.

Classes:
    ClusteringService: Creates, lists, deletes, and annotates scenarios and runs them through a scoped workspace.
    ScenarioDetails: A scenario together with its clusters and a bounded preview of member items.

Functions:
    validate_scenario_parameters(entity_type, k_value, similarity_threshold): Reject bad parameters up front.
    append_note_text(existing, note): Append a line to a scenario's audit trail.
    run_scenario_job(session_factory, scenario_id): Background task entry point with its own session.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import delete, select, update

from scenario_engine.core.config import Settings, get_settings
from scenario_engine.core.errors import (
    ClusteringError,
    NoEmbeddingsError,
    ScenarioNotFoundError,
    ValidationError,
)
from scenario_engine.models import (
    ClusteringScenario,
    Entity,
    EntityType,
    ScenarioAssignment,
    ScenarioCluster,
    ScenarioStatus,
)
from scenario_engine.services.clustering import ClusterResult, cluster_with_retry
from scenario_engine.services.metrics import (
    compute_silhouette,
    improvement,
    outlier_percentage,
    production_snapshot,
    summarise_clusters,
)
from scenario_engine.services.workspace import ScenarioWorkspace
from scenario_engine.utils.vectors import encode_vector, utcnow

_LOGGER = logging.getLogger(__name__)

OUTLIER_BUCKET_LABEL = "Outliers"


@dataclass(slots=True)
class ScenarioItemPreview:
    entity_id: UUID
    title: Optional[str]
    similarity: Optional[float]


@dataclass(slots=True)
class ScenarioClusterDetails:
    cluster: ScenarioCluster
    items: list[ScenarioItemPreview] = field(default_factory=list)


@dataclass(slots=True)
class ScenarioDetails:
    scenario: ClusteringScenario
    clusters: list[ScenarioClusterDetails] = field(default_factory=list)


def validate_scenario_parameters(
    entity_type: str,
    k_value: int,
    similarity_threshold: float,
    *,
    max_k_value: Optional[int] = None,
) -> None:
    if entity_type not in EntityType.ALL:
        raise ValidationError(f"entity_type must be one of {sorted(EntityType.ALL)}")
    if k_value is None or int(k_value) < 1:
        raise ValidationError("k_value must be at least 1")
    if max_k_value is not None and int(k_value) > max_k_value:
        raise ValidationError(f"k_value must be at most {max_k_value}")
    if similarity_threshold is None or not (0.0 < float(similarity_threshold) <= 1.0):
        raise ValidationError("similarity_threshold must be greater than 0 and at most 1")


def append_note_text(existing: Optional[str], note: str) -> str:
    note = note.strip()
    if not existing:
        return note
    return f"{existing.rstrip()}\n{note}"


def cluster_display_label(cluster: ScenarioCluster) -> str:
    if cluster.label:
        return cluster.label
    if cluster.is_outlier_bucket:
        return OUTLIER_BUCKET_LABEL
    if cluster.sample_titles:
        return cluster.sample_titles[0]
    return f"Cluster {str(cluster.cluster_id)[:8]}"


class ClusteringService:
    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    async def create_scenario(
        self,
        session,
        *,
        entity_type: str,
        k_value: Optional[int] = None,
        similarity_threshold: Optional[float] = None,
        requested_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ClusteringScenario:
        k = self._settings.default_k_value if k_value is None else k_value
        threshold = (
            self._settings.default_similarity_threshold
            if similarity_threshold is None
            else similarity_threshold
        )
        validate_scenario_parameters(entity_type, k, threshold, max_k_value=self._settings.max_k_value)

        scenario = ClusteringScenario(
            entity_type=entity_type,
            k_value=int(k),
            similarity_threshold=float(threshold),
            status=ScenarioStatus.PENDING,
            requested_by=requested_by,
            notes=notes.strip() if notes else None,
        )
        session.add(scenario)
        await session.commit()
        await session.refresh(scenario)
        _LOGGER.info(
            "Queued %s scenario %s (k=%d, threshold=%.2f)",
            scenario.entity_type,
            scenario.id,
            scenario.k_value,
            scenario.similarity_threshold,
        )
        return scenario

    async def get_scenario(self, session, scenario_id: UUID) -> ClusteringScenario:
        scenario = await session.get(ClusteringScenario, scenario_id)
        if scenario is None:
            raise ScenarioNotFoundError(scenario_id)
        return scenario

    async def get_scenario_details(self, session, scenario_id: UUID) -> ScenarioDetails:
        scenario = await self.get_scenario(session, scenario_id)
        await session.refresh(scenario)
        details = ScenarioDetails(scenario=scenario)
        if scenario.status != ScenarioStatus.COMPLETED:
            return details

        clusters = (
            await session.exec(
                select(ScenarioCluster)
                .where(ScenarioCluster.scenario_id == scenario_id)
                .order_by(ScenarioCluster.is_outlier_bucket, ScenarioCluster.item_count.desc())
            )
        ).scalars().all()

        limit = self._settings.scenario_item_preview_limit
        for cluster in clusters:
            rows = (
                await session.exec(
                    select(ScenarioAssignment.entity_id, Entity.title, ScenarioAssignment.similarity)
                    .outerjoin(Entity, Entity.id == ScenarioAssignment.entity_id)
                    .where(ScenarioAssignment.scenario_id == scenario_id)
                    .where(ScenarioAssignment.cluster_id == cluster.cluster_id)
                    .order_by(ScenarioAssignment.similarity.desc())
                    .limit(limit)
                )
            ).all()
            details.clusters.append(
                ScenarioClusterDetails(
                    cluster=cluster,
                    items=[
                        ScenarioItemPreview(entity_id=entity_id, title=title, similarity=similarity)
                        for entity_id, title, similarity in rows
                    ],
                )
            )
        return details

    async def list_scenarios(
        self,
        session,
        *,
        entity_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Sequence[ClusteringScenario]:
        stmt = select(ClusteringScenario).order_by(ClusteringScenario.requested_at.desc())
        if entity_type:
            stmt = stmt.where(ClusteringScenario.entity_type == entity_type)
        if status:
            stmt = stmt.where(ClusteringScenario.status == status)
        stmt = stmt.limit(limit or self._settings.scenario_list_limit)
        return (await session.exec(stmt)).scalars().all()

    async def delete_scenario(self, session, scenario_id: UUID) -> None:
        scenario = await self.get_scenario(session, scenario_id)
        status = scenario.status
        await session.execute(delete(ScenarioAssignment).where(ScenarioAssignment.scenario_id == scenario_id))
        await session.execute(delete(ScenarioCluster).where(ScenarioCluster.scenario_id == scenario_id))
        await session.delete(scenario)
        await session.commit()
        if status in ScenarioStatus.TERMINAL:
            _LOGGER.info("Deleted %s scenario %s", status, scenario_id)
        else:
            _LOGGER.info("Cancelled %s scenario %s", status, scenario_id)

    async def append_note(self, session, scenario_id: UUID, note: str) -> ClusteringScenario:
        if not note or not note.strip():
            raise ValidationError("note must not be empty")
        scenario = await self.get_scenario(session, scenario_id)
        scenario.notes = append_note_text(scenario.notes, note)
        session.add(scenario)
        await session.commit()
        await session.refresh(scenario)
        return scenario

    async def run_pending_scenarios(self, session) -> list[UUID]:
        pending = (
            await session.exec(
                select(ClusteringScenario.id)
                .where(ClusteringScenario.status == ScenarioStatus.PENDING)
                .order_by(ClusteringScenario.requested_at)
            )
        ).scalars().all()
        processed: list[UUID] = []
        for scenario_id in pending:
            try:
                finished = await self.run_scenario(session, scenario_id)
            except ScenarioNotFoundError:
                _LOGGER.info("Scenario %s was deleted before it ran", scenario_id)
                continue
            except Exception:
                # The failure is already recorded on the scenario row.
                _LOGGER.exception("Scenario %s failed; continuing with the queue", scenario_id)
                processed.append(scenario_id)
                continue
            if finished is not None:
                processed.append(scenario_id)
        return processed

    async def _claim(self, session, scenario_id: UUID) -> bool:
        now = utcnow()
        result = await session.execute(
            update(ClusteringScenario)
            .where(ClusteringScenario.id == scenario_id)
            .where(ClusteringScenario.status == ScenarioStatus.PENDING)
            .values(status=ScenarioStatus.PROCESSING, started_at=now, updated_at=now)
        )
        await session.commit()
        return bool(result.rowcount)

    async def _scenario_exists(self, session, scenario_id: UUID) -> bool:
        found = (
            await session.exec(select(ClusteringScenario.id).where(ClusteringScenario.id == scenario_id))
        ).scalar_one_or_none()
        return found is not None

    async def run_scenario(self, session, scenario_id: UUID) -> Optional[ClusteringScenario]:
        """Run a pending scenario to a terminal state.

        Returns the scenario row, or None when it was deleted while the run was in
        flight. Clustering errors are recorded on the row; anything else is recorded
        and re-raised unless the row is already gone.
        """

        scenario = await self.get_scenario(session, scenario_id)
        if scenario.status != ScenarioStatus.PENDING:
            _LOGGER.info("Skipping scenario %s in status %s", scenario_id, scenario.status)
            return scenario
        if not await self._claim(session, scenario_id):
            if not await self._scenario_exists(session, scenario_id):
                _LOGGER.info("Scenario %s was deleted before it could be claimed", scenario_id)
                return None
            _LOGGER.info("Scenario %s was claimed by another worker", scenario_id)
            await session.refresh(scenario)
            return scenario
        await session.refresh(scenario)
        _LOGGER.info("Started %s scenario %s", scenario.entity_type, scenario_id)

        try:
            async with ScenarioWorkspace(session) as workspace:
                total_items = await workspace.stage(scenario.entity_type, cutoff=scenario.requested_at)
                if total_items == 0:
                    raise NoEmbeddingsError(scenario.entity_type)

                item_ids, matrix = await workspace.load()
                result = await asyncio.to_thread(
                    cluster_with_retry,
                    matrix,
                    k=scenario.k_value,
                    similarity_threshold=scenario.similarity_threshold,
                    max_iterations=self._settings.clustering_max_iterations,
                    merge_similarity=self._settings.centroid_merge_similarity,
                    seed=self._settings.clustering_seed,
                    attempts=self._settings.clustering_retry_attempts,
                )
                await workspace.record(item_ids, result)

                if not await self._scenario_exists(session, scenario_id):
                    _LOGGER.info("Scenario %s was deleted during its run; discarding results", scenario_id)
                    return None

                await self._persist_results(session, scenario, workspace, matrix, result)
        except ClusteringError as exc:
            if not await self._mark_failed(session, scenario_id, exc):
                return None
        except Exception as exc:
            if not await self._mark_failed(session, scenario_id, exc):
                return None
            raise

        await session.refresh(scenario)
        return scenario

    async def _persist_results(
        self,
        session,
        scenario: ClusteringScenario,
        workspace: ScenarioWorkspace,
        matrix,
        result: ClusterResult,
    ) -> None:
        items = await workspace.results()
        centroids = {centroid.cluster_index: centroid for centroid in await workspace.centroids()}
        summaries = summarise_clusters(items, sample_limit=self._settings.sample_title_limit)
        similarity_by_id = {item.item_id: item.similarity for item in items}

        cluster_rows: list[ScenarioCluster] = []
        assignment_rows: list[ScenarioAssignment] = []
        for summary in summaries:
            cluster_id = uuid4()
            centroid = centroids.get(summary.cluster_index)
            vector = centroid.vector if centroid is not None and not summary.is_outlier_bucket else None
            blob, dim = encode_vector(vector) if vector is not None else (None, None)
            cluster_rows.append(
                ScenarioCluster(
                    scenario_id=scenario.id,
                    cluster_id=cluster_id,
                    item_count=summary.item_count,
                    avg_similarity=summary.avg_similarity,
                    min_similarity=summary.min_similarity,
                    max_similarity=summary.max_similarity,
                    is_outlier_bucket=summary.is_outlier_bucket,
                    label=OUTLIER_BUCKET_LABEL if summary.is_outlier_bucket else None,
                    primary_industry=summary.primary_industry,
                    sample_titles=summary.sample_titles,
                    centroid_dim=dim,
                    centroid_vector=blob,
                )
            )
            for entity_id in summary.member_ids:
                assignment_rows.append(
                    ScenarioAssignment(
                        scenario_id=scenario.id,
                        entity_id=entity_id,
                        cluster_id=cluster_id,
                        similarity=similarity_by_id[entity_id],
                    )
                )

        total_items = len(items)
        outliers = sum(summary.item_count for summary in summaries if summary.is_outlier_bucket)
        snapshot = await production_snapshot(session, scenario.entity_type)
        scenario_pct = outlier_percentage(outliers, total_items)
        production_pct = snapshot.outlier_percentage

        scenario.total_items = total_items
        scenario.outlier_count = outliers
        scenario.outlier_percentage = scenario_pct
        scenario.production_outlier_percentage = production_pct
        scenario.production_version = snapshot.version
        scenario.outlier_improvement_percentage = improvement(production_pct, scenario_pct)
        scenario.cluster_count = sum(1 for summary in summaries if not summary.is_outlier_bucket)
        scenario.silhouette_score = compute_silhouette(
            matrix,
            result.labels,
            sample_size=self._settings.silhouette_sample_size,
            random_state=self._settings.clustering_seed,
        )
        scenario.iterations = result.iterations
        scenario.status = ScenarioStatus.COMPLETED
        scenario.completed_at = utcnow()

        session.add_all(cluster_rows)
        session.add_all(assignment_rows)
        session.add(scenario)
        await session.commit()
        _LOGGER.info(
            "Completed scenario %s: %d clusters, %d/%d outliers (%.1f%% vs production %.1f%%)",
            scenario.id,
            scenario.cluster_count,
            outliers,
            total_items,
            scenario_pct,
            production_pct,
        )

    async def _mark_failed(self, session, scenario_id: UUID, exc: BaseException) -> bool:
        """Record a failure on the scenario row; False when the row is gone."""

        await session.rollback()
        scenario = await session.get(ClusteringScenario, scenario_id, populate_existing=True)
        if scenario is None:
            _LOGGER.info("Scenario %s failed after deletion: %s", scenario_id, exc)
            return False
        scenario.status = ScenarioStatus.FAILED
        scenario.completed_at = utcnow()
        scenario.error_message = str(exc)
        scenario.notes = append_note_text(scenario.notes, f"Failed: {exc}")
        session.add(scenario)
        await session.commit()
        _LOGGER.warning("Scenario %s failed: %s", scenario_id, exc)


async def run_scenario_job(session_factory, scenario_id: UUID) -> None:
    async with session_factory() as session:
        service = ClusteringService()
        try:
            await service.run_scenario(session, scenario_id)
        except ScenarioNotFoundError:
            _LOGGER.info("Scenario %s no longer exists; nothing to run", scenario_id)
        except Exception:
            _LOGGER.exception("Background run for scenario %s failed", scenario_id)
