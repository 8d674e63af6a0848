import asyncio
import re
from datetime import timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from scenario_engine.core.errors import (
    PromotionError,
    PromotionPreconditionError,
    ScenarioNotFoundError,
)
from scenario_engine.models import (
    ClusterCentroid,
    ClusteringScenario,
    ClusterVersion,
    Entity,
    ScenarioAssignment,
)
from scenario_engine.services.production import VersionedProductionStore
from scenario_engine.services.promotion import PromotionService
from scenario_engine.services.scenarios import ClusteringService
from scenario_engine.utils.vectors import utcnow


async def _completed_scenario(session, k_value=3, threshold=0.5, entity_type="problem"):
    service = ClusteringService()
    scenario = await service.create_scenario(
        session, entity_type=entity_type, k_value=k_value, similarity_threshold=threshold
    )
    return await service.run_scenario(session, scenario.id)


async def _entity_mapping(session) -> dict:
    result = await session.exec(
        select(Entity.id, Entity.cluster_id, Entity.cluster_version).execution_options(populate_existing=True)
    )
    return {entity_id: (cluster_id, version) for entity_id, cluster_id, version in result.all()}


async def _active_versions(session) -> list[int]:
    result = await session.exec(select(ClusterVersion.version).where(ClusterVersion.is_active.is_(True)))
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_promotion_stamps_entities_and_activates_version(session, seed_entities):
    await seed_entities()
    scenario = await _completed_scenario(session)

    result = await PromotionService().promote(session, scenario.id)

    assert result.new_version == 1
    assert result.previous_version is None
    assert result.entities_updated == 100
    assert result.clusters_promoted == 3
    assert await _active_versions(session) == [1]

    assignments = (
        await session.exec(select(ScenarioAssignment).where(ScenarioAssignment.scenario_id == scenario.id))
    ).scalars().all()
    expected = {assignment.entity_id: assignment.cluster_id for assignment in assignments}
    mapping = await _entity_mapping(session)
    assert {entity_id: cluster for entity_id, (cluster, _) in mapping.items()} == expected
    assert {version for _, version in mapping.values()} == {1}

    entities = (await session.exec(select(Entity))).scalars().all()
    assert all(entity.cluster_label for entity in entities)
    assert all(entity.cluster_similarity is not None for entity in entities)

    report = await VersionedProductionStore().assert_no_orphans(session)
    assert report.is_clean

    refreshed = await session.get(ClusteringScenario, scenario.id)
    assert "Applied to production at" in refreshed.notes
    assert "(version 1)" in refreshed.notes


@pytest.mark.asyncio
async def test_promotion_updates_clustering_config(session, seed_entities):
    await seed_entities()
    scenario = await _completed_scenario(session, k_value=4, threshold=0.55)

    await PromotionService().promote(session, scenario.id)

    config = await VersionedProductionStore().get_clustering_config(session, "problem")
    assert config.k_value == 4
    assert config.similarity_threshold == pytest.approx(0.55)
    assert config.active_version == 1
    assert config.cluster_count == scenario.cluster_count
    assert config.outlier_percentage == scenario.outlier_percentage


@pytest.mark.asyncio
async def test_promoting_pending_scenario_is_rejected(session, seed_entities):
    await seed_entities()
    scenario = await ClusteringService().create_scenario(
        session, entity_type="problem", k_value=3, similarity_threshold=0.5
    )

    with pytest.raises(PromotionPreconditionError):
        await PromotionService().promote(session, scenario.id)

    assert await _active_versions(session) == []
    count = (await session.exec(select(func.count()).select_from(ClusterVersion))).scalar_one()
    assert count == 0


@pytest.mark.asyncio
async def test_promoting_failed_scenario_is_rejected(session):
    scenario = await _completed_scenario(session, entity_type="solution")
    assert scenario.status == "failed"

    with pytest.raises(PromotionPreconditionError):
        await PromotionService().promote(session, scenario.id)


@pytest.mark.asyncio
async def test_promoting_unknown_scenario_raises_not_found(session):
    with pytest.raises(ScenarioNotFoundError):
        await PromotionService().promote(session, uuid4())


@pytest.mark.asyncio
async def test_repromotion_is_idempotent_and_history_is_kept(session, seed_entities):
    await seed_entities()
    scenario = await _completed_scenario(session)
    service = PromotionService()

    first = await service.promote(session, scenario.id)
    first_mapping = {entity_id: cluster for entity_id, (cluster, _) in (await _entity_mapping(session)).items()}
    second = await service.promote(session, scenario.id)
    second_mapping = {entity_id: cluster for entity_id, (cluster, _) in (await _entity_mapping(session)).items()}

    assert (first.new_version, second.new_version) == (1, 2)
    assert second.previous_version == 1
    assert first_mapping == second_mapping
    assert await _active_versions(session) == [2]

    store = VersionedProductionStore()
    old_centroids = await store.get_centroids(session, 1)
    assert len(old_centroids) == 3
    assert {centroid.cluster_id for centroid in old_centroids} == set(first_mapping.values())


@pytest.mark.asyncio
async def test_new_scenario_compares_against_promoted_production(session, seed_entities):
    await seed_entities()
    baseline = await _completed_scenario(session, k_value=2, threshold=0.5)
    await PromotionService().promote(session, baseline.id)

    challenger = await _completed_scenario(session, k_value=3, threshold=0.5)

    assert baseline.outlier_count > 0
    assert challenger.production_version == 1
    assert challenger.production_outlier_percentage == baseline.outlier_percentage
    assert challenger.outlier_improvement_percentage == pytest.approx(
        challenger.production_outlier_percentage - challenger.outlier_percentage
    )
    assert challenger.outlier_improvement_percentage > 0

    result = await PromotionService().promote(session, challenger.id)
    challenger_assignments = (
        await session.exec(select(ScenarioAssignment).where(ScenarioAssignment.scenario_id == challenger.id))
    ).scalars().all()
    expected = {assignment.entity_id: assignment.cluster_id for assignment in challenger_assignments}
    mapping = await _entity_mapping(session)
    assert {entity_id: cluster for entity_id, (cluster, _) in mapping.items()} == expected
    assert {version for _, version in mapping.values()} == {result.new_version}

    previous = await VersionedProductionStore().get_centroids(session, 1)
    assert any(centroid.is_outlier_bucket for centroid in previous)


class _ExplodingStore(VersionedProductionStore):
    async def activate(self, session, *, entity_type, version):
        raise RuntimeError("disk full")


@pytest.mark.asyncio
async def test_failed_promotion_rolls_back_everything(session, seed_entities):
    await seed_entities()
    first = await _completed_scenario(session)
    await PromotionService().promote(session, first.id)
    before = await _entity_mapping(session)
    second = await _completed_scenario(session, k_value=2)
    second_id = second.id

    with pytest.raises(PromotionError) as excinfo:
        await PromotionService(store=_ExplodingStore()).promote(session, second_id)

    assert "disk full" in str(excinfo.value)
    assert await _active_versions(session) == [1]
    versions = (await session.exec(select(ClusterVersion.version))).scalars().all()
    assert list(versions) == [1]
    centroids_v2 = (
        await session.exec(select(func.count()).select_from(ClusterCentroid).where(ClusterCentroid.version == 2))
    ).scalar_one()
    assert centroids_v2 == 0
    assert await _entity_mapping(session) == before

    scenario = (
        await session.exec(
            select(ClusteringScenario)
            .where(ClusteringScenario.id == second_id)
            .execution_options(populate_existing=True)
        )
    ).scalars().one()
    assert scenario.notes is None or "Applied to production" not in scenario.notes


@pytest.mark.asyncio
async def test_concurrent_promotions_leave_one_active_version(session_factory, seed_entities, session):
    await seed_entities()
    left = await _completed_scenario(session)
    right = await _completed_scenario(session, k_value=2)

    async def _promote(scenario_id):
        async with session_factory() as own_session:
            return await PromotionService().promote(own_session, scenario_id)

    results = await asyncio.gather(_promote(left.id), _promote(right.id))

    assert sorted(result.new_version for result in results) == [1, 2]
    assert await _active_versions(session) == [2]
    report = await VersionedProductionStore().find_orphans(session)
    assert report.is_clean


class _StaleAllocationStore(VersionedProductionStore):
    async def allocate_version(self, session):
        return 1


@pytest.mark.asyncio
async def test_colliding_version_number_is_rejected(session, seed_entities):
    await seed_entities()
    first = await _completed_scenario(session)
    await PromotionService().promote(session, first.id)
    before = await _entity_mapping(session)
    second = await _completed_scenario(session, k_value=2)
    second_id = second.id

    with pytest.raises(PromotionError):
        await PromotionService(store=_StaleAllocationStore()).promote(session, second_id)

    assert await _active_versions(session) == [1]
    assert await _entity_mapping(session) == before


@pytest.mark.asyncio
async def test_timestamps_are_utc_aware_and_audit_note_is_zulu(session, seed_entities):
    await seed_entities()
    scenario = await _completed_scenario(session)

    result = await PromotionService().promote(session, scenario.id)

    assert utcnow().tzinfo is timezone.utc
    assert result.promoted_at.utcoffset() == timedelta(0)
    refreshed = await session.get(ClusteringScenario, scenario.id)
    assert re.search(r"Applied to production at \d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z \(version 1\)", refreshed.notes)
    assert "+00:00" not in refreshed.notes
