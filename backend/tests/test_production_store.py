from uuid import uuid4

import pytest
from sqlalchemy import select

from scenario_engine.core.errors import ClusterNotFoundError, OrphanedClusterInvariantViolation
from scenario_engine.models import Entity, EntityType
from scenario_engine.services.production import VersionedProductionStore
from scenario_engine.services.promotion import PromotionService
from scenario_engine.services.scenarios import ClusteringService


async def _promote_new_scenario(session, k_value=3, threshold=0.5):
    service = ClusteringService()
    scenario = await service.create_scenario(
        session, entity_type="problem", k_value=k_value, similarity_threshold=threshold
    )
    await service.run_scenario(session, scenario.id)
    return await PromotionService().promote(session, scenario.id)


@pytest.mark.asyncio
async def test_config_defaults_before_any_promotion(session):
    store = VersionedProductionStore()

    config = await store.get_clustering_config(session, "solution")

    assert config.k_value == 25
    assert config.similarity_threshold == pytest.approx(0.60)
    assert config.active_version is None
    assert await store.active_version(session, "solution") is None
    assert await store.list_clusters(session, "solution") == []


@pytest.mark.asyncio
async def test_list_clusters_reports_live_member_counts(session, seed_entities):
    await seed_entities()
    await _promote_new_scenario(session)
    store = VersionedProductionStore()

    views = await store.list_clusters(session, "problem")

    assert len(views) == 3
    assert sum(view.member_count for view in views) == 100
    assert all(view.member_count == view.centroid.item_count for view in views)
    assert await store.list_clusters(session, "solution") == []


@pytest.mark.asyncio
async def test_cluster_members_are_ordered_by_similarity(session, seed_entities):
    await seed_entities()
    await _promote_new_scenario(session)
    store = VersionedProductionStore()
    cluster = (await store.list_clusters(session, "problem"))[0].centroid

    members = await store.cluster_members(session, cluster.cluster_id, limit=5)

    assert len(members) == 5
    similarities = [member.cluster_similarity for member in members]
    assert similarities == sorted(similarities, reverse=True)


@pytest.mark.asyncio
async def test_label_cluster_backfills_entities(session, seed_entities):
    await seed_entities()
    result = await _promote_new_scenario(session)
    store = VersionedProductionStore()
    cluster = (await store.list_clusters(session, "problem"))[0].centroid

    labelled = await store.label_cluster(session, result.new_version, cluster.cluster_id, "Payments friction")

    assert labelled.label == "Payments friction"
    labels = (
        await session.exec(
            select(Entity.cluster_label)
            .where(Entity.cluster_id == cluster.cluster_id)
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    assert labels and set(labels) == {"Payments friction"}

    with pytest.raises(ClusterNotFoundError):
        await store.label_cluster(session, result.new_version, uuid4(), "Nothing")


@pytest.mark.asyncio
async def test_orphaned_entities_are_reported(session, seed_entities):
    entities = await seed_entities()
    await _promote_new_scenario(session)
    store = VersionedProductionStore()
    victim = entities[0]
    victim.cluster_id = uuid4()
    session.add(victim)
    await session.commit()

    report = await store.find_orphans(session)

    assert not report.is_clean
    assert [orphan.entity_id for orphan in report.orphaned_entities] == [victim.id]
    assert report.orphaned_entities[0].cluster_version == 1
    with pytest.raises(OrphanedClusterInvariantViolation) as excinfo:
        await store.assert_no_orphans(session)
    assert excinfo.value.report.orphaned_entities[0].entity_id == victim.id


@pytest.mark.asyncio
async def test_orphaned_solution_sources_are_reported(session, seed_entities):
    await seed_entities()
    await _promote_new_scenario(session)
    dangling = Entity(
        entity_type=EntityType.SOLUTION,
        title="Ledger sync",
        source_cluster_id=uuid4(),
        source_cluster_label="Gone",
    )
    session.add(dangling)
    await session.commit()
    store = VersionedProductionStore()

    report = await store.find_orphans(session)

    assert report.orphaned_entities == []
    assert [orphan.solution_id for orphan in report.orphaned_sources] == [dangling.id]
    assert (await store.find_orphans(session, "problem")).orphaned_sources == []
    await store.assert_no_orphans(session)


@pytest.mark.asyncio
async def test_debug_cluster_tracks_visibility_across_versions(session, seed_entities):
    await seed_entities()
    await _promote_new_scenario(session)
    store = VersionedProductionStore()
    first_cluster = (await store.list_clusters(session, "problem"))[0].centroid

    report = await store.debug_cluster(session, first_cluster.cluster_id)
    assert report.visible_at_active_version
    assert report.member_count == first_cluster.item_count
    assert [centroid.version for centroid in report.centroids] == [1]

    await _promote_new_scenario(session, k_value=2)
    report = await store.debug_cluster(session, first_cluster.cluster_id)
    assert report.active_version == 2
    assert not report.visible_at_active_version
    assert report.member_count == 0

    with pytest.raises(ClusterNotFoundError):
        await store.debug_cluster(session, uuid4())


@pytest.mark.asyncio
async def test_pipeline_stats(session, seed_entities):
    await seed_entities()
    await seed_entities(entity_type=EntityType.SOLUTION, sizes=(4,))
    await _promote_new_scenario(session)
    store = VersionedProductionStore()

    stats = await store.pipeline_stats(session)

    problems = stats["entities"]["problem"]
    assert problems["total"] == 100
    assert problems["clustered"] == 100
    assert problems["unclustered"] == 0
    assert problems["active_version"] == 1
    assert problems["active_clusters"] == 3
    solutions = stats["entities"]["solution"]
    assert solutions["total"] == 4
    assert solutions["unclustered"] == 4
    assert solutions["active_version"] is None
    assert stats["scenarios"] == {"completed": 1}
    assert stats["versions"] == 1


@pytest.mark.asyncio
async def test_versions_are_listed_newest_first(session, seed_entities):
    await seed_entities()
    await _promote_new_scenario(session)
    await _promote_new_scenario(session, k_value=2)
    store = VersionedProductionStore()

    versions = await store.list_versions(session, "problem")

    assert [version.version for version in versions] == [2, 1]
    assert [version.is_active for version in versions] == [True, False]
    assert versions[0].activated_at is not None
