from uuid import uuid4

import pytest


async def _create_completed(client, **overrides) -> str:
    payload = {"entity_type": "problem", "k_value": 3, "similarity_threshold": 0.5}
    payload.update(overrides)
    response = await client.post("/scenarios", json=payload)
    assert response.status_code == 202
    return response.json()["scenario_id"]


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_out_of_range_threshold_returns_422_and_schedules_nothing(client):
    response = await client.post(
        "/scenarios",
        json={"entity_type": "problem", "k_value": 5, "similarity_threshold": 1.5},
    )

    assert response.status_code == 422
    assert "similarity_threshold" in response.json()["detail"]
    listing = await client.get("/scenarios")
    assert listing.json() == []


@pytest.mark.asyncio
async def test_scenario_runs_in_background_and_exposes_details(client, seed_entities):
    await seed_entities()

    scenario_id = await _create_completed(client)
    response = await client.get(f"/scenarios/{scenario_id}")

    assert response.status_code == 200
    body = response.json()
    assert body["scenario"]["status"] == "completed"
    assert body["scenario"]["total_items"] == 100
    assert body["scenario"]["outlier_count"] == 0
    assert len(body["clusters"]) == 3
    assert sorted(cluster["item_count"] for cluster in body["clusters"]) == [33, 33, 34]
    for cluster in body["clusters"]:
        assert cluster["label"] == cluster["sample_titles"][0]
        assert 0 < len(cluster["items"]) <= 50


@pytest.mark.asyncio
async def test_failed_background_run_is_reported_on_poll(client):
    scenario_id = await _create_completed(client, entity_type="solution")

    response = await client.get(f"/scenarios/{scenario_id}")

    body = response.json()["scenario"]
    assert body["status"] == "failed"
    assert "No solution entities" in body["error_message"]


@pytest.mark.asyncio
async def test_promote_and_read_production(client, seed_entities):
    await seed_entities()
    scenario_id = await _create_completed(client)

    promoted = await client.post(f"/scenarios/{scenario_id}/promote")
    assert promoted.status_code == 200
    assert promoted.json()["new_version"] == 1

    clusters = await client.get("/clusters", params={"entity_type": "problem"})
    assert clusters.status_code == 200
    assert len(clusters.json()) == 3
    assert sum(cluster["member_count"] for cluster in clusters.json()) == 100

    cluster_id = clusters.json()[0]["cluster_id"]
    members = await client.get(f"/clusters/{cluster_id}/members", params={"limit": 3})
    assert len(members.json()) == 3

    relabel = await client.patch(f"/clusters/1/{cluster_id}/label", json={"label": "Cash flow"})
    assert relabel.status_code == 200
    assert relabel.json()["label"] == "Cash flow"

    config = await client.get("/clusters/config/problem")
    assert config.json()["active_version"] == 1
    assert config.json()["k_value"] == 3

    versions = await client.get("/clusters/versions", params={"entity_type": "problem"})
    assert [version["version"] for version in versions.json()] == [1]

    orphans = await client.get("/debug/orphans")
    assert orphans.json()["is_clean"] is True

    debug = await client.get(f"/debug/clusters/{cluster_id}")
    assert debug.json()["visible_at_active_version"] is True

    stats = await client.get("/debug/stats")
    assert stats.json()["entities"]["problem"]["clustered"] == 100

    scenario = await client.get(f"/scenarios/{scenario_id}")
    assert "Applied to production at" in scenario.json()["scenario"]["notes"]


@pytest.mark.asyncio
async def test_promotion_error_mapping(client):
    missing = await client.post(f"/scenarios/{uuid4()}/promote")
    assert missing.status_code == 404

    scenario_id = await _create_completed(client, entity_type="solution")
    rejected = await client.post(f"/scenarios/{scenario_id}/promote")
    assert rejected.status_code == 409


@pytest.mark.asyncio
async def test_notes_and_delete(client, seed_entities):
    await seed_entities()
    scenario_id = await _create_completed(client)

    noted = await client.post(f"/scenarios/{scenario_id}/notes", json={"note": "looks good"})
    assert noted.status_code == 200
    assert noted.json()["notes"].endswith("looks good")

    deleted = await client.delete(f"/scenarios/{scenario_id}")
    assert deleted.status_code == 204
    assert (await client.get(f"/scenarios/{scenario_id}")).status_code == 404
    assert (await client.delete(f"/scenarios/{scenario_id}")).status_code == 404


@pytest.mark.asyncio
async def test_unknown_entity_type_and_labels(client):
    assert (await client.get("/clusters/config/widget")).status_code == 422
    assert (await client.get("/clusters", params={"entity_type": "widget"})).status_code == 422
    relabel = await client.patch(f"/clusters/1/{uuid4()}/label", json={"label": "x"})
    assert relabel.status_code == 404
    assert (await client.get(f"/debug/clusters/{uuid4()}")).status_code == 404


@pytest.mark.asyncio
async def test_candidate_endpoints_without_candidates(client):
    assert (await client.get("/candidates")).json() == []
    assert (await client.get("/candidates/best")).status_code == 404
