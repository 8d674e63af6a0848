"""Scenario lifecycle endpoints.

Endpoints:
    create_scenario(payload, ...): Validate parameters, persist a pending scenario, and schedule its run.
    list_scenarios(entity_type, status, limit, session): Newest scenarios first.
    get_scenario(scenario_id, session): Scenario record plus cluster drill-down once completed.
    delete_scenario(scenario_id, session): Cancel an in-flight scenario or clean up a finished one.
    add_note(scenario_id, payload, session): Append to the scenario's audit trail.
    promote_scenario(scenario_id, session): Make a completed scenario the active production clustering.

Helpers:
    _to_scenario_resource(scenario): Convert a ClusteringScenario ORM instance into its response schema.
"""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Response, status
from sqlmodel.ext.asyncio.session import AsyncSession

from scenario_engine.core.errors import (
    PromotionError,
    PromotionPreconditionError,
    ScenarioNotFoundError,
    ValidationError,
)
from scenario_engine.db.session import get_session, get_session_factory
from scenario_engine.models import ClusteringScenario
from scenario_engine.schemas import (
    PromotionResponse,
    ScenarioClusterResource,
    ScenarioCreatedResponse,
    ScenarioCreateRequest,
    ScenarioDetailsResponse,
    ScenarioItemPreview,
    ScenarioNoteRequest,
    ScenarioResource,
)
from scenario_engine.services import ClusteringService, PromotionService, run_scenario_job
from scenario_engine.services.scenarios import cluster_display_label

router = APIRouter(prefix="/scenarios", tags=["scenarios"])


def _to_scenario_resource(scenario: ClusteringScenario) -> ScenarioResource:
    return ScenarioResource.model_validate(scenario.model_dump())


@router.post("", response_model=ScenarioCreatedResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_scenario(
    payload: ScenarioCreateRequest,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    session_factory=Depends(get_session_factory),
) -> ScenarioCreatedResponse:
    service = ClusteringService()
    try:
        scenario = await service.create_scenario(
            session,
            entity_type=payload.entity_type,
            k_value=payload.k_value,
            similarity_threshold=payload.similarity_threshold,
            requested_by=payload.requested_by,
            notes=payload.notes,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    background_tasks.add_task(run_scenario_job, session_factory, scenario.id)
    return ScenarioCreatedResponse(scenario_id=scenario.id, status=scenario.status)


@router.get("", response_model=list[ScenarioResource])
async def list_scenarios(
    entity_type: Optional[str] = Query(default=None),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: Optional[int] = Query(default=None, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
) -> list[ScenarioResource]:
    service = ClusteringService()
    scenarios = await service.list_scenarios(
        session, entity_type=entity_type, status=status_filter, limit=limit
    )
    return [_to_scenario_resource(scenario) for scenario in scenarios]


@router.get("/{scenario_id}", response_model=ScenarioDetailsResponse)
async def get_scenario(
    scenario_id: UUID,
    session: AsyncSession = Depends(get_session),
) -> ScenarioDetailsResponse:
    service = ClusteringService()
    try:
        details = await service.get_scenario_details(session, scenario_id)
    except ScenarioNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    clusters = [
        ScenarioClusterResource(
            cluster_id=entry.cluster.cluster_id,
            label=cluster_display_label(entry.cluster),
            item_count=entry.cluster.item_count,
            avg_similarity=entry.cluster.avg_similarity,
            min_similarity=entry.cluster.min_similarity,
            max_similarity=entry.cluster.max_similarity,
            is_outlier_bucket=entry.cluster.is_outlier_bucket,
            primary_industry=entry.cluster.primary_industry,
            sample_titles=list(entry.cluster.sample_titles or []),
            items=[
                ScenarioItemPreview(entity_id=item.entity_id, title=item.title, similarity=item.similarity)
                for item in entry.items
            ],
        )
        for entry in details.clusters
    ]
    return ScenarioDetailsResponse(scenario=_to_scenario_resource(details.scenario), clusters=clusters)


@router.delete("/{scenario_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_scenario(
    scenario_id: UUID,
    session: AsyncSession = Depends(get_session),
) -> Response:
    service = ClusteringService()
    try:
        await service.delete_scenario(session, scenario_id)
    except ScenarioNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{scenario_id}/notes", response_model=ScenarioResource)
async def add_note(
    scenario_id: UUID,
    payload: ScenarioNoteRequest,
    session: AsyncSession = Depends(get_session),
) -> ScenarioResource:
    service = ClusteringService()
    try:
        scenario = await service.append_note(session, scenario_id, payload.note)
    except ScenarioNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return _to_scenario_resource(scenario)


@router.post("/{scenario_id}/promote", response_model=PromotionResponse)
async def promote_scenario(
    scenario_id: UUID,
    session: AsyncSession = Depends(get_session),
) -> PromotionResponse:
    service = PromotionService()
    try:
        result = await service.promote(session, scenario_id)
    except ScenarioNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except PromotionPreconditionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except PromotionError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return PromotionResponse(
        scenario_id=result.scenario_id,
        entity_type=result.entity_type,
        new_version=result.new_version,
        previous_version=result.previous_version,
        clusters_promoted=result.clusters_promoted,
        entities_updated=result.entities_updated,
        promoted_at=result.promoted_at,
    )
