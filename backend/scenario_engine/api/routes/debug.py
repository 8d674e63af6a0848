"""Diagnostic endpoints for production cluster integrity."""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlmodel.ext.asyncio.session import AsyncSession

from scenario_engine.api.routes.clusters import to_cluster_member, to_cluster_resource
from scenario_engine.core.errors import ClusterNotFoundError
from scenario_engine.db.session import get_session
from scenario_engine.schemas import (
    ClusterDebugResponse,
    OrphanedEntityResource,
    OrphanedSourceResource,
    OrphanReportResponse,
    PipelineStatsResponse,
)
from scenario_engine.services import VersionedProductionStore

router = APIRouter(prefix="/debug", tags=["debug"])


@router.get("/orphans", response_model=OrphanReportResponse)
async def get_orphans(
    entity_type: Optional[str] = Query(default=None),
    session: AsyncSession = Depends(get_session),
) -> OrphanReportResponse:
    store = VersionedProductionStore()
    report = await store.find_orphans(session, entity_type)
    return OrphanReportResponse(
        checked_at=report.checked_at,
        is_clean=report.is_clean,
        orphaned_entities=[
            OrphanedEntityResource(
                entity_id=orphan.entity_id,
                entity_type=orphan.entity_type,
                title=orphan.title,
                cluster_id=orphan.cluster_id,
                cluster_version=orphan.cluster_version,
            )
            for orphan in report.orphaned_entities
        ],
        orphaned_sources=[
            OrphanedSourceResource(
                solution_id=orphan.solution_id,
                title=orphan.title,
                source_cluster_id=orphan.source_cluster_id,
                source_cluster_label=orphan.source_cluster_label,
            )
            for orphan in report.orphaned_sources
        ],
    )


@router.get("/clusters/{cluster_id}", response_model=ClusterDebugResponse)
async def debug_cluster(
    cluster_id: UUID,
    session: AsyncSession = Depends(get_session),
) -> ClusterDebugResponse:
    store = VersionedProductionStore()
    try:
        report = await store.debug_cluster(session, cluster_id)
    except ClusterNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return ClusterDebugResponse(
        cluster_id=report.cluster_id,
        centroids=[to_cluster_resource(centroid) for centroid in report.centroids],
        member_count=report.member_count,
        sample_members=[to_cluster_member(entity) for entity in report.sample_members],
        active_version=report.active_version,
        visible_at_active_version=report.visible_at_active_version,
    )


@router.get("/stats", response_model=PipelineStatsResponse)
async def pipeline_stats(session: AsyncSession = Depends(get_session)) -> PipelineStatsResponse:
    store = VersionedProductionStore()
    return PipelineStatsResponse(**await store.pipeline_stats(session))
