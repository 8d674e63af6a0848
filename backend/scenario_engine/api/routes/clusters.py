"""Production cluster endpoints backed by the versioned store."""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlmodel.ext.asyncio.session import AsyncSession

from scenario_engine.core.errors import ClusterNotFoundError
from scenario_engine.db.session import get_session
from scenario_engine.models import ClusterCentroid, Entity, EntityType
from scenario_engine.schemas import (
    ClusterLabelRequest,
    ClusterMember,
    ClusterResource,
    ClusterVersionResource,
    ClusteringConfigResponse,
)
from scenario_engine.services import VersionedProductionStore

router = APIRouter(prefix="/clusters", tags=["clusters"])


def _require_entity_type(entity_type: str) -> str:
    if entity_type not in EntityType.ALL:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"entity_type must be one of {sorted(EntityType.ALL)}",
        )
    return entity_type


def to_cluster_resource(centroid: ClusterCentroid, member_count: Optional[int] = None) -> ClusterResource:
    return ClusterResource(
        version=centroid.version,
        cluster_id=centroid.cluster_id,
        entity_type=centroid.entity_type,
        label=centroid.label,
        primary_industry=centroid.primary_industry,
        avg_similarity=centroid.avg_similarity,
        item_count=centroid.item_count,
        member_count=member_count,
        is_outlier_bucket=centroid.is_outlier_bucket,
        created_at=centroid.created_at,
    )


def to_cluster_member(entity: Entity) -> ClusterMember:
    return ClusterMember(
        id=entity.id,
        entity_type=entity.entity_type,
        title=entity.title,
        industry=entity.industry,
        cluster_label=entity.cluster_label,
        cluster_similarity=entity.cluster_similarity,
        cluster_version=entity.cluster_version,
    )


@router.get("/config/{entity_type}", response_model=ClusteringConfigResponse)
async def get_clustering_config(
    entity_type: str,
    session: AsyncSession = Depends(get_session),
) -> ClusteringConfigResponse:
    store = VersionedProductionStore()
    config = await store.get_clustering_config(session, _require_entity_type(entity_type))
    return ClusteringConfigResponse.model_validate(config.model_dump())


@router.get("/versions", response_model=list[ClusterVersionResource])
async def list_versions(
    entity_type: Optional[str] = Query(default=None),
    session: AsyncSession = Depends(get_session),
) -> list[ClusterVersionResource]:
    store = VersionedProductionStore()
    if entity_type is not None:
        _require_entity_type(entity_type)
    versions = await store.list_versions(session, entity_type)
    return [ClusterVersionResource.model_validate(version.model_dump()) for version in versions]


@router.get("", response_model=list[ClusterResource])
async def list_clusters(
    entity_type: str = Query(default=EntityType.PROBLEM),
    version: Optional[int] = Query(default=None, ge=1),
    session: AsyncSession = Depends(get_session),
) -> list[ClusterResource]:
    store = VersionedProductionStore()
    views = await store.list_clusters(session, _require_entity_type(entity_type), version)
    return [to_cluster_resource(view.centroid, view.member_count) for view in views]


@router.get("/{cluster_id}/members", response_model=list[ClusterMember])
async def list_cluster_members(
    cluster_id: UUID,
    limit: Optional[int] = Query(default=100, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
) -> list[ClusterMember]:
    store = VersionedProductionStore()
    members = await store.cluster_members(session, cluster_id, limit=limit)
    return [to_cluster_member(entity) for entity in members]


@router.patch("/{version}/{cluster_id}/label", response_model=ClusterResource)
async def label_cluster(
    version: int,
    cluster_id: UUID,
    payload: ClusterLabelRequest,
    session: AsyncSession = Depends(get_session),
) -> ClusterResource:
    store = VersionedProductionStore()
    try:
        centroid = await store.label_cluster(session, version, cluster_id, payload.label)
    except ClusterNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return to_cluster_resource(centroid)
