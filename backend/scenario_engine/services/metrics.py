"""Scenario quality and production comparison metrics.

Classes:
    ClusterSummary: Aggregates for one scenario cluster (or the outlier bucket).
    ProductionSnapshot: Outlier share of the active production version at one point in time.

Functions:
    summarise_clusters(items, ...): Group provisional work results into per-cluster aggregates.
    outlier_percentage(outlier_count, total_items): Percentage rounded to one decimal.
    improvement(production_pct, scenario_pct): Positive when the scenario has fewer outliers.
    compute_silhouette(matrix, labels, ...): Cosine silhouette over non-outlier members.
    production_snapshot(session, entity_type): Read the active version's outlier share in one transaction.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Optional

import numpy as np
from sklearn.metrics import silhouette_score
from sqlalchemy import and_, func, select

from scenario_engine.models import ClusterCentroid, ClusterVersion, Entity
from scenario_engine.services.clustering import OUTLIER_LABEL
from scenario_engine.services.workspace import WorkItemResult
from scenario_engine.utils.vectors import l2_normalise

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ClusterSummary:
    cluster_index: int
    item_count: int
    avg_similarity: Optional[float]
    min_similarity: Optional[float]
    max_similarity: Optional[float]
    primary_industry: Optional[str]
    sample_titles: list[str] = field(default_factory=list)
    member_ids: list = field(default_factory=list)

    @property
    def is_outlier_bucket(self) -> bool:
        return self.cluster_index == OUTLIER_LABEL


@dataclass(slots=True)
class ProductionSnapshot:
    version: Optional[int]
    eligible: int
    clustered: int

    @property
    def outlier_percentage(self) -> float:
        if self.version is None or self.eligible == 0:
            return 100.0
        return outlier_percentage(self.eligible - self.clustered, self.eligible)


def outlier_percentage(outlier_count: int, total_items: int) -> float:
    if total_items <= 0:
        return 0.0
    return round(outlier_count / total_items * 100.0, 1)


def improvement(production_pct: Optional[float], scenario_pct: Optional[float]) -> Optional[float]:
    if production_pct is None or scenario_pct is None:
        return None
    return round(production_pct - scenario_pct, 1)


def _primary_industry(industries: Iterable[Optional[str]]) -> Optional[str]:
    counts = Counter(value for value in industries if value)
    if not counts:
        return None
    # most common, alphabetical on ties
    return sorted(counts.items(), key=lambda pair: (-pair[1], pair[0]))[0][0]


def summarise_clusters(
    items: Iterable[WorkItemResult],
    *,
    sample_limit: int = 5,
) -> list[ClusterSummary]:
    grouped: dict[int, list[WorkItemResult]] = defaultdict(list)
    for item in items:
        grouped[item.cluster_index].append(item)

    summaries: list[ClusterSummary] = []
    for cluster_index in sorted(grouped, key=lambda idx: (idx == OUTLIER_LABEL, idx)):
        members = sorted(grouped[cluster_index], key=lambda item: (-item.similarity, str(item.item_id)))
        sims = np.asarray([member.similarity for member in members], dtype=float)
        summaries.append(
            ClusterSummary(
                cluster_index=cluster_index,
                item_count=len(members),
                avg_similarity=float(np.clip(sims.mean(), -1.0, 1.0)) if sims.size else None,
                min_similarity=float(sims.min()) if sims.size else None,
                max_similarity=float(sims.max()) if sims.size else None,
                primary_industry=_primary_industry(member.industry for member in members),
                sample_titles=[member.title for member in members if member.title][:sample_limit],
                member_ids=[member.item_id for member in members],
            )
        )
    return summaries


def compute_silhouette(
    matrix: np.ndarray,
    labels: np.ndarray,
    *,
    sample_size: Optional[int] = None,
    random_state: int = 42,
) -> Optional[float]:
    labels = np.asarray(labels, dtype=int)
    mask = labels >= 0
    if mask.sum() < 3:
        return None
    unique = np.unique(labels[mask])
    if unique.size < 2 or mask.sum() <= unique.size:
        return None
    data = l2_normalise(np.asarray(matrix, dtype=float)[mask])
    subset = labels[mask]
    sample = sample_size if sample_size and subset.size > sample_size else None
    try:
        score = silhouette_score(data, subset, metric="cosine", sample_size=sample, random_state=random_state)
    except ValueError:
        _LOGGER.debug("Silhouette score unavailable for %d items", subset.size, exc_info=True)
        return None
    if not np.isfinite(score):
        return None
    return float(np.clip(score, -1.0, 1.0))


async def production_snapshot(session, entity_type: str) -> ProductionSnapshot:
    """Outlier share of the active version; entities in the outlier bucket or stamped
    with another version count as outliers."""

    active = (
        await session.exec(
            select(ClusterVersion.version)
            .where(ClusterVersion.entity_type == entity_type)
            .where(ClusterVersion.is_active.is_(True))
        )
    ).scalar_one_or_none()

    eligible_stmt = (
        select(func.count())
        .select_from(Entity)
        .where(Entity.entity_type == entity_type)
        .where(Entity.embedding_vector.is_not(None))
    )
    eligible = int((await session.exec(eligible_stmt)).scalar_one())
    if active is None:
        return ProductionSnapshot(version=None, eligible=eligible, clustered=0)

    clustered_stmt = (
        select(func.count())
        .select_from(Entity)
        .join(
            ClusterCentroid,
            and_(
                ClusterCentroid.version == Entity.cluster_version,
                ClusterCentroid.cluster_id == Entity.cluster_id,
            ),
        )
        .where(Entity.entity_type == entity_type)
        .where(Entity.embedding_vector.is_not(None))
        .where(Entity.cluster_version == active)
        .where(ClusterCentroid.is_outlier_bucket.is_(False))
    )
    clustered = int((await session.exec(clustered_stmt)).scalar_one())
    return ProductionSnapshot(version=int(active), eligible=eligible, clustered=clustered)
