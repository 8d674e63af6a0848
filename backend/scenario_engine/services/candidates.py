"""Read-only ranking of solution candidates over production cluster state."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select

from scenario_engine.models import ClusterCentroid, Entity, EntityType, ProblemSolutionLink

CANDIDATE_STATUS = "candidate"
UNKNOWN_CLUSTER_LABEL = "Unknown Cluster"

VIABILITY_WEIGHT = 40.0
LTV_CAC_WEIGHT = 30.0
PROBLEM_WEIGHT = 30.0


@dataclass(slots=True)
class CandidateScore:
    solution_id: UUID
    title: str
    score: float
    viability: float
    ltv_cac: float
    problems: float
    problem_count: int
    source_cluster_id: Optional[UUID]
    source_cluster_label: str


def _viability_component(viability: Optional[float]) -> float:
    if viability is None or viability <= 0:
        return 0.0
    return min(float(viability) / 100.0, 1.0)


def _ltv_cac_component(ltv: Optional[float], cac: Optional[float]) -> float:
    if not ltv or not cac or cac <= 0 or ltv <= 0:
        return 0.0
    return min(float(ltv) / float(cac) * 5.0, 50.0) / 50.0


def _problem_component(problem_count: int) -> float:
    if problem_count <= 0:
        return 0.0
    return min(problem_count * 2.0, 100.0) / 100.0


def score_solution(solution: Entity, problem_count: int = 0) -> float:
    """Composite score in [0, 100]; 40% viability, 30% LTV/CAC, 30% linked problems."""

    score = (
        VIABILITY_WEIGHT * _viability_component(solution.overall_viability)
        + LTV_CAC_WEIGHT * _ltv_cac_component(solution.ltv_estimate, solution.cac_estimate)
        + PROBLEM_WEIGHT * _problem_component(problem_count)
    )
    return round(score, 2)


class CandidateScorer:
    async def _problem_counts(self, session, solution_ids: list[UUID]) -> dict[UUID, int]:
        if not solution_ids:
            return {}
        rows = (
            await session.exec(
                select(ProblemSolutionLink.solution_id, func.count())
                .where(ProblemSolutionLink.solution_id.in_(solution_ids))
                .group_by(ProblemSolutionLink.solution_id)
            )
        ).all()
        return {solution_id: int(count) for solution_id, count in rows}

    async def _latest_labels(self, session, cluster_ids: set[UUID]) -> dict[UUID, str]:
        if not cluster_ids:
            return {}
        rows = (
            await session.exec(
                select(ClusterCentroid.cluster_id, ClusterCentroid.label)
                .where(ClusterCentroid.cluster_id.in_(list(cluster_ids)))
                .where(ClusterCentroid.label.is_not(None))
                .order_by(ClusterCentroid.version)
            )
        ).all()
        # later versions overwrite earlier ones
        return {cluster_id: label for cluster_id, label in rows}

    async def rank_candidates(self, session, *, limit: Optional[int] = 10) -> list[CandidateScore]:
        solutions = (
            await session.exec(
                select(Entity)
                .where(Entity.entity_type == EntityType.SOLUTION)
                .where(Entity.status == CANDIDATE_STATUS)
                .where(Entity.is_saas_compatible.is_(True))
                .where(Entity.has_project.is_(False))
            )
        ).scalars().all()
        if not solutions:
            return []

        counts = await self._problem_counts(session, [solution.id for solution in solutions])
        unlabelled = {
            solution.source_cluster_id
            for solution in solutions
            if solution.source_cluster_id and not solution.source_cluster_label
        }
        labels = await self._latest_labels(session, unlabelled)

        ranked: list[CandidateScore] = []
        for solution in solutions:
            problem_count = counts.get(solution.id, 0)
            label = (
                solution.source_cluster_label
                or labels.get(solution.source_cluster_id)
                or UNKNOWN_CLUSTER_LABEL
            )
            ranked.append(
                CandidateScore(
                    solution_id=solution.id,
                    title=solution.title,
                    score=score_solution(solution, problem_count),
                    viability=_viability_component(solution.overall_viability),
                    ltv_cac=_ltv_cac_component(solution.ltv_estimate, solution.cac_estimate),
                    problems=_problem_component(problem_count),
                    problem_count=problem_count,
                    source_cluster_id=solution.source_cluster_id,
                    source_cluster_label=label,
                )
            )
        ranked.sort(key=lambda candidate: (-candidate.score, candidate.title, str(candidate.solution_id)))
        return ranked[:limit] if limit else ranked

    async def best_candidate(self, session) -> Optional[CandidateScore]:
        ranked = await self.rank_candidates(session, limit=1)
        return ranked[0] if ranked else None
