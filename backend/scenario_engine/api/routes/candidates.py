"""Candidate ranking endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlmodel.ext.asyncio.session import AsyncSession

from scenario_engine.db.session import get_session
from scenario_engine.schemas import CandidateResource
from scenario_engine.services import CandidateScorer
from scenario_engine.services.candidates import CandidateScore

router = APIRouter(prefix="/candidates", tags=["candidates"])


def _to_candidate_resource(candidate: CandidateScore) -> CandidateResource:
    return CandidateResource(
        solution_id=candidate.solution_id,
        title=candidate.title,
        score=candidate.score,
        viability=candidate.viability,
        ltv_cac=candidate.ltv_cac,
        problems=candidate.problems,
        problem_count=candidate.problem_count,
        source_cluster_id=candidate.source_cluster_id,
        source_cluster_label=candidate.source_cluster_label,
    )


@router.get("", response_model=list[CandidateResource])
async def rank_candidates(
    limit: int = Query(default=10, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
) -> list[CandidateResource]:
    scorer = CandidateScorer()
    ranked = await scorer.rank_candidates(session, limit=limit)
    return [_to_candidate_resource(candidate) for candidate in ranked]


@router.get("/best", response_model=CandidateResource)
async def best_candidate(session: AsyncSession = Depends(get_session)) -> CandidateResource:
    scorer = CandidateScorer()
    candidate = await scorer.best_candidate(session)
    if candidate is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No eligible candidates")
    return _to_candidate_resource(candidate)
