from uuid import uuid4

import pytest

from scenario_engine.models import ClusterCentroid, ClusterVersion, Entity, EntityType, ProblemSolutionLink
from scenario_engine.services.candidates import CandidateScorer, score_solution


def _solution(title, *, viability=None, ltv=None, cac=None, **kwargs) -> Entity:
    defaults = {"status": "candidate", "is_saas_compatible": True, "has_project": False}
    defaults.update(kwargs)
    return Entity(
        entity_type=EntityType.SOLUTION,
        title=title,
        overall_viability=viability,
        ltv_estimate=ltv,
        cac_estimate=cac,
        **defaults,
    )


def test_score_combines_weighted_components():
    solution = _solution("Invoice autopilot", viability=80, ltv=1000, cac=100)

    assert score_solution(solution, problem_count=10) == pytest.approx(68.0)


def test_score_caps_each_component():
    solution = _solution("Everything", viability=250, ltv=10_000, cac=1)

    assert score_solution(solution, problem_count=500) == pytest.approx(100.0)


def test_score_handles_missing_inputs():
    solution = _solution("Unknown economics", viability=None, ltv=500, cac=0)

    assert score_solution(solution) == 0.0


@pytest.mark.asyncio
async def test_best_candidate_skips_ineligible_solutions(session):
    strong = _solution("Strong", viability=90, ltv=600, cac=100)
    shipped = _solution("Shipped", viability=99, ltv=900, cac=100, has_project=True)
    offline = _solution("Offline", viability=99, ltv=900, cac=100, is_saas_compatible=False)
    parked = _solution("Parked", viability=99, ltv=900, cac=100, status="archived")
    weak = _solution("Weak", viability=20, ltv=100, cac=100)
    session.add_all([strong, shipped, offline, parked, weak])
    await session.commit()

    best = await CandidateScorer().best_candidate(session)
    ranked = await CandidateScorer().rank_candidates(session)

    assert best.solution_id == strong.id
    assert [candidate.title for candidate in ranked] == ["Strong", "Weak"]


@pytest.mark.asyncio
async def test_problem_links_raise_the_score(session):
    linked = _solution("Linked", viability=50, ltv=200, cac=100)
    lonely = _solution("Lonely", viability=50, ltv=200, cac=100)
    problems = [Entity(entity_type=EntityType.PROBLEM, title=f"Problem {index}") for index in range(5)]
    session.add_all([linked, lonely, *problems])
    await session.commit()
    session.add_all([ProblemSolutionLink(problem_id=problem.id, solution_id=linked.id) for problem in problems])
    await session.commit()

    ranked = await CandidateScorer().rank_candidates(session)

    assert ranked[0].solution_id == linked.id
    assert ranked[0].problem_count == 5
    assert ranked[0].score - ranked[1].score == pytest.approx(3.0)


@pytest.mark.asyncio
async def test_source_cluster_label_fallbacks(session):
    cluster_id = uuid4()
    session.add(ClusterVersion(version=1, entity_type=EntityType.PROBLEM, is_active=False))
    session.add(ClusterVersion(version=2, entity_type=EntityType.PROBLEM, is_active=True))
    await session.commit()
    session.add(ClusterCentroid(version=1, cluster_id=cluster_id, entity_type="problem", label="Old name"))
    session.add(ClusterCentroid(version=2, cluster_id=cluster_id, entity_type="problem", label="Billing pain"))
    own = _solution("Own label", viability=70, source_cluster_id=uuid4(), source_cluster_label="Named upstream")
    from_centroid = _solution("From centroid", viability=60, source_cluster_id=cluster_id)
    unknown = _solution("Unknown", viability=50, source_cluster_id=uuid4())
    session.add_all([own, from_centroid, unknown])
    await session.commit()

    ranked = {candidate.title: candidate for candidate in await CandidateScorer().rank_candidates(session)}

    assert ranked["Own label"].source_cluster_label == "Named upstream"
    assert ranked["From centroid"].source_cluster_label == "Billing pain"
    assert ranked["Unknown"].source_cluster_label == "Unknown Cluster"


@pytest.mark.asyncio
async def test_no_candidates_returns_none(session):
    assert await CandidateScorer().best_candidate(session) is None
    assert await CandidateScorer().rank_candidates(session) == []
