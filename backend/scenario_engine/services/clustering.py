"""Threshold-gated nearest-centroid clustering over embedding vectors.

Classes:
    ClusterResult: Labels, per-item similarities, and centroids from a converged run.

Functions:
    run_clustering(matrix, ...): Single seeded attempt; raises ConvergenceError if the iteration budget runs out.
    cluster_with_retry(matrix, ...): Re-seed and retry on ConvergenceError up to an attempt budget.
    cluster_entities(entities, k, similarity_threshold): Contract wrapper over (id, embedding) pairs.

Label -1 is the outlier bucket: items whose best similarity to any centroid falls
below the threshold. Real clusters are labelled 0..n_clusters-1 in seed order.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Any, Hashable, Sequence

import numpy as np
from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt

from scenario_engine.core.errors import ConvergenceError, ValidationError
from scenario_engine.utils.vectors import l2_normalise

_LOGGER = logging.getLogger(__name__)

OUTLIER_LABEL = -1
_EPS = 1e-9
_DISTINCT_DECIMALS = 6


@dataclass(slots=True)
class ClusterResult:
    labels: np.ndarray
    similarities: np.ndarray
    centroids: np.ndarray
    iterations: int
    requested_k: int
    effective_k: int
    attempt: int = 0

    @property
    def n_clusters(self) -> int:
        return int(self.centroids.shape[0])

    @property
    def outlier_count(self) -> int:
        return int(np.sum(self.labels == OUTLIER_LABEL))

    def cluster_sizes(self) -> np.ndarray:
        members = self.labels[self.labels >= 0]
        return np.bincount(members, minlength=self.n_clusters)


def validate_parameters(k: int, similarity_threshold: float, max_iterations: int = 1) -> None:
    if int(k) < 1:
        raise ValidationError("k must be at least 1")
    if not (0.0 < float(similarity_threshold) <= 1.0):
        raise ValidationError("similarity_threshold must be in (0, 1]")
    if int(max_iterations) < 1:
        raise ValidationError("max_iterations must be at least 1")


def cosine_similarities(normalised: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    if centroids.size == 0:
        return np.zeros((normalised.shape[0], 0), dtype=np.float64)
    return np.clip(normalised @ centroids.T, -1.0, 1.0)


def _distinct_count(normalised: np.ndarray, usable: np.ndarray) -> int:
    if not usable.any():
        return 0
    rounded = np.round(normalised[usable], _DISTINCT_DECIMALS)
    return int(np.unique(rounded, axis=0).shape[0])


def _seed_centroids(
    normalised: np.ndarray,
    usable: np.ndarray,
    k: int,
    *,
    merge_similarity: float,
    start: int,
) -> np.ndarray:
    """Farthest-first seeding; stops early once every item sits on top of a seed."""

    candidates = np.flatnonzero(usable)
    seeds = [int(start)]
    best_to_seed = cosine_similarities(normalised[candidates], normalised[[start]])[:, 0]
    while len(seeds) < k:
        position = int(np.argmin(best_to_seed))
        if best_to_seed[position] >= merge_similarity:
            break
        chosen = int(candidates[position])
        seeds.append(chosen)
        best_to_seed = np.maximum(
            best_to_seed,
            cosine_similarities(normalised[candidates], normalised[[chosen]])[:, 0],
        )
    return normalised[seeds].copy()


def _start_index(normalised: np.ndarray, usable: np.ndarray, attempt: int, seed: int) -> int:
    candidates = np.flatnonzero(usable)
    if attempt == 0:
        centre = l2_normalise(normalised[candidates].mean(axis=0))[0]
        scores = normalised[candidates] @ centre
        return int(candidates[int(np.argmax(scores))])
    rng = np.random.default_rng(seed + attempt)
    return int(rng.choice(candidates))


def _assign(
    normalised: np.ndarray,
    centroids: np.ndarray,
    threshold: float,
    sizes: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    n = normalised.shape[0]
    if centroids.shape[0] == 0:
        return np.full(n, OUTLIER_LABEL, dtype=int), np.zeros(n, dtype=np.float64)

    sims = cosine_similarities(normalised, centroids)
    best = sims.max(axis=1)
    labels = np.argmax(sims, axis=1).astype(int)

    tied = sims >= (best[:, None] - _EPS)
    for row in np.flatnonzero(tied.sum(axis=1) > 1):
        options = np.flatnonzero(tied[row])
        # larger membership first, then lowest index
        labels[row] = int(min(options, key=lambda idx: (-int(sizes[idx]), int(idx))))

    labels = np.where(best + _EPS >= threshold, labels, OUTLIER_LABEL)
    return labels, best


def _recompute(normalised: np.ndarray, labels: np.ndarray, previous: np.ndarray) -> np.ndarray:
    updated = previous.copy()
    for index in range(previous.shape[0]):
        members = normalised[labels == index]
        if members.shape[0] == 0:
            continue
        mean = members.mean(axis=0)
        norm = float(np.linalg.norm(mean))
        if norm > 0.0:
            updated[index] = mean / norm
    return updated


def _merge_map(centroids: np.ndarray, merge_similarity: float) -> np.ndarray:
    """Map each centroid index to the lowest index it is near-identical to."""

    count = centroids.shape[0]
    parent = np.arange(count)
    if count < 2:
        return parent

    def find(node: int) -> int:
        while parent[node] != node:
            parent[node] = parent[parent[node]]
            node = int(parent[node])
        return node

    sims = cosine_similarities(centroids, centroids)
    for left in range(count):
        for right in range(left + 1, count):
            if sims[left, right] >= merge_similarity:
                root_left, root_right = find(left), find(right)
                if root_left != root_right:
                    parent[max(root_left, root_right)] = min(root_left, root_right)
    return np.array([find(index) for index in range(count)])


def _relabel(labels: np.ndarray, mapping: np.ndarray) -> np.ndarray:
    relabelled = labels.copy()
    mask = labels >= 0
    relabelled[mask] = mapping[labels[mask]]
    return relabelled


def _compact(
    labels: np.ndarray,
    centroids: np.ndarray,
    *,
    keep: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """Drop centroids not in `keep` and renumber the rest densely in order."""

    kept = np.flatnonzero(keep)
    remap = np.full(centroids.shape[0], OUTLIER_LABEL, dtype=int)
    remap[kept] = np.arange(kept.size)
    compacted = labels.copy()
    mask = labels >= 0
    compacted[mask] = remap[labels[mask]]
    return compacted, centroids[kept]


def run_clustering(
    matrix: Any,
    *,
    k: int,
    similarity_threshold: float,
    max_iterations: int = 100,
    merge_similarity: float = 0.95,
    seed: int = 42,
    attempt: int = 0,
) -> ClusterResult:
    validate_parameters(k, similarity_threshold, max_iterations)

    data = np.asarray(matrix, dtype=np.float64)
    if data.ndim == 1:
        data = data.reshape(1, -1) if data.size else data.reshape(0, 0)
    n = data.shape[0]
    if n == 0:
        return ClusterResult(
            labels=np.zeros(0, dtype=int),
            similarities=np.zeros(0, dtype=np.float64),
            centroids=np.zeros((0, data.shape[1] if data.ndim == 2 else 0)),
            iterations=0,
            requested_k=int(k),
            effective_k=0,
            attempt=attempt,
        )

    normalised = l2_normalise(data)
    usable = np.linalg.norm(normalised, axis=1) > 0.0
    effective_k = min(int(k), _distinct_count(normalised, usable))
    if effective_k == 0:
        return ClusterResult(
            labels=np.full(n, OUTLIER_LABEL, dtype=int),
            similarities=np.zeros(n, dtype=np.float64),
            centroids=np.zeros((0, data.shape[1])),
            iterations=0,
            requested_k=int(k),
            effective_k=0,
            attempt=attempt,
        )

    centroids = _seed_centroids(
        normalised,
        usable,
        effective_k,
        merge_similarity=merge_similarity,
        start=_start_index(normalised, usable, attempt, seed),
    )

    previous: np.ndarray | None = None
    sizes = np.zeros(centroids.shape[0], dtype=int)
    iterations = 0
    labels = np.full(n, OUTLIER_LABEL, dtype=int)
    similarities = np.zeros(n, dtype=np.float64)
    converged = False

    for iterations in range(1, int(max_iterations) + 1):
        labels, similarities = _assign(normalised, centroids, similarity_threshold, sizes)
        if previous is not None and np.array_equal(labels, previous):
            converged = True
            break
        centroids = _recompute(normalised, labels, centroids)
        mapping = _merge_map(centroids, merge_similarity)
        if np.any(mapping != np.arange(mapping.size)):
            labels = _relabel(labels, mapping)
            labels, centroids = _compact(labels, centroids, keep=mapping == np.arange(mapping.size))
            centroids = _recompute(normalised, labels, centroids)
        sizes = np.bincount(labels[labels >= 0], minlength=centroids.shape[0])
        previous = labels

    if not converged:
        changed = n if previous is None else int(np.sum(labels != previous))
        raise ConvergenceError(int(max_iterations), changed)

    occupied = np.bincount(labels[labels >= 0], minlength=centroids.shape[0]) > 0
    labels, centroids = _compact(labels, centroids, keep=occupied)

    return ClusterResult(
        labels=labels,
        similarities=np.clip(similarities, -1.0, 1.0),
        centroids=centroids,
        iterations=iterations,
        requested_k=int(k),
        effective_k=effective_k,
        attempt=attempt,
    )


def cluster_with_retry(
    matrix: Any,
    *,
    k: int,
    similarity_threshold: float,
    max_iterations: int = 100,
    merge_similarity: float = 0.95,
    seed: int = 42,
    attempts: int = 3,
) -> ClusterResult:
    validate_parameters(k, similarity_threshold, max_iterations)
    retrying = Retrying(
        retry=retry_if_exception_type(ConvergenceError),
        stop=stop_after_attempt(max(1, int(attempts))),
        before_sleep=before_sleep_log(_LOGGER, logging.WARNING),
        reraise=True,
    )
    attempt_numbers = itertools.count()

    def _attempt() -> ClusterResult:
        return run_clustering(
            matrix,
            k=k,
            similarity_threshold=similarity_threshold,
            max_iterations=max_iterations,
            merge_similarity=merge_similarity,
            seed=seed,
            attempt=next(attempt_numbers),
        )

    return retrying(_attempt)


def cluster_entities(
    entities: Sequence[tuple[Hashable, Sequence[float]]],
    k: int,
    similarity_threshold: float,
    **options: Any,
) -> tuple[list[tuple[Hashable, int, float]], list[tuple[int, np.ndarray | None, bool]]]:
    """Run clustering over (id, embedding) pairs.

    Returns `(assignments, centroids)` where assignments are
    `(id, cluster_id, similarity)` and centroids are `(cluster_id, vector, is_outlier)`.
    The outlier bucket, when populated, is cluster -1 with no vector.
    """

    ids = [entity_id for entity_id, _ in entities]
    matrix = np.asarray([vector for _, vector in entities], dtype=np.float64)
    result = cluster_with_retry(matrix, k=k, similarity_threshold=similarity_threshold, **options)

    assignments = [
        (entity_id, int(label), float(similarity))
        for entity_id, label, similarity in zip(ids, result.labels, result.similarities)
    ]
    centroids: list[tuple[int, np.ndarray | None, bool]] = [
        (index, result.centroids[index], False) for index in range(result.n_clusters)
    ]
    if result.outlier_count:
        centroids.append((OUTLIER_LABEL, None, True))
    return assignments, centroids


__all__ = [
    "OUTLIER_LABEL",
    "ClusterResult",
    "cluster_entities",
    "cluster_with_retry",
    "cosine_similarities",
    "run_clustering",
    "validate_parameters",
]
