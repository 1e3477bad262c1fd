"""Euclidean nearest-identity matcher over legacy and progressive enrollments."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from facecheck.config import MatchConfig
from facecheck.types import (
    EnrollmentRepresentation,
    Identity,
    LegacyRepresentation,
    MatchResult,
    ProgressiveRepresentation,
)

LOGGER = logging.getLogger("facecheck.recognition.matcher")


@dataclass(frozen=True)
class Candidate:
    """An identity resolved to the flat list of vectors it is compared by."""

    identity_id: str
    name: str
    vectors: Tuple[np.ndarray, ...]


@dataclass(frozen=True)
class GapMatch:
    best: Optional[MatchResult]
    second_distance: Optional[float]
    gap: Optional[float]
    confident: bool


def _as_vector(values) -> Optional[np.ndarray]:
    if values is None:
        return None
    try:
        arr = np.asarray(values, dtype=np.float32).reshape(-1)
    except (TypeError, ValueError):
        return None
    if arr.size == 0 or not np.all(np.isfinite(arr)):
        return None
    return arr


def euclidean_distance(a: np.ndarray, b: np.ndarray) -> Optional[float]:
    """L2 distance, or None when the vectors are empty or of different lengths."""
    va = _as_vector(a)
    vb = _as_vector(b)
    if va is None or vb is None or va.shape != vb.shape:
        return None
    return float(np.linalg.norm(va - vb))


def distance_to_similarity(distance: float, scale: float = 1.5) -> float:
    return float(min(1.0, max(0.0, 1.0 - distance / scale)))


def comparison_vectors(
    representation: Optional[EnrollmentRepresentation], use_average: bool = True
) -> Tuple[np.ndarray, ...]:
    if representation is None:
        return ()
    if isinstance(representation, LegacyRepresentation):
        vec = _as_vector(representation.vector)
        return (vec,) if vec is not None else ()
    if isinstance(representation, ProgressiveRepresentation):
        vectors: List[np.ndarray] = []
        if use_average:
            avg = _as_vector(representation.average_vector)
            if avg is not None:
                vectors.append(avg)
        for entry in representation.entries:
            vec = _as_vector(entry.vector)
            if vec is not None:
                vectors.append(vec)
        return tuple(vectors)
    raise TypeError(f"Unsupported enrollment representation {type(representation).__name__}")


def resolve_candidates(identities: Iterable[Identity], use_average: bool = True) -> List[Candidate]:
    """Resolve each identity once; identities without vectors are dropped."""
    candidates: List[Candidate] = []
    for identity in identities:
        vectors = comparison_vectors(identity.representation, use_average=use_average)
        if vectors:
            candidates.append(Candidate(identity.identity_id, identity.name, vectors))
    return candidates


def rank(query: np.ndarray, candidates: Sequence[Candidate]) -> List[Tuple[Candidate, float]]:
    """Per-identity minimum distance, ascending; equal distances keep input order."""
    vec = _as_vector(query)
    if vec is None:
        return []
    scored: List[Tuple[Candidate, float]] = []
    for candidate in candidates:
        best: Optional[float] = None
        for other in candidate.vectors:
            if other.shape != vec.shape:
                continue
            distance = float(np.linalg.norm(vec - other))
            if best is None or distance < best:
                best = distance
        if best is not None:
            scored.append((candidate, best))
    scored.sort(key=lambda item: item[1])
    return scored


def _result(candidate: Candidate, distance: float, config: MatchConfig) -> MatchResult:
    return MatchResult(
        identity_id=candidate.identity_id,
        name=candidate.name,
        distance=distance,
        similarity=distance_to_similarity(distance, config.similarity_scale),
        accepted=distance <= config.threshold,
        displayable=distance <= config.display_threshold,
    )


def match(
    query: np.ndarray, candidates: Sequence[Candidate], config: Optional[MatchConfig] = None
) -> Optional[MatchResult]:
    """Best identity for ``query``; None when nothing is comparable. Never raises."""
    config = config or MatchConfig()
    ranked = rank(query, candidates)
    if not ranked:
        return None
    candidate, distance = ranked[0]
    return _result(candidate, distance, config)


def match_with_gap(
    query: np.ndarray, candidates: Sequence[Candidate], config: Optional[MatchConfig] = None
) -> GapMatch:
    """Best match plus whether the runner-up is at least ``min_confidence_gap`` further away."""
    config = config or MatchConfig()
    ranked = rank(query, candidates)
    if not ranked:
        return GapMatch(best=None, second_distance=None, gap=None, confident=False)
    best = _result(ranked[0][0], ranked[0][1], config)
    if len(ranked) == 1:
        return GapMatch(best=best, second_distance=None, gap=None, confident=best.accepted)
    second = ranked[1][1]
    gap = second - best.distance
    return GapMatch(
        best=best,
        second_distance=second,
        gap=gap,
        confident=best.accepted and gap >= config.min_confidence_gap,
    )


def topk(
    query: np.ndarray, candidates: Sequence[Candidate], k: int = 3, config: Optional[MatchConfig] = None
) -> List[MatchResult]:
    """Top-k identities without applying the acceptance threshold."""
    config = config or MatchConfig()
    return [_result(candidate, distance, config) for candidate, distance in rank(query, candidates)[:k]]


class IdentityMatcher:
    """Holds an immutable snapshot of resolved candidates between store updates."""

    def __init__(self, identities: Iterable[Identity] = (), config: Optional[MatchConfig] = None) -> None:
        self.config = config or MatchConfig()
        self._candidates: Tuple[Candidate, ...] = ()
        self.update(identities)

    def update(self, identities: Iterable[Identity]) -> None:
        # Swap the whole tuple so an in-progress match keeps its own snapshot.
        self._candidates = tuple(resolve_candidates(identities, self.config.use_average_vector))
        LOGGER.debug("Matcher snapshot updated: %d enrolled identities", len(self._candidates))

    @property
    def candidates(self) -> Tuple[Candidate, ...]:
        return self._candidates

    def __len__(self) -> int:
        return len(self._candidates)

    def match(self, query: np.ndarray) -> Optional[MatchResult]:
        candidates = self._candidates
        if self.config.require_confidence_gap:
            gap = match_with_gap(query, candidates, self.config)
            if gap.best is not None and gap.best.accepted and not gap.confident:
                LOGGER.debug(
                    "Rejecting %s: confidence gap %.3f below %.3f",
                    gap.best.identity_id,
                    gap.gap if gap.gap is not None else float("nan"),
                    self.config.min_confidence_gap,
                )
                gap.best.accepted = False
            return gap.best
        return match(query, candidates, self.config)

    def topk(self, query: np.ndarray, k: int = 3) -> List[MatchResult]:
        return topk(query, self._candidates, k=k, config=self.config)
