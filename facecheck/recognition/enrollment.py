"""Progressive enrollment: bounded, quality-ranked sample sets per identity."""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from facecheck.config import ProgressiveConfig
from facecheck.types import EmbeddingEntry, EnrollmentSet

LOGGER = logging.getLogger("facecheck.recognition.enrollment")

# Quality values are compared after subtraction; absorb float rounding (0.82 - 0.72).
QUALITY_TOLERANCE = 1e-9

CREATED = "created"
APPENDED = "appended"
REPLACED = "replaced"
REBALANCED = "rebalanced"
REJECTED_QUALITY = "rejected-quality"
REJECTED_SIMILARITY = "rejected-similarity"
REJECTED_DIMENSION = "rejected-dimension"
REJECTED_CAPACITY = "rejected-capacity"


@dataclass(frozen=True)
class AdmitResult:
    enrollment: Optional[EnrollmentSet]
    decision: str

    @property
    def admitted(self) -> bool:
        return not self.decision.startswith("rejected")


@dataclass(frozen=True)
class EnrollmentStats:
    count: int
    mean_quality: float
    angles: Dict[str, int]
    oldest: Optional[float]
    newest: Optional[float]


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine of the angle between a and b; 0 for empty, mismatched or zero vectors."""
    va = np.asarray(a, dtype=np.float64).reshape(-1)
    vb = np.asarray(b, dtype=np.float64).reshape(-1)
    if va.size == 0 or va.shape != vb.shape:
        return 0.0
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def compute_average_embedding(vectors: Sequence[np.ndarray]) -> Optional[np.ndarray]:
    """Component-wise mean, L2-normalised when non-zero."""
    if not vectors:
        return None
    stacked = np.stack([np.asarray(v, dtype=np.float32).reshape(-1) for v in vectors], axis=0)
    mean = stacked.mean(axis=0)
    norm = float(np.linalg.norm(mean))
    if norm > 0:
        mean = mean / norm
    return mean.astype(np.float32)


def _rebuild(existing: EnrollmentSet, entries: List[EmbeddingEntry], now: float) -> EnrollmentSet:
    return EnrollmentSet(
        entries=entries,
        average_vector=compute_average_embedding([entry.vector for entry in entries]),
        created_at=existing.created_at,
        updated_at=now,
        version=existing.version,
        source=existing.source,
    )


def _weakest(entries: Sequence[EmbeddingEntry], indices: Optional[Sequence[int]] = None) -> Tuple[int, float]:
    pool = range(len(entries)) if indices is None else indices
    # Ties keep the earliest (oldest) entry.
    index = min(pool, key=lambda i: (entries[i].quality, i))
    return index, entries[index].quality


def _rebalance_index(entries: Sequence[EmbeddingEntry], candidate: EmbeddingEntry) -> Optional[int]:
    counts = Counter(entry.angle for entry in entries)
    per_angle = len(entries) / len(counts)
    if counts.get(candidate.angle, 0) >= per_angle * 0.5:
        return None
    crowded = [i for i, entry in enumerate(entries) if counts[entry.angle] > per_angle]
    if not crowded:
        return None
    index, quality = _weakest(entries, crowded)
    return index if candidate.quality > quality else None


def admit_with_reason(
    existing: Optional[EnrollmentSet],
    candidate: EmbeddingEntry,
    config: Optional[ProgressiveConfig] = None,
    now: Optional[float] = None,
) -> AdmitResult:
    """Apply the admission policy and report which branch decided it.

    Rejections hand back ``existing`` itself, never a copy.
    """
    config = config or ProgressiveConfig()
    now = time.time() if now is None else now

    if candidate.quality < config.min_quality_to_add:
        return AdmitResult(existing, REJECTED_QUALITY)

    if existing is None or len(existing) == 0:
        base = existing or EnrollmentSet(created_at=now, updated_at=now)
        return AdmitResult(_rebuild(base, [candidate], now), CREATED)

    if candidate.vector.shape[0] != existing.dimension:
        return AdmitResult(existing, REJECTED_DIMENSION)

    reference = existing.average_vector
    if reference is None or np.asarray(reference).size != existing.dimension:
        reference = compute_average_embedding(existing.vectors)
    if cosine_similarity(candidate.vector, reference) < config.min_similarity_to_add:
        return AdmitResult(existing, REJECTED_SIMILARITY)

    entries = list(existing.entries)
    if len(entries) < config.max_embeddings:
        entries.append(candidate)
        return AdmitResult(_rebuild(existing, entries, now), APPENDED)

    # Over-capacity sets (e.g. after lowering max_embeddings) never grow.
    index, worst = _weakest(entries)
    if candidate.quality - worst >= config.replace_threshold - QUALITY_TOLERANCE:
        entries[index] = candidate
        return AdmitResult(_rebuild(existing, entries, now), REPLACED)

    if config.balance_angles:
        index = _rebalance_index(entries, candidate)
        if index is not None:
            entries[index] = candidate
            return AdmitResult(_rebuild(existing, entries, now), REBALANCED)

    return AdmitResult(existing, REJECTED_CAPACITY)


def admit(
    existing: Optional[EnrollmentSet],
    candidate: EmbeddingEntry,
    config: Optional[ProgressiveConfig] = None,
    now: Optional[float] = None,
) -> Optional[EnrollmentSet]:
    return admit_with_reason(existing, candidate, config, now).enrollment


def enrollment_stats(enrollment: Optional[EnrollmentSet]) -> EnrollmentStats:
    if enrollment is None or len(enrollment) == 0:
        return EnrollmentStats(count=0, mean_quality=0.0, angles={}, oldest=None, newest=None)
    entries = enrollment.entries
    created = [entry.created_at for entry in entries]
    return EnrollmentStats(
        count=len(entries),
        mean_quality=float(np.mean([entry.quality for entry in entries])),
        angles=dict(Counter(entry.angle for entry in entries)),
        oldest=min(created),
        newest=max(created),
    )
