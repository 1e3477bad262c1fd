import numpy as np
import pytest

from facecheck.config import ProgressiveConfig
from facecheck.recognition.enrollment import (
    APPENDED,
    CREATED,
    REBALANCED,
    REJECTED_CAPACITY,
    REJECTED_DIMENSION,
    REJECTED_QUALITY,
    REJECTED_SIMILARITY,
    REPLACED,
    admit,
    admit_with_reason,
    compute_average_embedding,
    cosine_similarity,
    enrollment_stats,
)
from facecheck.types import EmbeddingEntry, EnrollmentSet


def sample(quality: float, angle: str = "front", offset: float = 0.0, vector=None) -> EmbeddingEntry:
    if vector is None:
        vector = [1.0, offset, 0.0, 0.0]
    return EmbeddingEntry(vector=np.asarray(vector, dtype=np.float32), angle=angle, quality=quality)


def build_set(qualities, angles=None) -> EnrollmentSet:
    angles = angles or ["front"] * len(qualities)
    entries = [sample(q, angle, offset=0.01 * i) for i, (q, angle) in enumerate(zip(qualities, angles))]
    return EnrollmentSet(
        entries=entries,
        average_vector=compute_average_embedding([e.vector for e in entries]),
        created_at=1.0,
        updated_at=1.0,
    )


def test_first_sample_creates_set():
    outcome = admit_with_reason(None, sample(0.9), now=5.0)
    assert outcome.decision == CREATED
    assert outcome.admitted
    assert len(outcome.enrollment) == 1
    np.testing.assert_allclose(outcome.enrollment.average_vector, [1.0, 0.0, 0.0, 0.0], atol=1e-6)
    assert outcome.enrollment.updated_at == 5.0


def test_low_quality_sample_is_rejected_unchanged():
    existing = build_set([0.9, 0.8])
    result = admit(existing, sample(0.65), ProgressiveConfig(min_quality_to_add=0.70))
    assert result is existing
    assert len(existing) == 2

    outcome = admit_with_reason(None, sample(0.65))
    assert outcome.decision == REJECTED_QUALITY
    assert outcome.enrollment is None


def test_append_below_capacity_recomputes_average():
    existing = build_set([0.9])
    outcome = admit_with_reason(existing, sample(0.8, vector=[0.8, 0.6, 0.0, 0.0]), now=10.0)
    assert outcome.decision == APPENDED
    updated = outcome.enrollment
    assert updated is not existing
    assert len(updated) == 2
    assert len(existing) == 1
    assert updated.created_at == 1.0
    assert updated.updated_at == 10.0
    assert np.linalg.norm(updated.average_vector) == pytest.approx(1.0, abs=1e-6)
    expected = compute_average_embedding(updated.vectors)
    np.testing.assert_allclose(updated.average_vector, expected)


def test_dissimilar_sample_is_rejected():
    existing = build_set([0.9, 0.9])
    outcome = admit_with_reason(existing, sample(0.95, vector=[0.0, 0.0, 1.0, 0.0]))
    assert outcome.decision == REJECTED_SIMILARITY
    assert outcome.enrollment is existing


def test_dimension_mismatch_is_rejected():
    existing = build_set([0.9])
    outcome = admit_with_reason(existing, sample(0.95, vector=[1.0, 0.0]))
    assert outcome.decision == REJECTED_DIMENSION
    assert outcome.enrollment is existing


def test_full_set_replaces_worst_at_exact_threshold():
    qualities = [0.9] * 19 + [0.72]
    existing = build_set(qualities)
    candidate = sample(0.82, offset=0.5)
    outcome = admit_with_reason(existing, candidate)
    assert outcome.decision == REPLACED
    assert len(outcome.enrollment) == 20
    assert min(e.quality for e in outcome.enrollment.entries) == pytest.approx(0.82)
    assert outcome.enrollment.entries[19] is candidate


def test_full_set_rejects_marginal_improvement():
    existing = build_set([0.9] * 19 + [0.72])
    outcome = admit_with_reason(existing, sample(0.81))
    assert outcome.decision == REJECTED_CAPACITY
    assert outcome.enrollment is existing


def test_capacity_is_never_exceeded():
    config = ProgressiveConfig(max_embeddings=3)
    enrollment = None
    for i in range(10):
        enrollment = admit(enrollment, sample(0.75 + 0.02 * i, offset=0.01 * i), config)
        assert len(enrollment) <= 3
    assert len(enrollment) == 3


def test_replace_prefers_oldest_among_equal_quality():
    existing = build_set([0.75, 0.8, 0.75], angles=["front", "front", "front"])
    config = ProgressiveConfig(max_embeddings=3)
    candidate = sample(0.9)
    outcome = admit_with_reason(existing, candidate, config)
    assert outcome.decision == REPLACED
    assert outcome.enrollment.entries[0] is candidate
    assert outcome.enrollment.entries[2] is existing.entries[2]


def test_angle_rebalancing_is_opt_in():
    qualities = [0.9, 0.78, 0.9, 0.75]
    angles = ["front", "front", "front", "left"]
    existing = build_set(qualities, angles)
    candidate = sample(0.8, angle="right")

    plain = admit_with_reason(existing, candidate, ProgressiveConfig(max_embeddings=4))
    assert plain.decision == REJECTED_CAPACITY

    balanced = admit_with_reason(existing, candidate, ProgressiveConfig(max_embeddings=4, balance_angles=True))
    assert balanced.decision == REBALANCED
    assert balanced.enrollment.entries[1] is candidate
    assert [e.angle for e in balanced.enrollment.entries] == ["front", "right", "front", "left"]


def test_repeated_rejection_is_idempotent():
    existing = build_set([0.9, 0.9])
    low = sample(0.5)
    assert admit(admit(existing, low), low) is existing


def test_cosine_similarity_edge_cases():
    assert cosine_similarity(np.array([1.0, 0.0]), np.array([2.0, 0.0])) == pytest.approx(1.0)
    assert cosine_similarity(np.array([1.0, 0.0]), np.array([0.0, 0.0])) == 0.0
    assert cosine_similarity(np.array([1.0, 0.0]), np.array([1.0, 0.0, 0.0])) == 0.0


def test_enrollment_stats():
    empty = enrollment_stats(None)
    assert empty.count == 0
    assert empty.angles == {}

    stats = enrollment_stats(build_set([0.8, 0.6], angles=["front", "left"]))
    assert stats.count == 2
    assert stats.mean_quality == pytest.approx(0.7)
    assert stats.angles == {"front": 1, "left": 1}


def test_enrollment_set_dict_round_trip_keeps_entries():
    original = build_set([0.8, 0.9], angles=["front", "slight-left"])
    restored = EnrollmentSet.from_dict(original.to_dict())
    assert [e.angle for e in restored.entries] == ["front", "slight-left"]
    np.testing.assert_allclose(restored.average_vector, original.average_vector)


def test_unknown_angle_tag_is_rejected():
    with pytest.raises(ValueError):
        EmbeddingEntry(vector=np.zeros(4), angle="upside-down")
