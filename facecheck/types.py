"""Common dataclasses and type aliases used across the facecheck package."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np

# Bounding box order: x1, y1, x2, y2 (pixel coordinates)
BBox = Tuple[float, float, float, float]
Point = Tuple[float, float]

ANGLE_TAGS: Tuple[str, ...] = ("front", "left", "right", "slight-left", "slight-right")


@dataclass
class EmbeddingEntry:
    """One enrollment sample owned by an identity's EnrollmentSet."""

    vector: np.ndarray
    angle: str = "front"
    created_at: float = field(default_factory=time.time)
    quality: float = 0.5
    image: Optional[str] = None

    def __post_init__(self) -> None:
        self.vector = np.asarray(self.vector, dtype=np.float32).reshape(-1)
        if self.angle not in ANGLE_TAGS:
            raise ValueError(f"Unknown angle tag {self.angle!r}; expected one of {ANGLE_TAGS}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vector": [float(v) for v in self.vector],
            "angle": self.angle,
            "created_at": float(self.created_at),
            "quality": float(self.quality),
            "image": self.image,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "EmbeddingEntry":
        return cls(
            vector=np.asarray(payload["vector"], dtype=np.float32),
            angle=payload.get("angle", "front"),
            created_at=float(payload.get("created_at", 0.0)),
            quality=float(payload.get("quality", 0.5)),
            image=payload.get("image"),
        )


@dataclass
class EnrollmentSet:
    """Capacity-bounded, quality-ranked collection of samples for one identity.

    Only the enrollment aggregator builds new sets; callers treat instances as
    read-only values.
    """

    entries: List[EmbeddingEntry] = field(default_factory=list)
    average_vector: Optional[np.ndarray] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    version: str = "progressive-v1"
    source: str = "camera"

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def vectors(self) -> List[np.ndarray]:
        return [entry.vector for entry in self.entries]

    @property
    def dimension(self) -> int:
        return int(self.entries[0].vector.shape[0]) if self.entries else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "source": self.source,
            "created_at": float(self.created_at),
            "updated_at": float(self.updated_at),
            "entries": [entry.to_dict() for entry in self.entries],
            "average_vector": None
            if self.average_vector is None
            else [float(v) for v in self.average_vector],
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "EnrollmentSet":
        average = payload.get("average_vector")
        return cls(
            entries=[EmbeddingEntry.from_dict(item) for item in payload.get("entries", [])],
            average_vector=None if average is None else np.asarray(average, dtype=np.float32),
            created_at=float(payload.get("created_at", 0.0)),
            updated_at=float(payload.get("updated_at", 0.0)),
            version=payload.get("version", "progressive-v1"),
            source=payload.get("source", "camera"),
        )


@dataclass(frozen=True)
class LegacyRepresentation:
    """Single stored vector from the pre-progressive enrollment format."""

    vector: np.ndarray


@dataclass(frozen=True)
class ProgressiveRepresentation:
    """Multi-sample enrollment with an optional precomputed average."""

    entries: Tuple[EmbeddingEntry, ...]
    average_vector: Optional[np.ndarray] = None


EnrollmentRepresentation = Union[LegacyRepresentation, ProgressiveRepresentation]


@dataclass
class Identity:
    """Enrolled person as seen by the engine (owned by an external store)."""

    identity_id: str
    name: str
    legacy_vector: Optional[np.ndarray] = None
    enrollment: Optional[EnrollmentSet] = None
    avatar_url: Optional[str] = None
    last_check_in: Optional[float] = None

    @property
    def representation(self) -> Optional[EnrollmentRepresentation]:
        """Resolve the enrollment fields into a tagged variant.

        A non-empty progressive set wins over the legacy vector.
        """
        if self.enrollment is not None and len(self.enrollment) > 0:
            return ProgressiveRepresentation(
                entries=tuple(self.enrollment.entries),
                average_vector=self.enrollment.average_vector,
            )
        if self.legacy_vector is not None and np.asarray(self.legacy_vector).size > 0:
            return LegacyRepresentation(vector=np.asarray(self.legacy_vector, dtype=np.float32).reshape(-1))
        return None

    @property
    def is_enrolled(self) -> bool:
        return self.representation is not None


@dataclass
class MatchResult:
    """Best identity for a query vector."""

    identity_id: str
    name: str
    distance: float
    similarity: float
    accepted: bool
    displayable: bool = False

    @property
    def confidence_label(self) -> str:
        if self.accepted:
            return "match"
        if self.displayable:
            return "possible"
        return "unknown"


@dataclass
class FaceObservation:
    """A single face reported by the upstream detector for one frame."""

    bbox: BBox
    score: float = 1.0
    landmarks: Optional[np.ndarray] = None
    depth: Optional[float] = None

    @property
    def width(self) -> float:
        return max(0.0, self.bbox[2] - self.bbox[0])

    @property
    def height(self) -> float:
        return max(0.0, self.bbox[3] - self.bbox[1])


@dataclass
class Capture:
    """Output of one frame-source capture."""

    timestamp: float
    frame: Optional[np.ndarray] = None
    faces: List[FaceObservation] = field(default_factory=list)

    @property
    def primary(self) -> Optional[FaceObservation]:
        """Largest face in the frame, or None when nothing was detected."""
        if not self.faces:
            return None
        return max(self.faces, key=lambda face: (bbox_area(face.bbox), face.score))


@dataclass
class LivenessFrame:
    timestamp: float
    landmarks: Optional[np.ndarray] = None
    bbox: Optional[BBox] = None
    depth: Optional[float] = None


@dataclass
class CheckInLogEntry:
    """Display-only record of a recently accepted check-in."""

    entry_id: str
    identity_id: str
    name: str
    timestamp: float
    similarity: float
    avatar_url: Optional[str] = None
    snapshot: Optional[np.ndarray] = None


def l2_normalize(vec: np.ndarray, eps: float = 1e-6) -> np.ndarray:
    """L2-normalize the input vector."""
    norm = np.linalg.norm(vec)
    if norm < eps:
        return vec
    return vec / norm


def bbox_area(box: BBox) -> float:
    """Compute area of a bounding box."""
    x1, y1, x2, y2 = box
    return max(0.0, (x2 - x1)) * max(0.0, (y2 - y1))


def bbox_center(box: BBox) -> Point:
    x1, y1, x2, y2 = box
    return (x1 + x2) / 2.0, (y1 + y2) / 2.0


def crop_to_bbox(image: np.ndarray, bbox: BBox) -> np.ndarray:
    """Crop an image to a bbox, clamped to the image bounds."""
    height, width = image.shape[:2]
    x1, y1, x2, y2 = [int(round(v)) for v in bbox]
    x1, x2 = max(0, x1), min(width, x2)
    y1, y2 = max(0, y1), min(height, y2)
    if x2 <= x1 or y2 <= y1:
        return image[0:0, 0:0]
    return image[y1:y2, x1:x2]
