"""Quality scoring for enrollment samples."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import cv2
import numpy as np

from facecheck.config import QualityConfig
from facecheck.embedding.pixel_grid import to_luminance
from facecheck.landmarks import head_pose
from facecheck.types import FaceObservation, crop_to_bbox

LOGGER = logging.getLogger("facecheck.recognition.quality")


@dataclass
class QualityAssessment:
    score: float
    issues: List[str] = field(default_factory=list)
    face_size: Tuple[float, float] = (0.0, 0.0)
    confidence: float = 0.0
    brightness: Optional[float] = None
    sharpness: Optional[float] = None
    pose: Optional[Tuple[float, float, float]] = None

    @property
    def is_valid(self) -> bool:
        return not self.issues


def compute_sharpness(region: np.ndarray) -> float:
    gray = region if region.ndim == 2 else cv2.cvtColor(region, cv2.COLOR_BGR2GRAY)
    return float(cv2.Laplacian(gray, cv2.CV_64F).var())


def assess_quality(
    frame: Optional[np.ndarray],
    face: FaceObservation,
    config: Optional[QualityConfig] = None,
) -> QualityAssessment:
    """Start at 1.0 and subtract a fixed penalty per failed check; floor at 0."""
    config = config or QualityConfig()
    score = 1.0
    issues: List[str] = []

    if face.width < config.min_face_size or face.height < config.min_face_size:
        issues.append("face too small")
        score -= 0.3

    if face.score < config.min_confidence:
        issues.append("low detection confidence")
        score -= 0.2

    brightness: Optional[float] = None
    sharpness: Optional[float] = None
    if frame is not None:
        region = crop_to_bbox(frame, face.bbox)
        if region.size:
            brightness = float(to_luminance(region).mean())
            if not config.min_brightness <= brightness <= config.max_brightness:
                issues.append("poor lighting")
                score -= 0.2
            if config.min_sharpness is not None:
                sharpness = compute_sharpness(region)
                if sharpness < config.min_sharpness:
                    issues.append("image blurry")
                    score -= 0.2

    pose = head_pose(face.landmarks) if face.landmarks is not None else None
    if pose is not None:
        pitch, yaw, roll = pose
        if abs(yaw) > config.max_face_angle or abs(pitch) > config.max_face_angle or abs(roll) > config.max_roll:
            issues.append("head turned too far")
            score -= 0.2

    assessment = QualityAssessment(
        score=max(0.0, score),
        issues=issues,
        face_size=(face.width, face.height),
        confidence=face.score,
        brightness=brightness,
        sharpness=sharpness,
        pose=pose,
    )
    LOGGER.debug("Quality %.2f issues=%s", assessment.score, issues)
    return assessment
