"""Geometry embedding built from a dense 3D landmark mesh.

The vector is a fixed battery of distances, angles and ratios between named
anatomical points, scaled by the inter-eye distance, followed by z-offsets of
key points relative to their mean depth. Remaining slots are filled with
pairwise products of the base features before L2 normalisation.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from facecheck.errors import InsufficientLandmarks, NoFaceDetected
from facecheck.landmarks import MESH_468, as_points
from facecheck.types import FaceObservation, l2_normalize

LOGGER = logging.getLogger("facecheck.embedding.geometry")

# Named mesh points beyond the shared layout fields.
MESH_POINTS: Dict[str, int] = {
    "left_eye_outer": MESH_468.left_eye_corner,
    "left_eye_inner": 133,
    "left_eye_top": 159,
    "left_eye_bottom": 145,
    "right_eye_outer": MESH_468.right_eye_corner,
    "right_eye_inner": 362,
    "right_eye_top": 386,
    "right_eye_bottom": 374,
    "left_brow": MESH_468.left_brow,
    "right_brow": MESH_468.right_brow,
    "left_brow_inner": 55,
    "right_brow_inner": 285,
    "nose_tip": MESH_468.nose_tip,
    "nose_bridge": MESH_468.nose_bridge,
    "nose_left": 98,
    "nose_right": 327,
    "mouth_left": MESH_468.mouth_left,
    "mouth_right": MESH_468.mouth_right,
    "upper_lip": MESH_468.upper_lip,
    "lower_lip": MESH_468.lower_lip,
    "chin": MESH_468.chin,
    "forehead": MESH_468.forehead[0],
    "jaw_left": MESH_468.jaw_left,
    "jaw_right": MESH_468.jaw_right,
    "left_cheek": 50,
    "right_cheek": 280,
}

DISTANCE_PAIRS: Tuple[Tuple[str, str], ...] = (
    ("left_eye_outer", "left_eye_inner"),
    ("right_eye_outer", "right_eye_inner"),
    ("left_eye_top", "left_eye_bottom"),
    ("right_eye_top", "right_eye_bottom"),
    ("left_brow", "left_eye_top"),
    ("right_brow", "right_eye_top"),
    ("left_brow_inner", "right_brow_inner"),
    ("nose_bridge", "nose_tip"),
    ("nose_left", "nose_right"),
    ("mouth_left", "mouth_right"),
    ("upper_lip", "lower_lip"),
    ("nose_tip", "upper_lip"),
    ("lower_lip", "chin"),
    ("forehead", "chin"),
    ("jaw_left", "jaw_right"),
    ("left_cheek", "right_cheek"),
    ("left_eye_outer", "mouth_left"),
    ("right_eye_outer", "mouth_right"),
    ("nose_tip", "left_eye_outer"),
    ("nose_tip", "right_eye_outer"),
    ("chin", "jaw_left"),
    ("chin", "jaw_right"),
    ("forehead", "nose_bridge"),
)

# Angle at the middle point of each triple.
ANGLE_TRIPLES: Tuple[Tuple[str, str, str], ...] = (
    ("left_eye_outer", "nose_tip", "right_eye_outer"),
    ("mouth_left", "nose_tip", "mouth_right"),
    ("jaw_left", "chin", "jaw_right"),
    ("left_eye_outer", "chin", "right_eye_outer"),
    ("nose_left", "nose_tip", "nose_right"),
    ("left_brow", "nose_bridge", "right_brow"),
    ("mouth_left", "chin", "mouth_right"),
)

DEPTH_POINTS: Tuple[str, ...] = (
    "nose_tip",
    "nose_bridge",
    "chin",
    "forehead",
    "left_eye_outer",
    "right_eye_outer",
    "mouth_left",
    "mouth_right",
    "jaw_left",
    "jaw_right",
    "left_brow",
    "right_brow",
    "left_cheek",
    "right_cheek",
)


def _angle(a: np.ndarray, vertex: np.ndarray, b: np.ndarray) -> float:
    u = a - vertex
    v = b - vertex
    denom = float(np.linalg.norm(u) * np.linalg.norm(v))
    if denom <= 1e-12:
        return 0.0
    cos = float(np.clip(np.dot(u, v) / denom, -1.0, 1.0))
    return math.acos(cos) / math.pi


def _interaction_terms(features: Sequence[float], needed: int) -> List[float]:
    terms: List[float] = []
    count = len(features)
    for i in range(count):
        for j in range(i + 1, count):
            if len(terms) >= needed:
                return terms
            terms.append(features[i] * features[j])
    return terms


class LandmarkGeometryExtractor:
    """Scale-invariant geometric descriptor over a 468-point mesh."""

    name = "geometry"

    def __init__(self, dimension: int = 128, min_points: int = MESH_468.min_points) -> None:
        self.dimension = int(dimension)
        self.min_points = int(min_points)

    def ensure_ready(self) -> None:
        return None

    def base_features(self, landmarks: np.ndarray) -> List[float]:
        pts = as_points(landmarks)
        if pts is None:
            raise NoFaceDetected("No landmarks supplied")
        if pts.shape[0] < self.min_points:
            raise InsufficientLandmarks(pts.shape[0], self.min_points)
        if pts.shape[1] < 3:
            pts = np.hstack([pts[:, :2], np.zeros((pts.shape[0], 1))])

        named = {key: pts[idx, :3] for key, idx in MESH_POINTS.items()}
        left_eye = (named["left_eye_outer"] + named["left_eye_inner"]) / 2.0
        right_eye = (named["right_eye_outer"] + named["right_eye_inner"]) / 2.0
        inter_eye = float(np.linalg.norm((right_eye - left_eye)[:2]))
        if inter_eye <= 1e-6:
            raise NoFaceDetected("Degenerate landmark geometry (zero inter-eye distance)")

        def planar(name_a: str, name_b: str) -> float:
            return float(np.linalg.norm((named[name_a] - named[name_b])[:2])) / inter_eye

        distances = [planar(a, b) for a, b in DISTANCE_PAIRS]
        angles = [_angle(named[a][:2], named[v][:2], named[b][:2]) for a, v, b in ANGLE_TRIPLES]

        face_height = planar("forehead", "chin")
        jaw_width = planar("jaw_left", "jaw_right")
        nose_width = planar("nose_left", "nose_right")
        left_eye_width = planar("left_eye_outer", "left_eye_inner")
        right_eye_width = planar("right_eye_outer", "right_eye_inner")
        upper_face = planar("forehead", "nose_tip")
        ratios = [
            face_height / jaw_width if jaw_width > 1e-6 else 0.0,
            planar("mouth_left", "mouth_right") / nose_width if nose_width > 1e-6 else 0.0,
            left_eye_width / right_eye_width if right_eye_width > 1e-6 else 0.0,
            upper_face / face_height if face_height > 1e-6 else 0.0,
        ]

        depths = np.array([named[key][2] for key in DEPTH_POINTS], dtype=np.float64)
        z_offsets = list((depths - depths.mean()) / inter_eye)

        return [float(v) for v in distances + angles + ratios + z_offsets]

    def embed_landmarks(self, landmarks: np.ndarray) -> np.ndarray:
        features = self.base_features(landmarks)
        if len(features) < self.dimension:
            features.extend(_interaction_terms(features, self.dimension - len(features)))
        vector = np.zeros((self.dimension,), dtype=np.float32)
        used = min(len(features), self.dimension)
        vector[:used] = np.asarray(features[:used], dtype=np.float32)
        return l2_normalize(vector).astype(np.float32)

    def extract(self, frame: Optional[np.ndarray], face: Optional[FaceObservation]) -> np.ndarray:
        if face is None or face.landmarks is None:
            raise NoFaceDetected("No face landmarks detected")
        return self.embed_landmarks(face.landmarks)
