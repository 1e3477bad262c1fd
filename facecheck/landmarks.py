"""Landmark layouts and the geometric measurements taken from them.

Two layouts are recognised by point count:

* ``IBUG_68`` - the classic 68-point annotation (2D, optional z column).
* ``MESH_468`` - the dense face mesh, 3D with z scaled to pixel units.

Every helper returns ``None`` when the landmarks do not match a known layout
or the geometry is degenerate, so callers can treat the measurement as absent.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

EyeIndices = Tuple[int, int, int, int, int, int]


@dataclass(frozen=True)
class LandmarkLayout:
    name: str
    min_points: int
    # p1..p6 ordered as outer corner, upper x2, inner corner, lower x2
    left_eye: EyeIndices
    right_eye: EyeIndices
    left_eye_corner: int
    right_eye_corner: int
    nose_tip: int
    nose_bridge: int
    chin: int
    forehead: Tuple[int, ...]
    left_brow: int
    right_brow: int
    mouth_left: int
    mouth_right: int
    upper_lip: int
    lower_lip: int
    jaw_left: int
    jaw_right: int
    has_depth: bool


IBUG_68 = LandmarkLayout(
    name="ibug68",
    min_points=68,
    left_eye=(36, 37, 38, 39, 40, 41),
    right_eye=(42, 43, 44, 45, 46, 47),
    left_eye_corner=36,
    right_eye_corner=45,
    nose_tip=30,
    nose_bridge=27,
    chin=8,
    forehead=(19, 24),
    left_brow=19,
    right_brow=24,
    mouth_left=48,
    mouth_right=54,
    upper_lip=51,
    lower_lip=57,
    jaw_left=0,
    jaw_right=16,
    has_depth=False,
)

MESH_468 = LandmarkLayout(
    name="mesh468",
    min_points=468,
    left_eye=(33, 160, 158, 133, 153, 144),
    right_eye=(362, 385, 387, 263, 373, 380),
    left_eye_corner=33,
    right_eye_corner=263,
    nose_tip=4,
    nose_bridge=6,
    chin=152,
    forehead=(10,),
    left_brow=105,
    right_brow=334,
    mouth_left=61,
    mouth_right=291,
    upper_lip=13,
    lower_lip=14,
    jaw_left=234,
    jaw_right=454,
    has_depth=True,
)

# Nose tip, eye corners, chin
DEPTH_KEYPOINTS = (MESH_468.nose_tip, MESH_468.left_eye_corner, MESH_468.right_eye_corner, MESH_468.chin)


def as_points(landmarks: Optional[np.ndarray]) -> Optional[np.ndarray]:
    if landmarks is None:
        return None
    pts = np.asarray(landmarks, dtype=np.float64)
    if pts.ndim != 2 or pts.shape[1] < 2:
        return None
    return pts


def layout_for(landmarks: Optional[np.ndarray]) -> Optional[LandmarkLayout]:
    pts = as_points(landmarks)
    if pts is None:
        return None
    count = pts.shape[0]
    if count >= MESH_468.min_points:
        return MESH_468
    if count >= IBUG_68.min_points:
        return IBUG_68
    return None


def _dist(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.hypot(a[0] - b[0], a[1] - b[1]))


def _eye_ratio(pts: np.ndarray, eye: EyeIndices) -> Optional[float]:
    p1, p2, p3, p4, p5, p6 = (pts[i] for i in eye)
    horizontal = _dist(p1, p4)
    if horizontal <= 1e-9:
        return None
    return (_dist(p2, p6) + _dist(p3, p5)) / (2.0 * horizontal)


def eye_aspect_ratio(landmarks: Optional[np.ndarray]) -> Optional[float]:
    """Mean EAR of both eyes: (|p2-p6| + |p3-p5|) / (2 |p1-p4|)."""
    layout = layout_for(landmarks)
    if layout is None:
        return None
    pts = as_points(landmarks)
    left = _eye_ratio(pts, layout.left_eye)
    right = _eye_ratio(pts, layout.right_eye)
    if left is None or right is None:
        return None
    return (left + right) / 2.0


def has_depth(landmarks: Optional[np.ndarray]) -> bool:
    layout = layout_for(landmarks)
    pts = as_points(landmarks)
    return bool(layout is not None and layout.has_depth and pts.shape[1] >= 3)


def face_depth(landmarks: Optional[np.ndarray]) -> Optional[float]:
    """Mean |z| over the nose tip, eye corners and chin of a 3D mesh."""
    if not has_depth(landmarks):
        return None
    pts = as_points(landmarks)
    return float(np.mean(np.abs(pts[list(DEPTH_KEYPOINTS), 2])))


def head_pose(landmarks: Optional[np.ndarray], mirrored: bool = False) -> Optional[Tuple[float, float, float]]:
    """Estimate (pitch, yaw, roll) in degrees from landmark triangulation."""
    layout = layout_for(landmarks)
    if layout is None:
        return None
    pts = as_points(landmarks)
    left_eye = pts[layout.left_eye_corner]
    right_eye = pts[layout.right_eye_corner]
    nose = pts[layout.nose_tip]
    chin = pts[layout.chin]
    forehead = pts[list(layout.forehead)].mean(axis=0)

    roll = math.degrees(math.atan2(right_eye[1] - left_eye[1], right_eye[0] - left_eye[0]))

    if layout.has_depth and pts.shape[1] >= 3:
        vertical = forehead[:3] - chin[:3]
        # Upright face: forehead above chin at equal depth -> 0 degrees.
        pitch = math.degrees(math.atan2(vertical[2], abs(vertical[1])))
        center_x = (left_eye[0] + right_eye[0]) / 2.0
        yaw = math.degrees(math.atan2(nose[0] - center_x, abs(nose[2])))
    else:
        eye_width = abs(right_eye[0] - left_eye[0])
        if eye_width <= 1e-9:
            return None
        center_x = (left_eye[0] + right_eye[0]) / 2.0
        yaw = (nose[0] - center_x) / eye_width * 60.0
        to_forehead = abs(nose[1] - forehead[1])
        to_chin = abs(chin[1] - nose[1])
        span = to_chin + to_forehead
        pitch = 0.0 if span <= 1e-9 else (to_chin - to_forehead) / span * 45.0

    if mirrored:
        yaw = -yaw
    return pitch, yaw, roll


def estimate_angle_category(landmarks: Optional[np.ndarray]) -> str:
    """Bucket the head yaw into one of the enrollment angle tags."""
    pose = head_pose(landmarks)
    if pose is None:
        return "front"
    yaw = pose[1]
    if abs(yaw) < 10:
        return "front"
    if yaw < -25:
        return "left"
    if yaw > 25:
        return "right"
    if yaw < -10:
        return "slight-left"
    return "slight-right"
