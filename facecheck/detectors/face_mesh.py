"""Dense 468-point face mesh via the MediaPipe FaceLandmarker task."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import cv2
import numpy as np

from facecheck.errors import ModelLoadFailure
from facecheck.types import FaceObservation

LOGGER = logging.getLogger("facecheck.detectors.mesh")

MESH_POINTS = 468


def landmarks_to_pixels(points: np.ndarray, width: int, height: int) -> np.ndarray:
    """Scale normalised (x, y, z) to pixels; z shares the x scale."""
    pts = np.asarray(points, dtype=np.float32)[:MESH_POINTS].copy()
    pts[:, 0] *= width
    pts[:, 1] *= height
    if pts.shape[1] > 2:
        pts[:, 2] *= width
    return pts


def mesh_bbox(points: np.ndarray, width: int, height: int):
    x1, y1 = float(np.clip(points[:, 0].min(), 0, width)), float(np.clip(points[:, 1].min(), 0, height))
    x2, y2 = float(np.clip(points[:, 0].max(), 0, width)), float(np.clip(points[:, 1].max(), 0, height))
    return (x1, y1, x2, y2)


class FaceMeshDetector:
    """Needs the ``face_landmarker.task`` model bundle on disk."""

    def __init__(self, model_path: Path, max_faces: int = 1, min_detection_confidence: float = 0.5) -> None:
        self.model_path = Path(model_path)
        self.max_faces = max_faces
        self.min_detection_confidence = min_detection_confidence
        self.landmarker = None

    def ensure_ready(self) -> None:
        if self.landmarker is not None:
            return
        try:
            from mediapipe.tasks.python import BaseOptions, vision
        except ImportError as exc:
            raise ModelLoadFailure(
                "mediapipe is required for FaceMeshDetector. Install it via `pip install facecheck-engine[mesh]`."
            ) from exc
        if not self.model_path.exists():
            raise ModelLoadFailure(f"FaceLandmarker model not found: {self.model_path}")
        options = vision.FaceLandmarkerOptions(
            base_options=BaseOptions(model_asset_path=str(self.model_path)),
            num_faces=self.max_faces,
            min_face_detection_confidence=self.min_detection_confidence,
            output_face_blendshapes=False,
            output_facial_transformation_matrixes=False,
        )
        try:
            self.landmarker = vision.FaceLandmarker.create_from_options(options)
        except Exception as exc:
            raise ModelLoadFailure(f"FaceLandmarker failed to load: {exc}") from exc
        LOGGER.info("Loaded FaceLandmarker from %s (max_faces=%d)", self.model_path, self.max_faces)

    def detect(self, image: np.ndarray) -> List[FaceObservation]:
        """Run the landmarker on a BGR image."""
        self.ensure_ready()
        import mediapipe as mp

        height, width = image.shape[:2]
        rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
        result = self.landmarker.detect(mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb))
        faces: List[FaceObservation] = []
        for landmarks in result.face_landmarks or []:
            raw = np.array([[p.x, p.y, p.z] for p in landmarks], dtype=np.float32)
            if raw.shape[0] < MESH_POINTS:
                LOGGER.debug("Dropping mesh with %d points", raw.shape[0])
                continue
            points = landmarks_to_pixels(raw, width, height)
            faces.append(FaceObservation(bbox=mesh_bbox(points, width, height), landmarks=points))
        return faces

    def close(self) -> None:
        if self.landmarker is not None:
            self.landmarker.close()
            self.landmarker = None
