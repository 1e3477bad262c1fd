"""RetinaFace detection and 5-point alignment."""

from __future__ import annotations

import logging
import os
import platform
from typing import List, Optional, Tuple

import cv2
import numpy as np

from facecheck.errors import ModelLoadFailure
from facecheck.types import BBox, FaceObservation, crop_to_bbox

LOGGER = logging.getLogger("facecheck.detectors.face")


def default_providers() -> Tuple[str, ...]:
    """Choose default ONNX providers based on platform."""
    system = platform.system()
    machine = platform.machine().lower()
    if system == "Darwin" and machine in {"arm64", "aarch64"}:
        return ("CoreMLExecutionProvider", "CPUExecutionProvider")
    return ("CPUExecutionProvider",)


# ArcFace reference points for a 112x112 crop: eyes, nose, mouth corners.
ARCFACE_REFERENCE = np.array(
    [
        [38.2946, 51.6963],
        [73.5318, 51.5014],
        [56.0252, 71.7366],
        [41.5493, 92.3655],
        [70.7299, 92.2041],
    ],
    dtype=np.float32,
)


class RetinaFaceDetector:
    """InsightFace RetinaFace wrapper; the model loads on first use."""

    def __init__(
        self,
        providers: Optional[Tuple[str, ...]] = None,
        det_size: Tuple[int, int] = (640, 640),
        det_thresh: float = 0.5,
    ) -> None:
        self.det_size = det_size
        self.det_thresh = det_thresh
        self.providers = tuple(providers) if providers is not None else default_providers()
        self.app = None

    def ensure_ready(self) -> None:
        if self.app is not None:
            return
        os.environ.setdefault("OMP_NUM_THREADS", "2")
        os.environ.setdefault("MKL_NUM_THREADS", "2")
        os.environ.setdefault("ORT_INTRA_OP_NUM_THREADS", "2")
        try:
            from insightface.app import FaceAnalysis
        except ImportError as exc:
            raise ModelLoadFailure(
                "insightface is required for RetinaFaceDetector. Install it via `pip install insightface`."
            ) from exc
        try:
            app = FaceAnalysis(name="buffalo_l", allowed_modules=["detection"], providers=list(self.providers))
            app.prepare(ctx_id=0, det_size=self.det_size)
        except Exception as exc:
            raise ModelLoadFailure(f"RetinaFace failed to load: {exc}") from exc
        self.app = app
        LOGGER.info(
            "Loaded RetinaFace detector det_size=%s det_thresh=%.2f providers=%s",
            self.det_size,
            self.det_thresh,
            self.providers,
        )

    def detect(self, image: np.ndarray) -> List[FaceObservation]:
        """Run RetinaFace on a BGR image."""
        self.ensure_ready()
        faces: List[FaceObservation] = []
        for face in self.app.get(image):
            score = float(face.det_score)
            if score < self.det_thresh:
                continue
            bbox = tuple(float(v) for v in face.bbox)
            landmarks = np.asarray(face.kps, dtype=np.float32) if face.kps is not None else None
            faces.append(FaceObservation(bbox=bbox, score=score, landmarks=landmarks))
        return faces


def align_to_112(image: np.ndarray, landmarks: Optional[np.ndarray], bbox: BBox) -> np.ndarray:
    """Similarity-warp to 112x112 using five keypoints, else crop and resize."""
    target_size = (112, 112)
    crop = crop_to_bbox(image, bbox)
    if crop.size == 0:
        crop = image
    if landmarks is None or np.asarray(landmarks).shape != (5, 2):
        return cv2.resize(crop, target_size, interpolation=cv2.INTER_LINEAR)
    trans = cv2.estimateAffinePartial2D(np.asarray(landmarks, dtype=np.float32), ARCFACE_REFERENCE, method=cv2.LMEDS)[0]
    if trans is None:
        return cv2.resize(crop, target_size, interpolation=cv2.INTER_LINEAR)
    return cv2.warpAffine(image, trans, target_size, borderValue=0.0)
