"""ArcFace embedding extractor backed by an InsightFace recognition model."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Sequence, Tuple

import numpy as np

from facecheck.detectors.face_retina import align_to_112, default_providers
from facecheck.errors import ModelLoadFailure, NoFaceDetected
from facecheck.types import FaceObservation, l2_normalize

LOGGER = logging.getLogger("facecheck.embedding.arcface")


class ArcFaceExtractor:
    """Loads the recognition model on first use; a failed load is retried on the next call."""

    name = "arcface"
    dimension = 512

    def __init__(self, model_path: Optional[str] = None, providers: Optional[Sequence[str]] = None) -> None:
        self.model_path = model_path
        self.providers: Tuple[str, ...] = tuple(providers) if providers is not None else default_providers()
        self.model = None

    @property
    def ready(self) -> bool:
        return self.model is not None

    def ensure_ready(self) -> None:
        if self.model is None:
            self.model = self._load()

    def _load(self):
        os.environ.setdefault("OMP_NUM_THREADS", "2")
        os.environ.setdefault("ORT_INTRA_OP_NUM_THREADS", "2")
        try:
            from insightface.model_zoo import get_model
        except ImportError as exc:
            raise ModelLoadFailure(
                "insightface is required for ArcFaceExtractor. Install it via `pip install insightface`."
            ) from exc

        resolved = str(Path(self.model_path).expanduser()) if self.model_path else "arcface_r100_v1"
        LOGGER.info("Loading ArcFace model %s providers=%s", resolved, self.providers)
        try:
            model = get_model(resolved, download=True, providers=list(self.providers))
            if model is None:
                LOGGER.info("Falling back to FaceAnalysis recognition model")
                from insightface.app import FaceAnalysis

                analysis = FaceAnalysis(name="buffalo_l", providers=list(self.providers))
                analysis.prepare(ctx_id=0)
                model = analysis.models.get("recognition")
            if model is None:
                raise ModelLoadFailure("Unable to load ArcFace recognition model via insightface")
            if hasattr(model, "prepare"):
                model.prepare(ctx_id=0)
        except ModelLoadFailure:
            raise
        except Exception as exc:
            raise ModelLoadFailure(f"ArcFace model {resolved} failed to load: {exc}") from exc
        return model

    def extract(self, frame: Optional[np.ndarray], face: Optional[FaceObservation]) -> np.ndarray:
        if frame is None or face is None:
            raise NoFaceDetected("No face detected in frame")
        self.ensure_ready()
        if face.width <= 0 or face.height <= 0:
            raise NoFaceDetected(f"Empty face box {face.bbox}")
        aligned = align_to_112(frame, face.landmarks, face.bbox)
        feat = self.model.get_feat(aligned)
        return l2_normalize(np.asarray(feat, dtype=np.float32).reshape(-1))
