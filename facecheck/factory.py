"""Build detectors and extractors from an :class:`EngineConfig`."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Sequence

from facecheck.config import CameraConfig, ExtractorConfig
from facecheck.embedding import build_extractor

LOGGER = logging.getLogger("facecheck.factory")


def build_detector(
    camera: CameraConfig,
    mesh_model: Optional[Path] = None,
    providers: Optional[Sequence[str]] = None,
    max_faces: int = 1,
):
    if camera.detector == "mesh":
        from facecheck.detectors.face_mesh import FaceMeshDetector

        model = mesh_model or Path("models/face_landmarker.task")
        return FaceMeshDetector(model, max_faces=max_faces, min_detection_confidence=camera.min_detection_confidence)

    from facecheck.detectors.face_retina import RetinaFaceDetector

    return RetinaFaceDetector(
        providers=tuple(providers) if providers else None,
        det_thresh=camera.min_detection_confidence,
    )


def build_configured_extractor(config: ExtractorConfig, providers: Optional[Sequence[str]] = None):
    if config.name == "pixel-grid":
        return build_extractor(config.name, grid_size=config.grid_size)
    if config.name == "geometry":
        return build_extractor(config.name, dimension=config.dimension)
    return build_extractor(config.name, model_path=config.model_path, providers=providers)
