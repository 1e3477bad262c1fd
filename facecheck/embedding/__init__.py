"""Embedding extractors: frame + detected face -> fixed-length vector.

Every extractor exposes ``name``, ``dimension``, ``ensure_ready()`` and
``extract(frame, face)``; ``extract`` raises :class:`facecheck.errors.NoFaceDetected`
(or its subclass ``InsufficientLandmarks``) instead of returning a vector when the
input carries no usable face.
"""

from __future__ import annotations

from typing import Any

from facecheck.embedding.geometry import LandmarkGeometryExtractor
from facecheck.embedding.pixel_grid import PixelGridExtractor

__all__ = ["LandmarkGeometryExtractor", "PixelGridExtractor", "build_extractor"]


def build_extractor(name: str, **kwargs: Any):
    """Instantiate an extractor by its ``name``."""
    if name == PixelGridExtractor.name:
        return PixelGridExtractor(**kwargs)
    if name == LandmarkGeometryExtractor.name:
        return LandmarkGeometryExtractor(**kwargs)
    if name == "arcface":
        from facecheck.embedding.arcface import ArcFaceExtractor

        return ArcFaceExtractor(**kwargs)
    raise ValueError(f"Unknown extractor {name!r}")
