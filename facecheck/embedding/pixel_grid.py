"""Pixel-statistic embedding: mean luminance over an N x N grid of the face."""

from __future__ import annotations

import logging
from typing import Optional

import cv2
import numpy as np

from facecheck.errors import NoFaceDetected
from facecheck.types import FaceObservation, crop_to_bbox

LOGGER = logging.getLogger("facecheck.embedding.pixel_grid")

EPSILON = 1e-9


def to_luminance(image: np.ndarray) -> np.ndarray:
    """Return a float32 luminance image in [0, 1] from a BGR, BGRA or gray input."""
    if image.ndim == 3 and image.shape[2] == 4:
        image = cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    elif image.ndim == 3 and image.shape[2] == 3:
        image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    elif image.ndim == 3:
        image = image[:, :, 0]
    gray = image.astype(np.float32)
    if np.issubdtype(image.dtype, np.integer):
        gray /= 255.0
    return gray


def min_max_normalize(values: np.ndarray) -> np.ndarray:
    """Scale to [0, 1]; a flat input maps to all zeros."""
    values = np.asarray(values, dtype=np.float32)
    lo = float(values.min()) if values.size else 0.0
    hi = float(values.max()) if values.size else 0.0
    if hi - lo <= EPSILON:
        return np.zeros_like(values)
    return (values - lo) / (hi - lo)


class PixelGridExtractor:
    """Grid-of-means descriptor. Cheap and model-free, but lighting sensitive."""

    name = "pixel-grid"

    def __init__(self, grid_size: int = 16) -> None:
        if grid_size < 1:
            raise ValueError("grid_size must be >= 1")
        self.grid_size = int(grid_size)
        self.dimension = self.grid_size * self.grid_size

    def ensure_ready(self) -> None:
        return None

    def extract(self, frame: Optional[np.ndarray], face: Optional[FaceObservation]) -> np.ndarray:
        if frame is None or face is None:
            raise NoFaceDetected("No face detected in frame")
        region = crop_to_bbox(frame, face.bbox)
        if region.size == 0:
            raise NoFaceDetected(f"Face box {face.bbox} lies outside the frame")
        gray = to_luminance(region)
        # INTER_AREA averages the pixels falling in each destination cell.
        cells = cv2.resize(gray, (self.grid_size, self.grid_size), interpolation=cv2.INTER_AREA)
        return min_max_normalize(cells.reshape(-1))
