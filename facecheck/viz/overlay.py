"""Per-tick overlay boxes and frame rendering for kiosk previews."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

import cv2
import numpy as np

from facecheck.types import BBox, FaceObservation, MatchResult

LOGGER = logging.getLogger("facecheck.viz.overlay")

Color = Tuple[int, int, int]

# BGR
GREEN: Color = (0, 200, 0)
BLUE: Color = (255, 128, 0)
AMBER: Color = (0, 191, 255)
WHITE: Color = (255, 255, 255)


@dataclass
class OverlayBox:
    bbox: BBox
    label: Optional[str] = None
    similarity: Optional[float] = None
    accepted: bool = False
    color: Color = WHITE


def similarity_color(similarity: float) -> Color:
    if similarity > 0.8:
        return GREEN
    if similarity > 0.7:
        return BLUE
    return AMBER


def build_overlay_box(face: FaceObservation, result: Optional[MatchResult]) -> OverlayBox:
    """Label the box only when the match is close enough to display."""
    if result is None or not result.displayable:
        return OverlayBox(bbox=face.bbox)
    return OverlayBox(
        bbox=face.bbox,
        label=result.name,
        similarity=result.similarity,
        accepted=result.accepted,
        color=similarity_color(result.similarity),
    )


def draw_overlay(frame: np.ndarray, boxes: Iterable[OverlayBox], mirrored: bool = False) -> np.ndarray:
    """Draw boxes and labels in place and return the frame."""
    width = frame.shape[1]
    for box in boxes:
        x1, y1, x2, y2 = map(int, box.bbox)
        if mirrored:
            x1, x2 = width - x2, width - x1
        thickness = 3 if box.accepted else 2
        cv2.rectangle(frame, (x1, y1), (x2, y2), box.color, thickness)
        if box.label is None:
            continue
        label = box.label
        if box.similarity is not None:
            label = f"{label} ({box.similarity * 100:.0f}%)"
        text_y = max(15, y1 - 10)
        cv2.putText(frame, label, (x1, text_y), cv2.FONT_HERSHEY_SIMPLEX, 0.6, box.color, 2)
    return frame
