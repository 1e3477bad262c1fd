"""OpenCV webcam frame source composed with a face detector."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

import cv2

from facecheck.errors import CameraAccessDenied
from facecheck.types import Capture

LOGGER = logging.getLogger("facecheck.sources.camera")


class OpenCVCameraSource:
    def __init__(
        self,
        detector,
        device: int = 0,
        width: int = 640,
        height: int = 480,
        mirrored: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.detector = detector
        self.device = device
        self.width = width
        self.height = height
        self.mirrored = mirrored
        self._clock = clock
        self._cap: Optional[cv2.VideoCapture] = None

    @property
    def is_open(self) -> bool:
        return self._cap is not None

    def open(self) -> None:
        cap = cv2.VideoCapture(self.device)
        if not cap.isOpened():
            cap.release()
            raise CameraAccessDenied(f"Unable to open camera device {self.device}")
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self._cap = cap
        LOGGER.info(
            "Camera %s opened at %dx%d",
            self.device,
            int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )

    async def capture(self) -> Capture:
        """Grab and detect on a worker thread so the event loop keeps serving timers."""
        return await asyncio.to_thread(self.read)

    def read(self) -> Capture:
        if self._cap is None:
            raise CameraAccessDenied("Camera is not open")
        ok, frame = self._cap.read()
        if not ok or frame is None:
            raise CameraAccessDenied(f"Camera {self.device} stopped delivering frames")
        if self.mirrored:
            frame = cv2.flip(frame, 1)
        return Capture(timestamp=self._clock(), frame=frame, faces=self.detector.detect(frame))

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None
            LOGGER.info("Camera %s released", self.device)
