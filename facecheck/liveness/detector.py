"""Sliding-window liveness scoring against printed-photo and screen replays.

Signals, each recomputed from the trailing frames whenever a frame is added:

* movement - face-box centre displacement plus width change between frames,
  ignoring steps below the jitter floor;
* blink - an open/closed/open eye-aspect-ratio triplet, sticky until reset;
* depth variation - frame-to-frame change of mean |z| over key mesh points;
* pose variation - frame-to-frame change of pitch/yaw/roll.

Depth and pose are only measured on 3D mesh landmarks; with 2D input the
detector scores movement and blink alone.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional, Sequence

import numpy as np

from facecheck.config import LivenessConfig
from facecheck.landmarks import eye_aspect_ratio, face_depth, has_depth, head_pose
from facecheck.types import BBox, LivenessFrame, bbox_center

LOGGER = logging.getLogger("facecheck.liveness.detector")


@dataclass(frozen=True)
class LivenessState:
    frame_count: int
    movement: float
    blink: bool
    depth_variation: float
    pose_variation: float
    score: float
    live: bool
    uses_depth: bool


def _mean_step(values: Sequence[float]) -> Optional[float]:
    if len(values) < 2:
        return None
    return float(np.mean(np.abs(np.diff(np.asarray(values, dtype=np.float64)))))


class LivenessDetector:
    """Session-scoped; construct one per detection session."""

    def __init__(self, config: Optional[LivenessConfig] = None, clock: Callable[[], float] = time.time) -> None:
        self.config = config or LivenessConfig()
        self._clock = clock
        self._frames: Deque[LivenessFrame] = deque(maxlen=self.config.history_size)
        self.reset()

    def reset(self) -> None:
        self._frames.clear()
        self.movement_score = 0.0
        self.blink_detected = False
        self.depth_variation = 0.0
        self.pose_variation = 0.0
        self._uses_depth = False

    def __len__(self) -> int:
        return len(self._frames)

    @property
    def frames(self) -> List[LivenessFrame]:
        return list(self._frames)

    def add_frame(
        self,
        landmarks: Optional[np.ndarray] = None,
        bbox: Optional[BBox] = None,
        depth: Optional[float] = None,
        timestamp: Optional[float] = None,
    ) -> LivenessState:
        if landmarks is not None:
            landmarks = np.asarray(landmarks, dtype=np.float64)
        if depth is None:
            depth = face_depth(landmarks)
        self._frames.append(
            LivenessFrame(
                timestamp=self._clock() if timestamp is None else timestamp,
                landmarks=landmarks,
                bbox=bbox,
                depth=depth,
            )
        )
        recent = list(self._frames)[-self.config.analysis_window :]
        self._analyze_movement(recent)
        self._analyze_blink(recent)
        self._analyze_depth(recent)
        self._analyze_pose(recent)
        return self.state()

    def _analyze_movement(self, recent: Sequence[LivenessFrame]) -> None:
        cfg = self.config
        total = 0.0
        comparisons = 0
        for prev, curr in zip(recent, recent[1:]):
            if prev.bbox is None or curr.bbox is None:
                continue
            (px, py), (cx, cy) = bbox_center(prev.bbox), bbox_center(curr.bbox)
            step = math.hypot(cx - px, cy - py)
            size_change = abs((curr.bbox[2] - curr.bbox[0]) - (prev.bbox[2] - prev.bbox[0]))
            if step > cfg.movement_step_threshold or size_change > cfg.size_change_threshold:
                total += step + size_change
            comparisons += 1
        if comparisons == 0:
            self.movement_score = 0.0
            return
        self.movement_score = min(total / (comparisons * cfg.movement_divisor), 1.0)

    def _analyze_blink(self, recent: Sequence[LivenessFrame]) -> None:
        if self.blink_detected or len(self._frames) < 3:
            return
        threshold = self.config.blink_ear_threshold
        ears = [ear for ear in (eye_aspect_ratio(f.landmarks) for f in recent) if ear is not None]
        for prev, curr, nxt in zip(ears, ears[1:], ears[2:]):
            if prev > threshold and curr < threshold and nxt > threshold:
                LOGGER.debug("Blink detected (EAR %.3f -> %.3f -> %.3f)", prev, curr, nxt)
                self.blink_detected = True
                return

    def _analyze_depth(self, recent: Sequence[LivenessFrame]) -> None:
        depths = [f.depth for f in recent if f.depth is not None]
        step = _mean_step(depths)
        self._uses_depth = step is not None
        self.depth_variation = 0.0 if step is None else min(step / self.config.depth_scale, 1.0)

    def _analyze_pose(self, recent: Sequence[LivenessFrame]) -> None:
        poses = [head_pose(f.landmarks) for f in recent if has_depth(f.landmarks)]
        poses = [p for p in poses if p is not None]
        if len(poses) < 2:
            self.pose_variation = 0.0
            return
        deltas = [
            sum(abs(b - a) for a, b in zip(first, second)) / 3.0
            for first, second in zip(poses, poses[1:])
        ]
        self.pose_variation = min(float(np.mean(deltas)) / self.config.pose_scale_degrees, 1.0)

    def is_live(self) -> bool:
        cfg = self.config
        if len(self._frames) < cfg.min_frames:
            return False
        return (
            self.movement_score > cfg.movement_live_threshold
            or self.blink_detected
            or self.depth_variation > cfg.depth_live_threshold
            or self.pose_variation > cfg.pose_live_threshold
        )

    def score(self) -> float:
        if len(self._frames) < self.config.min_frames:
            return 0.0
        blink = 1.0 if self.blink_detected else 0.0
        if self._uses_depth:
            w_move, w_blink, w_depth, w_pose = self.config.weights_3d
            total = (
                w_move * self.movement_score
                + w_blink * blink
                + w_depth * self.depth_variation
                + w_pose * self.pose_variation
            )
        else:
            w_move, w_blink = self.config.weights_2d
            total = w_move * self.movement_score + w_blink * blink
        return float(min(total, 1.0))

    def state(self) -> LivenessState:
        return LivenessState(
            frame_count=len(self._frames),
            movement=self.movement_score,
            blink=self.blink_detected,
            depth_variation=self.depth_variation,
            pose_variation=self.pose_variation,
            score=self.score(),
            live=self.is_live(),
            uses_depth=self._uses_depth,
        )
