"""Session phases and the status snapshot handed to UI listeners."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from facecheck.types import MatchResult
from facecheck.viz.overlay import OverlayBox


class Phase(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    CAMERA_INITIALIZING = "camera-initializing"
    CAMERA_READY = "camera-ready"
    DETECTING = "detecting"
    MATCHED = "matched"
    COOLDOWN = "cooldown"
    ERROR = "error"


@dataclass
class SessionStatus:
    phase: Phase = Phase.IDLE
    is_detecting: bool = False
    models_ready: bool = False
    identities_loaded: int = 0
    liveness_score: float = 0.0
    movement: float = 0.0
    blink: bool = False
    depth_variation: float = 0.0
    pose_variation: float = 0.0
    is_live: bool = False
    consecutive_match_count: int = 0
    match_in_cooldown: bool = False
    error: Optional[str] = None
    failed_writes: int = 0
    last_match: Optional[MatchResult] = None
    overlay: List[OverlayBox] = field(default_factory=list)
