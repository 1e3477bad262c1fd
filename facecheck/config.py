"""Engine configuration dataclasses and YAML loading."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Type, TypeVar

from facecheck.errors import ConfigError
from facecheck.io_utils import load_yaml

LOGGER = logging.getLogger("facecheck.config")

T = TypeVar("T")


@dataclass
class MatchConfig:
    # Euclidean distance at or below which a match is accepted.
    threshold: float = 0.5
    # similarity = 1 - distance / similarity_scale, clamped to [0, 1]
    similarity_scale: float = 1.5
    # Close-but-rejected matches up to threshold * display_factor get a name on the overlay.
    display_factor: float = 1.5
    use_average_vector: bool = True
    min_confidence_gap: float = 0.12
    require_confidence_gap: bool = False

    @property
    def display_threshold(self) -> float:
        return self.threshold * self.display_factor


@dataclass
class LivenessConfig:
    history_size: int = 6
    min_frames: int = 3
    # Trailing slice used for the sub-score computations.
    analysis_window: int = 5
    movement_step_threshold: float = 1.5
    size_change_threshold: float = 1.0
    movement_divisor: float = 10.0
    blink_ear_threshold: float = 0.2
    depth_scale: float = 5.0
    pose_scale_degrees: float = 10.0
    movement_live_threshold: float = 0.3
    depth_live_threshold: float = 0.2
    pose_live_threshold: float = 0.2
    # (movement, blink) when only 2D signals are present.
    weights_2d: Tuple[float, float] = (0.5, 0.5)
    # (movement, blink, depth, pose) when 3D mesh signals are present.
    weights_3d: Tuple[float, float, float, float] = (0.25, 0.25, 0.25, 0.25)


@dataclass
class ProgressiveConfig:
    max_embeddings: int = 20
    min_quality_to_add: float = 0.70
    min_similarity_to_add: float = 0.60
    replace_threshold: float = 0.10
    # At capacity, let an under-represented angle displace the weakest sample of an over-represented one.
    balance_angles: bool = False


@dataclass
class QualityConfig:
    min_face_size: float = 100.0
    min_confidence: float = 0.7
    min_brightness: float = 0.2
    max_brightness: float = 0.9
    max_face_angle: float = 45.0
    max_roll: float = 30.0
    # Laplacian variance floor; None disables the blur penalty.
    min_sharpness: Optional[float] = None


@dataclass
class SessionConfig:
    tick_interval_s: float = 0.4
    # "self_rescheduling" arms the next tick after the current one completes;
    # "fixed_interval" fires on a fixed cadence and skips ticks while one is in flight.
    scheduling: str = "self_rescheduling"
    checkin_cooldown_s: float = 5.0
    identity_cooldown_s: float = 30.0
    log_capacity: int = 50
    consecutive_matches_required: int = 1
    multi_face: bool = False
    learn_from_checkins: bool = False


@dataclass
class ExtractorConfig:
    # "pixel-grid", "geometry" or "arcface"
    name: str = "pixel-grid"
    grid_size: int = 16
    dimension: int = 128
    model_path: Optional[str] = None


@dataclass
class CameraConfig:
    device: int = 0
    width: int = 640
    height: int = 480
    mirrored: bool = True
    # "retinaface" (insightface) or "mesh" (mediapipe)
    detector: str = "retinaface"
    min_detection_confidence: float = 0.5


@dataclass
class EngineConfig:
    match: MatchConfig = field(default_factory=MatchConfig)
    liveness: LivenessConfig = field(default_factory=LivenessConfig)
    progressive: ProgressiveConfig = field(default_factory=ProgressiveConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    extractor: ExtractorConfig = field(default_factory=ExtractorConfig)
    camera: CameraConfig = field(default_factory=CameraConfig)

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> "EngineConfig":
        payload = dict(payload or {})
        sections = {f.name: f for f in fields(cls)}
        unknown = set(payload) - set(sections)
        if unknown:
            raise ConfigError(f"Unknown config sections: {sorted(unknown)}")
        config = cls()
        for name, section in payload.items():
            current = getattr(config, name)
            setattr(config, name, _build_section(type(current), section, name))
        _validate(config)
        return config

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _build_section(section_cls: Type[T], values: Optional[Mapping[str, Any]], name: str) -> T:
    if values is None:
        return section_cls()
    if not isinstance(values, Mapping):
        raise ConfigError(f"Section {name!r} must be a mapping, got {type(values).__name__}")
    known = {f.name: f for f in fields(section_cls)}
    unknown = set(values) - set(known)
    if unknown:
        raise ConfigError(f"Unknown keys in section {name!r}: {sorted(unknown)}")
    kwargs: Dict[str, Any] = {}
    for key, value in values.items():
        default = getattr(section_cls(), key)
        if isinstance(default, tuple):
            value = tuple(float(v) for v in value)
            if len(value) != len(default):
                raise ConfigError(f"{name}.{key} expects {len(default)} values, got {len(value)}")
        kwargs[key] = value
    return section_cls(**kwargs)


def _validate(config: EngineConfig) -> None:
    if config.match.threshold <= 0:
        raise ConfigError("match.threshold must be positive")
    if config.match.similarity_scale <= 0:
        raise ConfigError("match.similarity_scale must be positive")
    liveness = config.liveness
    if liveness.min_frames < 1:
        raise ConfigError("liveness.min_frames must be >= 1")
    if liveness.history_size < liveness.min_frames:
        raise ConfigError("liveness.history_size must be >= liveness.min_frames")
    if liveness.analysis_window < 2:
        raise ConfigError("liveness.analysis_window must be >= 2")
    for key in ("movement_divisor", "depth_scale", "pose_scale_degrees"):
        if getattr(liveness, key) <= 0:
            raise ConfigError(f"liveness.{key} must be positive")
    session = config.session
    if session.tick_interval_s <= 0:
        raise ConfigError("session.tick_interval_s must be positive")
    for key in ("checkin_cooldown_s", "identity_cooldown_s"):
        if getattr(session, key) < 0:
            raise ConfigError(f"session.{key} must be >= 0")
    if session.log_capacity < 1:
        raise ConfigError("session.log_capacity must be >= 1")
    if config.progressive.max_embeddings < 1:
        raise ConfigError("progressive.max_embeddings must be >= 1")
    if config.session.scheduling not in {"self_rescheduling", "fixed_interval"}:
        raise ConfigError(f"Unknown session.scheduling {config.session.scheduling!r}")
    if config.session.consecutive_matches_required < 1:
        raise ConfigError("session.consecutive_matches_required must be >= 1")
    if config.extractor.name not in {"pixel-grid", "geometry", "arcface"}:
        raise ConfigError(f"Unknown extractor.name {config.extractor.name!r}")
    if config.camera.detector not in {"retinaface", "mesh"}:
        raise ConfigError(f"Unknown camera.detector {config.camera.detector!r}")


def load_engine_config(path: Optional[Path]) -> EngineConfig:
    """Load engine configuration from YAML; a missing path yields defaults."""
    if path is None:
        return EngineConfig()
    if not path.exists():
        LOGGER.warning("Config %s not found; using defaults", path)
        return EngineConfig()
    config = EngineConfig.from_dict(load_yaml(path))
    LOGGER.info("Loaded engine config from %s", path)
    return config
