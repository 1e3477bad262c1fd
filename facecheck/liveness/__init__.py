"""Liveness scoring."""

from facecheck.liveness.detector import LivenessDetector, LivenessState

__all__ = ["LivenessDetector", "LivenessState"]
