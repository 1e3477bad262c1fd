"""
Core package init for the FaceCheck detection engine.

Camera frames in, check-in decisions out: embedding extraction, matching,
liveness scoring, progressive enrollment and the detection session loop.
"""

__all__ = [
    "config",
    "detectors",
    "embedding",
    "errors",
    "factory",
    "landmarks",
    "liveness",
    "recognition",
    "session",
    "sources",
    "store",
    "viz",
    "io_utils",
    "types",
]
