"""Exception taxonomy for the detection engine."""

from __future__ import annotations


class FaceCheckError(RuntimeError):
    """Base class for engine errors."""


class NoFaceDetected(FaceCheckError):
    """The frame carried no usable face. Callers skip the tick."""


class InsufficientLandmarks(NoFaceDetected):
    """A landmark mesh was present but too sparse for the requested operation."""

    def __init__(self, found: int, required: int) -> None:
        super().__init__(f"Need at least {required} landmarks, got {found}")
        self.found = found
        self.required = required


class ModelLoadFailure(FaceCheckError):
    """A detector or extractor model could not be loaded."""


class CameraAccessDenied(FaceCheckError):
    """The camera could not be opened or stopped delivering frames."""


class RepositoryWriteFailure(FaceCheckError):
    """A check-in or enrollment could not be persisted."""


class ConfigError(ValueError):
    """Invalid configuration file or value."""
