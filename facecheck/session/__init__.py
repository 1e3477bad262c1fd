"""Detection session orchestration."""

from facecheck.session.state_machine import DetectionSession
from facecheck.session.status import Phase, SessionStatus

__all__ = ["DetectionSession", "Phase", "SessionStatus"]
