import numpy as np
import pytest

from facecheck.config import LivenessConfig
from facecheck.liveness import LivenessDetector


def ibug_face(eye_open: float) -> np.ndarray:
    """68-point face whose eye aspect ratio equals ``eye_open / 5``."""
    pts = np.zeros((68, 2), dtype=np.float64)
    for start, x0 in ((36, 0.0), (42, 30.0)):
        pts[start + 0] = (x0, 0.0)
        pts[start + 1] = (x0 + 3.0, -eye_open)
        pts[start + 2] = (x0 + 7.0, -eye_open)
        pts[start + 3] = (x0 + 10.0, 0.0)
        pts[start + 4] = (x0 + 7.0, eye_open)
        pts[start + 5] = (x0 + 3.0, eye_open)
    return pts


def mesh_face(z: float) -> np.ndarray:
    pts = np.zeros((468, 3), dtype=np.float64)
    pts[:, 2] = z
    return pts


def clock():
    return 0.0


def test_not_live_before_min_frames():
    detector = LivenessDetector(clock=clock)
    detector.add_frame(bbox=(0, 0, 100, 100))
    state = detector.add_frame(bbox=(20, 0, 120, 100))
    assert state.frame_count == 2
    assert not state.live
    assert state.score == 0.0


def test_movement_makes_face_live():
    detector = LivenessDetector(clock=clock)
    for i in range(3):
        state = detector.add_frame(bbox=(10.0 * i, 0.0, 100.0 + 10.0 * i, 100.0))
    assert state.movement == pytest.approx(1.0)
    assert state.live
    assert not state.uses_depth
    assert state.score == pytest.approx(0.5)


def test_static_face_is_not_live():
    detector = LivenessDetector(clock=clock)
    for _ in range(6):
        state = detector.add_frame(bbox=(0, 0, 100, 100))
    assert state.movement == 0.0
    assert not state.blink
    assert not state.live


def test_jitter_below_step_threshold_is_ignored():
    detector = LivenessDetector(clock=clock)
    for i in range(5):
        state = detector.add_frame(bbox=(float(i % 2), 0.0, 100.0 + float(i % 2), 100.0))
    assert state.movement == 0.0
    assert not state.live


def test_blink_triplet_is_detected_and_sticky():
    detector = LivenessDetector(clock=clock)
    detector.add_frame(landmarks=ibug_face(2.0))
    detector.add_frame(landmarks=ibug_face(0.25))
    state = detector.add_frame(landmarks=ibug_face(2.0))
    assert state.blink
    assert state.live
    assert state.score == pytest.approx(0.5)

    for _ in range(6):
        state = detector.add_frame(landmarks=ibug_face(2.0))
    assert state.blink


def test_closed_eyes_without_reopening_is_not_a_blink():
    detector = LivenessDetector(clock=clock)
    detector.add_frame(landmarks=ibug_face(2.0))
    detector.add_frame(landmarks=ibug_face(0.25))
    state = detector.add_frame(landmarks=ibug_face(0.25))
    assert not state.blink


def test_depth_variation_on_mesh_landmarks():
    detector = LivenessDetector(clock=clock)
    for z in (0.0, 2.0, 4.0):
        state = detector.add_frame(landmarks=mesh_face(z))
    assert state.uses_depth
    assert state.depth_variation == pytest.approx(0.4)
    assert state.live
    assert state.score == pytest.approx(0.1)


def test_flat_mesh_is_not_live():
    detector = LivenessDetector(clock=clock)
    for _ in range(5):
        state = detector.add_frame(landmarks=mesh_face(1.0))
    assert state.uses_depth
    assert state.depth_variation == 0.0
    assert not state.live


def test_history_is_bounded_and_reset_clears():
    detector = LivenessDetector(LivenessConfig(history_size=4, min_frames=3), clock=clock)
    for i in range(10):
        detector.add_frame(bbox=(10.0 * i, 0.0, 100.0 + 10.0 * i, 100.0))
    assert len(detector) == 4
    detector.reset()
    state = detector.state()
    assert state.frame_count == 0
    assert state.movement == 0.0
    assert not state.live


def rolled_mesh(degrees: float) -> np.ndarray:
    """Mesh at constant depth whose eye line is tilted by ``degrees``."""
    pts = mesh_face(1.0)
    theta = np.radians(degrees)
    pts[263, :2] = (60.0 * np.cos(theta), 60.0 * np.sin(theta))
    pts[4, 2] = 1000.0
    return pts


def test_head_rotation_on_mesh_drives_pose_variation():
    detector = LivenessDetector(clock=clock)
    for degrees in (0.0, 10.0, 20.0):
        state = detector.add_frame(landmarks=rolled_mesh(degrees))
    assert state.uses_depth
    assert state.depth_variation == 0.0
    assert state.movement == 0.0
    assert not state.blink
    assert state.pose_variation > detector.config.pose_live_threshold
    assert state.live
    assert detector.is_live()


def test_pose_variation_ignores_2d_landmarks():
    detector = LivenessDetector(clock=clock)
    for tilt in (0.0, 8.0, 16.0):
        pts = ibug_face(2.0)
        pts[45, 1] = tilt
        state = detector.add_frame(landmarks=pts)
    assert not state.uses_depth
    assert state.pose_variation == 0.0
    assert not state.live
