import numpy as np
import pytest

from facecheck.landmarks import (
    IBUG_68,
    MESH_468,
    estimate_angle_category,
    eye_aspect_ratio,
    face_depth,
    has_depth,
    head_pose,
    layout_for,
)


def ibug_with_nose(nose_x: float) -> np.ndarray:
    pts = np.zeros((68, 2), dtype=np.float64)
    pts[36] = (0.0, 0.0)
    pts[45] = (40.0, 0.0)
    pts[30] = (nose_x, 20.0)
    pts[19] = (10.0, -20.0)
    pts[24] = (30.0, -20.0)
    pts[8] = (20.0, 60.0)
    return pts


def test_layout_detection_by_point_count():
    assert layout_for(np.zeros((68, 2))) is IBUG_68
    assert layout_for(np.zeros((478, 3))) is MESH_468
    assert layout_for(np.zeros((40, 2))) is None
    assert layout_for(None) is None
    assert eye_aspect_ratio(np.zeros((40, 2))) is None


def test_depth_only_for_3d_mesh():
    assert not has_depth(np.zeros((68, 3)))
    assert not has_depth(np.zeros((468, 2)))
    mesh = np.zeros((468, 3))
    mesh[:, 2] = -3.0
    assert has_depth(mesh)
    assert face_depth(mesh) == pytest.approx(3.0)
    assert face_depth(np.zeros((68, 2))) is None


@pytest.mark.parametrize(
    "nose_x, expected",
    [
        (20.0, "front"),
        (35.0, "slight-right"),
        (5.0, "slight-left"),
        (40.0, "right"),
        (0.0, "left"),
    ],
)
def test_angle_category_from_yaw(nose_x, expected):
    assert estimate_angle_category(ibug_with_nose(nose_x)) == expected


def test_angle_category_defaults_to_front_without_landmarks():
    assert estimate_angle_category(None) == "front"


def test_upright_mesh_has_level_pose():
    mesh = np.zeros((468, 3))
    mesh[MESH_468.left_eye_corner] = (-30.0, 0.0, 0.0)
    mesh[MESH_468.right_eye_corner] = (30.0, 0.0, 0.0)
    mesh[MESH_468.nose_tip] = (0.0, 20.0, -15.0)
    mesh[MESH_468.forehead[0]] = (0.0, -50.0, 0.0)
    mesh[MESH_468.chin] = (0.0, 60.0, 0.0)
    pitch, yaw, roll = head_pose(mesh)
    assert pitch == pytest.approx(0.0, abs=1e-6)
    assert yaw == pytest.approx(0.0, abs=1e-6)
    assert roll == pytest.approx(0.0, abs=1e-6)


def test_mirrored_pose_flips_yaw():
    pts = ibug_with_nose(35.0)
    _, yaw, _ = head_pose(pts)
    _, mirrored_yaw, _ = head_pose(pts, mirrored=True)
    assert mirrored_yaw == pytest.approx(-yaw)
