from pathlib import Path

import numpy as np
import pytest

pytest.importorskip("cv2")
pytest.importorskip("tqdm")

from facecheck.config import EngineConfig
from facecheck.types import FaceObservation
from scripts import enroll_identity, run_kiosk


def test_kiosk_overrides_apply_to_config():
    args = run_kiosk.parse_args(
        ["--device", "2", "--detector", "mesh", "--extractor", "geometry", "--threshold", "0.42", "--learn", "--multi-face"]
    )
    config = run_kiosk.apply_overrides(EngineConfig(), args)
    assert config.camera.device == 2
    assert config.camera.detector == "mesh"
    assert config.extractor.name == "geometry"
    assert config.match.threshold == pytest.approx(0.42)
    assert config.session.learn_from_checkins
    assert config.session.multi_face


def test_kiosk_defaults_leave_config_untouched():
    args = run_kiosk.parse_args([])
    config = run_kiosk.apply_overrides(EngineConfig(), args)
    assert config.to_dict() == EngineConfig().to_dict()
    assert args.config == Path("configs/engine.yaml")


def test_enroll_requires_a_sample_source():
    with pytest.raises(SystemExit):
        enroll_identity.parse_args(["alice"])
    args = enroll_identity.parse_args(["alice", "--images", "faces/alice", "--name", "Alice"])
    assert args.images == Path("faces/alice")
    assert args.camera is None


class StubDetector:
    def detect(self, frame):
        return [FaceObservation(bbox=(0.0, 0.0, float(frame.shape[1]), float(frame.shape[0])), score=0.9)]


def test_iter_image_captures_reads_each_image(tmp_path: Path):
    import cv2

    cv2.imwrite(str(tmp_path / "a.png"), np.full((30, 40, 3), 100, dtype=np.uint8))
    (tmp_path / "b.jpg").write_bytes(b"not an image")
    captures = list(enroll_identity.iter_image_captures(tmp_path, StubDetector()))
    assert [Path(label).name for label, _ in captures] == ["a.png", "b.jpg"]
    assert captures[0][1].primary.bbox == (0.0, 0.0, 40.0, 30.0)
    assert captures[1][1] is None
