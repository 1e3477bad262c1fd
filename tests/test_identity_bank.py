from pathlib import Path

import numpy as np
import pytest

pytest.importorskip("pyarrow")
pytest.importorskip("cv2")

from facecheck.io_utils import list_images, load_image
from facecheck.recognition.enrollment import admit
from facecheck.recognition.identity_bank import load_identity_bank, save_identity_bank
from facecheck.types import EmbeddingEntry, Identity


def test_bank_round_trip(tmp_path: Path):
    enrollment = admit(None, EmbeddingEntry(vector=np.array([0.6, 0.8, 0.0]), angle="slight-left", quality=0.9))
    identities = [
        Identity(identity_id="a", name="Alice", enrollment=enrollment, avatar_url="https://example.com/a.png"),
        Identity(identity_id="b", name="Bob", legacy_vector=np.array([0.1, 0.2, 0.3], dtype=np.float32), last_check_in=12.5),
        Identity(identity_id="c", name="Carol"),
    ]
    artifacts = save_identity_bank(identities, tmp_path)
    assert artifacts.parquet_path.exists()
    assert artifacts.meta_json_path.exists()

    loaded = {identity.identity_id: identity for identity in load_identity_bank(artifacts.parquet_path)}
    assert set(loaded) == {"a", "b", "c"}

    alice = loaded["a"]
    assert alice.avatar_url == "https://example.com/a.png"
    assert alice.legacy_vector is None
    assert alice.enrollment.entries[0].angle == "slight-left"
    np.testing.assert_allclose(alice.enrollment.average_vector, [0.6, 0.8, 0.0], atol=1e-6)

    bob = loaded["b"]
    np.testing.assert_allclose(bob.legacy_vector, [0.1, 0.2, 0.3], atol=1e-6)
    assert bob.enrollment is None
    assert bob.last_check_in == pytest.approx(12.5)
    assert bob.avatar_url is None

    assert not loaded["c"].is_enrolled


def test_missing_bank_loads_empty(tmp_path: Path):
    assert load_identity_bank(tmp_path / "identity_bank.parquet") == []


def test_list_and_load_images(tmp_path: Path):
    import cv2

    cv2.imwrite(str(tmp_path / "b.png"), np.zeros((8, 8, 3), dtype=np.uint8))
    cv2.imwrite(str(tmp_path / "a.jpg"), np.zeros((8, 8, 3), dtype=np.uint8))
    (tmp_path / "notes.txt").write_text("skip", encoding="utf-8")
    (tmp_path / "nested.png").mkdir()
    images = list_images(tmp_path)
    assert [p.name for p in images] == ["a.jpg", "b.png"]
    assert load_image(images[0]).shape == (8, 8, 3)
    with pytest.raises(FileNotFoundError):
        load_image(tmp_path / "notes.txt")
    assert list_images(tmp_path / "missing") == []
