"""Filesystem helpers: config documents, bank metadata, face images and logging."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Sequence

import cv2
import numpy as np
import yaml

LOGGER = logging.getLogger("facecheck.io")

IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png", ".bmp")

# Model runtimes that log every session creation at INFO.
NOISY_LOGGERS: Sequence[str] = ("insightface", "onnxruntime", "absl", "mediapipe")


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def load_yaml(path: Path) -> Dict[str, Any]:
    """Parse a YAML mapping; an empty document yields ``{}``."""
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping at the top level")
    LOGGER.debug("Loaded %s (sections=%s)", path, sorted(data))
    return data


def dump_yaml(path: Path, data: Dict[str, Any]) -> None:
    ensure_dir(path.parent)
    with path.open("w", encoding="utf-8") as fh:
        yaml.safe_dump(data, fh, sort_keys=False, default_flow_style=None)


def _json_default(obj: Any) -> Any:
    if is_dataclass(obj):
        return asdict(obj)
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.generic):
        return obj.item()
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def dump_json(path: Path, data: Any, indent: int = 2) -> None:
    """Write JSON, converting dataclasses, paths and numpy values."""
    ensure_dir(path.parent)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=indent, default=_json_default)
    LOGGER.debug("Wrote %s", path)


def list_images(directory: Path) -> List[Path]:
    """Image files directly under ``directory``, sorted by name."""
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES)


def load_image(path: Path) -> np.ndarray:
    """Read an image as BGR, the channel order every extractor expects."""
    image = cv2.imread(str(path))
    if image is None:
        raise FileNotFoundError(f"Unable to read image: {path}")
    return image


def save_image(path: Path, image: np.ndarray) -> Path:
    ensure_dir(path.parent)
    if not cv2.imwrite(str(path), image):
        raise OSError(f"cv2.imwrite failed for {path}")
    return path


def setup_logging(level: int = logging.INFO, quiet: Sequence[str] = NOISY_LOGGERS) -> None:
    """Configure root logging once and hold model runtimes at WARNING."""
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level)
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        )
    for name in quiet:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
