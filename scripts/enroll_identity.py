#!/usr/bin/env python3
"""CLI for enrolling one identity from images or camera captures into the identity bank."""

from __future__ import annotations

import argparse
import logging
import time
from collections import Counter
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from tqdm import tqdm

from facecheck.config import EngineConfig, load_engine_config
from facecheck.errors import CameraAccessDenied, NoFaceDetected
from facecheck.factory import build_configured_extractor, build_detector
from facecheck.io_utils import list_images, load_image, setup_logging
from facecheck.landmarks import estimate_angle_category
from facecheck.recognition.enrollment import enrollment_stats
from facecheck.recognition.identity_bank import load_identity_bank, save_identity_bank
from facecheck.recognition.quality import assess_quality
from facecheck.sources.camera import OpenCVCameraSource
from facecheck.store.memory import InMemoryIdentityStore
from facecheck.types import Capture, EmbeddingEntry, Identity


LOGGER = logging.getLogger("scripts.enroll_identity")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Enroll an identity into the identity bank")
    parser.add_argument("identity_id", help="Identifier of the person to enroll")
    parser.add_argument("--name", type=str, default=None, help="Display name (defaults to the identifier)")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--images", type=Path, help="Directory of face images for this person")
    source.add_argument("--camera", type=int, help="Capture enrollment samples from this camera device")
    parser.add_argument("--captures", type=int, default=10, help="Number of camera frames to sample")
    parser.add_argument(
        "--capture-interval",
        type=float,
        default=0.5,
        help="Seconds between camera captures",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs/engine.yaml"),
        help="Engine configuration YAML",
    )
    parser.add_argument(
        "--bank-dir",
        type=Path,
        default=Path("data"),
        help="Directory holding identity_bank.parquet",
    )
    parser.add_argument("--detector", choices=["retinaface", "mesh"], default=None)
    parser.add_argument("--extractor", choices=["pixel-grid", "geometry", "arcface"], default=None)
    parser.add_argument("--mesh-model", type=Path, default=None)
    parser.add_argument("--providers", type=str, nargs="*", default=None)
    parser.add_argument(
        "--replace",
        action="store_true",
        help="Clear the identity's existing enrollment before adding samples",
    )
    return parser.parse_args(argv)


def iter_image_captures(directory: Path, detector) -> Iterator[Tuple[str, Optional[Capture]]]:
    for path in list_images(directory):
        try:
            frame = load_image(path)
        except FileNotFoundError as exc:
            LOGGER.warning("%s", exc)
            yield str(path), None
            continue
        yield str(path), Capture(timestamp=time.time(), frame=frame, faces=detector.detect(frame))


def iter_camera_captures(source: OpenCVCameraSource, count: int, interval: float) -> Iterator[Tuple[str, Optional[Capture]]]:
    source.open()
    try:
        for idx in range(count):
            yield f"camera:{idx}", source.read()
            time.sleep(interval)
    finally:
        source.close()


def main() -> None:
    args = parse_args()
    setup_logging()

    config: EngineConfig = load_engine_config(args.config)
    if args.detector is not None:
        config.camera.detector = args.detector
    if args.extractor is not None:
        config.extractor.name = args.extractor

    bank_path = args.bank_dir / "identity_bank.parquet"
    store = InMemoryIdentityStore(load_identity_bank(bank_path), progressive=config.progressive)
    if store.get(args.identity_id) is None:
        store.add_identity(Identity(identity_id=args.identity_id, name=args.name or args.identity_id))
        LOGGER.info("Created identity %s", args.identity_id)
    elif args.replace:
        store.clear_enrollment(args.identity_id)
        LOGGER.info("Cleared existing enrollment for %s", args.identity_id)

    detector = build_detector(config.camera, mesh_model=args.mesh_model, providers=args.providers)
    extractor = build_configured_extractor(config.extractor, providers=args.providers)

    if args.images is not None:
        captures = iter_image_captures(args.images, detector)
        total: Optional[int] = len(list(list_images(args.images)))
    else:
        camera = OpenCVCameraSource(
            detector,
            device=args.camera,
            width=config.camera.width,
            height=config.camera.height,
            mirrored=config.camera.mirrored,
        )
        captures = iter_camera_captures(camera, args.captures, args.capture_interval)
        total = args.captures

    decisions: Counter = Counter()
    try:
        for label, capture in tqdm(captures, total=total, desc=f"Enrolling {args.identity_id}"):
            if capture is None:
                decisions["unreadable"] += 1
                continue
            frame = capture.frame
            face = capture.primary
            if face is None:
                decisions["no-face"] += 1
                LOGGER.debug("No face in %s", label)
                continue
            try:
                vector = extractor.extract(frame, face)
            except NoFaceDetected as exc:
                decisions["no-face"] += 1
                LOGGER.debug("Skipping %s: %s", label, exc)
                continue
            quality = assess_quality(frame, face, config.quality)
            entry = EmbeddingEntry(
                vector=vector,
                angle=estimate_angle_category(face.landmarks),
                quality=quality.score,
                image=label,
            )
            outcome = store.append_embedding(args.identity_id, entry)
            decisions[outcome.decision] += 1
            if not outcome.admitted:
                LOGGER.info("%s %s (quality=%.2f issues=%s)", label, outcome.decision, quality.score, quality.issues)
    except CameraAccessDenied as exc:
        LOGGER.error("Camera failed: %s", exc)
        raise SystemExit(1) from exc

    stats = enrollment_stats(store.get_enrollment(args.identity_id))
    LOGGER.info(
        "Enrollment for %s: %d samples, mean quality %.2f, angles=%s, decisions=%s",
        args.identity_id,
        stats.count,
        stats.mean_quality,
        stats.angles,
        dict(decisions),
    )
    artifacts = save_identity_bank(store.list(), args.bank_dir)
    LOGGER.info("Identity bank written: parquet=%s meta=%s", artifacts.parquet_path, artifacts.meta_json_path)


if __name__ == "__main__":
    main()
