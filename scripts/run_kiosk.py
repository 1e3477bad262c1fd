#!/usr/bin/env python3
"""CLI for running an unattended face check-in kiosk on a local camera."""

from __future__ import annotations

import argparse
import asyncio
import logging
import time
from pathlib import Path
from typing import List, Optional

from facecheck.config import EngineConfig, load_engine_config
from facecheck.factory import build_configured_extractor, build_detector
from facecheck.io_utils import setup_logging
from facecheck.recognition.identity_bank import load_identity_bank, save_identity_bank
from facecheck.session import DetectionSession, Phase, SessionStatus
from facecheck.sources.camera import OpenCVCameraSource
from facecheck.store.memory import CsvCheckInRecorder, InMemoryCheckInRecorder, InMemoryIdentityStore
from facecheck.types import CheckInLogEntry, MatchResult


LOGGER = logging.getLogger("scripts.run_kiosk")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the face check-in kiosk loop on a camera")
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
    parser.add_argument("--device", type=int, default=None, help="Camera device index")
    parser.add_argument(
        "--detector",
        choices=["retinaface", "mesh"],
        default=None,
        help="Face detector (mesh requires the mediapipe extra)",
    )
    parser.add_argument(
        "--extractor",
        choices=["pixel-grid", "geometry", "arcface"],
        default=None,
        help="Embedding extractor",
    )
    parser.add_argument(
        "--mesh-model",
        type=Path,
        default=None,
        help="Path to the MediaPipe face_landmarker.task bundle",
    )
    parser.add_argument(
        "--providers",
        type=str,
        nargs="*",
        default=None,
        help="ONNX execution providers (overrides platform defaults)",
    )
    parser.add_argument("--threshold", type=float, default=None, help="Match distance threshold override")
    parser.add_argument(
        "--checkins-csv",
        type=Path,
        default=None,
        help="Append check-ins to this CSV (in-memory only when omitted)",
    )
    parser.add_argument(
        "--snapshot-dir",
        type=Path,
        default=None,
        help="Write a face snapshot per check-in into this directory",
    )
    parser.add_argument(
        "--learn",
        action="store_true",
        help="Offer accepted check-in samples to the identity's enrollment set",
    )
    parser.add_argument(
        "--multi-face",
        action="store_true",
        help="Match every face in the frame (consecutive-match debounce applies)",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds (runs until interrupted by default)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def apply_overrides(config: EngineConfig, args: argparse.Namespace) -> EngineConfig:
    if args.device is not None:
        config.camera.device = args.device
    if args.detector is not None:
        config.camera.detector = args.detector
    if args.extractor is not None:
        config.extractor.name = args.extractor
    if args.threshold is not None:
        config.match.threshold = args.threshold
    if args.learn:
        config.session.learn_from_checkins = True
    if args.multi_face:
        config.session.multi_face = True
    return config


async def run_session(session: DetectionSession, duration: Optional[float]) -> int:
    status = await session.start()
    if status.phase == Phase.ERROR:
        LOGGER.error("Kiosk could not start: %s", status.error)
        return 1
    deadline = None if duration is None else time.monotonic() + duration
    try:
        while session.phase != Phase.ERROR:
            if deadline is not None and time.monotonic() >= deadline:
                break
            await asyncio.sleep(0.2)
    finally:
        failed = session.status.error
        session.stop()
    if failed:
        LOGGER.error("Kiosk stopped on error: %s", failed)
        return 1
    return 0


def main() -> None:
    args = parse_args()
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    config = apply_overrides(load_engine_config(args.config), args)
    bank_path = args.bank_dir / "identity_bank.parquet"
    store = InMemoryIdentityStore(load_identity_bank(bank_path), progressive=config.progressive)

    detector = build_detector(
        config.camera,
        mesh_model=args.mesh_model,
        providers=args.providers,
        max_faces=4 if config.session.multi_face else 1,
    )
    source = OpenCVCameraSource(
        detector,
        device=config.camera.device,
        width=config.camera.width,
        height=config.camera.height,
        mirrored=config.camera.mirrored,
    )
    extractor = build_configured_extractor(config.extractor, providers=args.providers)
    if args.checkins_csv is not None:
        recorder = CsvCheckInRecorder(args.checkins_csv, snapshot_dir=args.snapshot_dir)
    else:
        recorder = InMemoryCheckInRecorder()

    session = DetectionSession(store, source, extractor, recorder, config)

    last_phase = {"value": None}

    def log_phase(status: SessionStatus) -> None:
        if status.phase != last_phase["value"]:
            last_phase["value"] = status.phase
            LOGGER.info("Phase: %s (models_ready=%s)", status.phase.value, status.models_ready)

    def log_checkin(entry: CheckInLogEntry, result: MatchResult) -> None:
        LOGGER.info("Welcome %s (similarity %.1f%%)", entry.name, result.similarity * 100.0)

    session.on_status(log_phase)
    session.on_matched(log_checkin)

    LOGGER.info(
        "Kiosk config: extractor=%s detector=%s threshold=%.2f scheduling=%s identities=%d",
        config.extractor.name,
        config.camera.detector,
        config.match.threshold,
        config.session.scheduling,
        len(store.list()),
    )
    try:
        exit_code = asyncio.run(run_session(session, args.duration))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted; shutting down")
        session.stop()
        exit_code = 0

    if config.session.learn_from_checkins:
        save_identity_bank(store.list(), args.bank_dir)
    LOGGER.info("Check-ins this run: %d", len(session.log))
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
