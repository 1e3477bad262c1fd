"""Face detectors. Each exposes ``ensure_ready()`` and ``detect(bgr_image) -> List[FaceObservation]``."""
