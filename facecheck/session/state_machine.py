"""Detection/check-in session: the capture -> match -> liveness -> decide loop.

One :class:`DetectionSession` drives one camera activation on the running
asyncio loop. Collaborators are duck-typed:

* ``store`` - ``list()``, ``subscribe(callback) -> unsubscribe`` and optionally
  ``append_embedding(identity_id, entry)`` for learning from check-ins;
* ``source`` - ``open()``, ``capture() -> Capture`` and ``close()``; ``open`` and
  ``capture`` may be coroutines, ``capture`` may raise ``NoFaceDetected``;
* ``extractor`` - ``ensure_ready()`` and ``extract(frame, face)``;
* ``recorder`` - ``record(identity_id, timestamp, similarity, snapshot)``, sync
  or async, raising ``RepositoryWriteFailure`` on failure.

Every start/stop bumps a generation counter. Timer callbacks and in-flight
ticks carry the generation they were started under and drop their results
when it no longer matches.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import numpy as np

from facecheck.config import EngineConfig
from facecheck.errors import CameraAccessDenied, ModelLoadFailure, NoFaceDetected, RepositoryWriteFailure
from facecheck.landmarks import estimate_angle_category
from facecheck.liveness.detector import LivenessDetector
from facecheck.recognition.matcher import IdentityMatcher
from facecheck.recognition.quality import assess_quality
from facecheck.session.checkin_log import CheckInLog
from facecheck.session.cooldown import CooldownRegistry
from facecheck.session.status import Phase, SessionStatus
from facecheck.types import Capture, CheckInLogEntry, EmbeddingEntry, FaceObservation, Identity, MatchResult, crop_to_bbox
from facecheck.viz.overlay import build_overlay_box

LOGGER = logging.getLogger("facecheck.session")

StatusListener = Callable[[SessionStatus], None]
MatchListener = Callable[[CheckInLogEntry, MatchResult], None]
Observation = Tuple[FaceObservation, np.ndarray, Optional[MatchResult]]


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _register(listeners: List, callback: Callable) -> Callable[[], None]:
    listeners.append(callback)

    def unsubscribe() -> None:
        if callback in listeners:
            listeners.remove(callback)

    return unsubscribe


class DetectionSession:
    def __init__(
        self,
        store,
        source,
        extractor,
        recorder,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.source = source
        self.extractor = extractor
        self.recorder = recorder
        self.config = config or EngineConfig()
        self._clock = clock

        self.matcher = IdentityMatcher(config=self.config.match)
        self.liveness = LivenessDetector(self.config.liveness, clock=clock)
        self.cooldowns = CooldownRegistry(self.config.session.identity_cooldown_s)
        self.log = CheckInLog(self.config.session.log_capacity)
        self.status = SessionStatus()

        self._identities: Dict[str, Identity] = {}
        self._streaks: Dict[str, int] = {}
        self._generation = 0
        self._busy = False
        self._schedule = True
        self._source_open = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._resume_handle: Optional[asyncio.TimerHandle] = None
        # Strong references; the loop only keeps weak ones to running tasks.
        self._tasks: Set[asyncio.Task] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._status_listeners: List[StatusListener] = []
        self._match_listeners: List[MatchListener] = []

    # listeners

    def on_status(self, callback: StatusListener) -> Callable[[], None]:
        return _register(self._status_listeners, callback)

    def on_matched(self, callback: MatchListener) -> Callable[[], None]:
        return _register(self._match_listeners, callback)

    def _emit_status(self) -> None:
        snapshot = replace(self.status, overlay=list(self.status.overlay))
        for callback in list(self._status_listeners):
            callback(snapshot)

    def _set_phase(self, phase: Phase) -> None:
        if self.status.phase != phase:
            LOGGER.debug("Session phase %s -> %s", self.status.phase.value, phase.value)
        self.status.phase = phase
        self.status.is_detecting = phase == Phase.DETECTING
        self._emit_status()

    @property
    def phase(self) -> Phase:
        return self.status.phase

    # lifecycle

    async def start(self, schedule: bool = True) -> SessionStatus:
        """Load models and identities, open the camera and begin detecting.

        With ``schedule=False`` no timer is armed and the caller drives ``tick()``.
        """
        if self.status.phase != Phase.IDLE:
            self.stop()
        self._loop = asyncio.get_running_loop()
        self._schedule = schedule
        self._generation += 1
        generation = self._generation

        # Session-scoped state is rebuilt, never carried over.
        self.liveness = LivenessDetector(self.config.liveness, clock=self._clock)
        self.cooldowns = CooldownRegistry(self.config.session.identity_cooldown_s)
        self._streaks = {}
        self.status = SessionStatus()

        self._set_phase(Phase.LOADING)
        self._ensure_models()
        self._unsubscribe = self.store.subscribe(self._on_identities)
        self._on_identities(self.store.list())

        self._set_phase(Phase.CAMERA_INITIALIZING)
        try:
            await _resolve(self.source.open())
        except CameraAccessDenied as exc:
            if generation == self._generation:
                self._fail(exc)
            return self.status
        self._source_open = True
        if generation != self._generation:
            return self.status

        self._set_phase(Phase.CAMERA_READY)
        self._begin_detecting()
        return self.status

    def stop(self) -> None:
        """Cancel pending timers, drop in-flight results and release the camera."""
        self._generation += 1
        self._cancel_timers()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._source_open:
            self.source.close()
            self._source_open = False
        self.liveness.reset()
        self.cooldowns = CooldownRegistry(self.config.session.identity_cooldown_s)
        self._streaks = {}
        self.status.overlay = []
        self.status.consecutive_match_count = 0
        self._set_phase(Phase.IDLE)
        LOGGER.info("Detection session stopped")

    def end_cooldown(self) -> None:
        """Resume detection immediately instead of waiting for the cooldown timer."""
        if self.status.phase == Phase.COOLDOWN:
            self._cancel_timers()
            self._resume(self._generation)

    def _cancel_timers(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._resume_handle is not None:
            self._resume_handle.cancel()
            self._resume_handle = None

    def _fail(self, exc: Exception) -> None:
        LOGGER.error("Detection session failed: %s", exc)
        self._cancel_timers()
        self.status.error = str(exc)
        self._set_phase(Phase.ERROR)

    def _ensure_models(self) -> bool:
        try:
            self.extractor.ensure_ready()
        except ModelLoadFailure as exc:
            LOGGER.warning("Models not ready: %s", exc)
            self.status.models_ready = False
            return False
        self.status.models_ready = True
        return True

    def _on_identities(self, identities) -> None:
        snapshot = list(identities)
        self._identities = {identity.identity_id: identity for identity in snapshot}
        self.matcher.update(snapshot)
        self.status.identities_loaded = len(self.matcher)
        LOGGER.info("Identity snapshot: %d identities, %d enrolled", len(snapshot), len(self.matcher))

    # scheduling

    def _begin_detecting(self) -> None:
        self.liveness.reset()
        self._streaks = {}
        self.status.consecutive_match_count = 0
        self.status.match_in_cooldown = False
        self._set_phase(Phase.DETECTING)
        if self._schedule:
            self._arm()

    def _arm(self) -> None:
        if self._loop is None:
            return
        self._timer = self._loop.call_later(
            self.config.session.tick_interval_s, self._fire, self._generation
        )

    def _fire(self, generation: int) -> None:
        self._timer = None
        if generation != self._generation or self.status.phase != Phase.DETECTING:
            return
        if self.config.session.scheduling == "fixed_interval":
            self._arm()
            if self._busy:
                LOGGER.debug("Tick skipped; previous detection still in flight")
                return
        task = self._loop.create_task(self._scheduled_tick(generation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _scheduled_tick(self, generation: int) -> None:
        try:
            await self.tick()
        except Exception as exc:
            LOGGER.exception("Detection tick crashed")
            if generation == self._generation:
                self._fail(exc)
            return
        if (
            self.config.session.scheduling == "self_rescheduling"
            and generation == self._generation
            and self.status.phase == Phase.DETECTING
            and self._timer is None
        ):
            self._arm()

    def _resume(self, generation: int) -> None:
        self._resume_handle = None
        if generation != self._generation or self.status.phase != Phase.COOLDOWN:
            return
        LOGGER.debug("Cooldown over; resuming detection")
        self._begin_detecting()

    # detection

    async def tick(self) -> Optional[MatchResult]:
        """Run one detection pass. Returns the match that was checked in, if any."""
        if self.status.phase != Phase.DETECTING or self._busy:
            return None
        self._busy = True
        try:
            return await self._detect(self._generation)
        finally:
            self._busy = False

    async def _detect(self, generation: int) -> Optional[MatchResult]:
        if not self.status.models_ready and not self._ensure_models():
            self._emit_status()
            return None

        try:
            capture: Optional[Capture] = await _resolve(self.source.capture())
        except NoFaceDetected:
            capture = None
        except ModelLoadFailure as exc:
            LOGGER.warning("Detector not ready: %s", exc)
            return None
        except CameraAccessDenied as exc:
            if generation == self._generation:
                self._fail(exc)
            return None

        if generation != self._generation:
            LOGGER.debug("Discarding detection that finished after stop")
            return None

        faces = self._faces_for(capture)
        if not faces:
            self._streaks = {}
            self.status.overlay = []
            self.status.consecutive_match_count = 0
            self.status.match_in_cooldown = False
            self._emit_status()
            return None

        primary = capture.primary
        self.liveness.add_frame(primary.landmarks, primary.bbox, primary.depth)
        self._update_liveness_status()

        try:
            observed = self._observe(capture, faces)
        except ModelLoadFailure as exc:
            LOGGER.warning("Extractor not ready: %s", exc)
            self.status.models_ready = False
            self._emit_status()
            return None

        now = self._clock()
        accepted = sorted(
            (item for item in observed if item[2] is not None and item[2].accepted),
            key=lambda item: item[2].distance,
        )
        # Identities absent from this tick drop back to zero.
        self._streaks = {
            identity_id: self._streaks.get(identity_id, 0) + 1
            for identity_id in dict.fromkeys(item[2].identity_id for item in accepted)
        }

        matched = [item[2] for item in observed if item[2] is not None]
        self.status.overlay = [build_overlay_box(face, result) for face, _, result in observed]
        self.status.last_match = min(matched, key=lambda r: r.distance) if matched else None
        self.status.consecutive_match_count = max(self._streaks.values(), default=0)

        winner: Optional[Observation] = None
        in_cooldown = False
        for item in accepted:
            result = item[2]
            if self._streaks[result.identity_id] < self.config.session.consecutive_matches_required:
                continue
            if self.cooldowns.in_cooldown(result.identity_id, now):
                in_cooldown = True
                LOGGER.debug(
                    "%s in cooldown for %.1fs more",
                    result.identity_id,
                    self.cooldowns.remaining(result.identity_id, now),
                )
                continue
            winner = item
            break
        self.status.match_in_cooldown = winner is None and in_cooldown

        if winner is None or not self.liveness.is_live():
            self._emit_status()
            return None
        await self._accept(generation, capture, winner, now)
        return winner[2]

    def _faces_for(self, capture: Optional[Capture]) -> List[FaceObservation]:
        if capture is None or capture.primary is None:
            return []
        if self.config.session.multi_face:
            return list(capture.faces)
        return [capture.primary]

    def _observe(self, capture: Capture, faces: List[FaceObservation]) -> List[Observation]:
        observed: List[Observation] = []
        for face in faces:
            try:
                vector = self.extractor.extract(capture.frame, face)
            except NoFaceDetected as exc:
                LOGGER.debug("Skipping face: %s", exc)
                continue
            observed.append((face, vector, self.matcher.match(vector)))
        return observed

    def _update_liveness_status(self) -> None:
        state = self.liveness.state()
        self.status.liveness_score = state.score
        self.status.movement = state.movement
        self.status.blink = state.blink
        self.status.depth_variation = state.depth_variation
        self.status.pose_variation = state.pose_variation
        self.status.is_live = state.live

    async def _accept(self, generation: int, capture: Capture, winner: Observation, now: float) -> None:
        face, vector, result = winner
        self._cancel_timers()
        self.cooldowns.record(result.identity_id, now)

        identity = self._identities.get(result.identity_id)
        snapshot = None
        if capture.frame is not None:
            crop = crop_to_bbox(capture.frame, face.bbox)
            snapshot = crop.copy() if crop.size else None
        entry = CheckInLogEntry(
            entry_id=uuid.uuid4().hex,
            identity_id=result.identity_id,
            name=result.name,
            timestamp=now,
            similarity=result.similarity,
            avatar_url=identity.avatar_url if identity is not None else None,
            snapshot=snapshot,
        )
        self.log.append(entry)
        self.status.last_match = result
        LOGGER.info(
            "Check-in accepted: %s (%s) distance=%.3f similarity=%.3f liveness=%.2f",
            result.name,
            result.identity_id,
            result.distance,
            result.similarity,
            self.status.liveness_score,
        )
        self._set_phase(Phase.MATCHED)
        for callback in list(self._match_listeners):
            callback(entry, result)

        try:
            await _resolve(self.recorder.record(result.identity_id, now, result.similarity, snapshot))
        except RepositoryWriteFailure as exc:
            # Cooldown and log entry stay applied.
            self.status.failed_writes += 1
            LOGGER.error("Check-in write failed for %s: %s", result.identity_id, exc)

        if self.config.session.learn_from_checkins:
            self._learn(capture, face, vector, result, now)

        if generation != self._generation:
            return
        self._set_phase(Phase.COOLDOWN)
        self._resume_handle = self._loop.call_later(
            self.config.session.checkin_cooldown_s, self._resume, generation
        )

    def _learn(self, capture: Capture, face: FaceObservation, vector: np.ndarray, result: MatchResult, now: float) -> None:
        append = getattr(self.store, "append_embedding", None)
        if append is None:
            LOGGER.warning("Store %s cannot learn from check-ins", type(self.store).__name__)
            return
        quality = assess_quality(capture.frame, face, self.config.quality)
        sample = EmbeddingEntry(
            vector=vector,
            angle=estimate_angle_category(face.landmarks),
            created_at=now,
            quality=quality.score,
        )
        try:
            outcome = append(result.identity_id, sample)
        except RepositoryWriteFailure as exc:
            LOGGER.error("Progressive learning write failed for %s: %s", result.identity_id, exc)
            return
        except KeyError:
            LOGGER.warning("Identity %s was removed before its sample could be learned", result.identity_id)
            return
        size = len(outcome.enrollment) if outcome.enrollment is not None else 0
        LOGGER.info(
            "Progressive learning for %s: %s (quality=%.2f, %d samples)",
            result.identity_id,
            outcome.decision,
            quality.score,
            size,
        )
