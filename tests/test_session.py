import asyncio
from dataclasses import replace
from typing import List, Optional

import numpy as np
import pytest

pytest.importorskip("cv2")

from facecheck.config import EngineConfig
from facecheck.errors import CameraAccessDenied, ModelLoadFailure, RepositoryWriteFailure
from facecheck.session import DetectionSession, Phase
from facecheck.store.memory import InMemoryCheckInRecorder, InMemoryIdentityStore
from facecheck.recognition.enrollment import admit
from facecheck.types import Capture, EmbeddingEntry, FaceObservation, Identity

ENROLLED = np.array([0.2, 0.4, 0.1, 0.8], dtype=np.float32)
STRANGER = np.array([5.0, 5.0, 5.0, 5.0], dtype=np.float32)


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class MovingFaceSource:
    """Face box drifts 10px per capture so movement liveness passes after three frames."""

    def __init__(self, fail_open: bool = False) -> None:
        self.fail_open = fail_open
        self.opened = False
        self.closed = False
        self.calls = 0
        self.gate: Optional[asyncio.Event] = None

    async def open(self) -> None:
        if self.fail_open:
            raise CameraAccessDenied("permission denied")
        self.opened = True

    async def capture(self) -> Capture:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        shift = 10.0 * self.calls
        face = FaceObservation(bbox=(shift, 20.0, shift + 120.0, 140.0), score=0.99)
        return Capture(timestamp=float(self.calls), frame=None, faces=[face])

    def close(self) -> None:
        self.closed = True


class ScriptedExtractor:
    name = "scripted"
    dimension = 4

    def __init__(self, vectors: Optional[List[np.ndarray]] = None, ready: bool = True) -> None:
        self.vectors = list(vectors or [])
        self.ready = ready

    def ensure_ready(self) -> None:
        if not self.ready:
            raise ModelLoadFailure("weights missing")

    def extract(self, frame, face) -> np.ndarray:
        if self.vectors:
            return self.vectors.pop(0)
        return ENROLLED


class FailingRecorder:
    def record(self, identity_id, timestamp, similarity, snapshot=None) -> None:
        raise RepositoryWriteFailure("database offline")


def build_session(config: Optional[EngineConfig] = None, extractor=None, recorder=None, source=None, clock=None, store=None):
    if store is None:
        store = InMemoryIdentityStore([Identity(identity_id="a", name="Alice", legacy_vector=ENROLLED)])
    session = DetectionSession(
        store,
        source or MovingFaceSource(),
        extractor or ScriptedExtractor(),
        recorder if recorder is not None else InMemoryCheckInRecorder(),
        config or EngineConfig(),
        clock=clock or FakeClock(),
    )
    return session


async def tick_times(session: DetectionSession, count: int):
    results = []
    for _ in range(count):
        results.append(await session.tick())
    return results


def test_exact_match_checks_in_once():
    async def scenario():
        session = build_session()
        status = await session.start(schedule=False)
        assert status.phase == Phase.DETECTING
        assert status.identities_loaded == 1
        results = await tick_times(session, 5)
        phase = session.phase
        session.stop()
        return session, results, phase

    session, results, phase = asyncio.run(scenario())
    assert results[0] is None and results[1] is None
    accepted = results[2]
    assert accepted.identity_id == "a"
    assert accepted.similarity == 1.0
    assert results[3:] == [None, None]
    assert phase == Phase.COOLDOWN
    assert len(session.recorder) == 1
    assert len(session.log) == 1
    assert session.log.entries()[0].name == "Alice"
    assert session.phase == Phase.IDLE


def test_identity_cooldown_blocks_second_checkin():
    async def scenario():
        clock = FakeClock(0.0)
        session = build_session(clock=clock)
        await session.start(schedule=False)
        await tick_times(session, 3)
        assert session.phase == Phase.COOLDOWN

        clock.now = 10.0
        session.end_cooldown()
        assert session.phase == Phase.DETECTING
        results = await tick_times(session, 4)
        in_cooldown = session.status.match_in_cooldown
        session.stop()
        return session, results, in_cooldown

    session, results, in_cooldown = asyncio.run(scenario())
    assert results == [None, None, None, None]
    assert in_cooldown
    assert len(session.recorder) == 1
    assert len(session.log) == 1


def test_identity_can_check_in_again_after_window():
    async def scenario():
        clock = FakeClock(0.0)
        session = build_session(clock=clock)
        await session.start(schedule=False)
        await tick_times(session, 3)
        clock.now = 31.0
        session.end_cooldown()
        results = await tick_times(session, 3)
        session.stop()
        return session, results

    session, results = asyncio.run(scenario())
    assert results[2] is not None
    assert len(session.recorder) == 2
    assert [e.timestamp for e in session.log] == [31.0, 0.0]


def test_stranger_is_never_checked_in():
    async def scenario():
        session = build_session(extractor=ScriptedExtractor([STRANGER] * 6))
        await session.start(schedule=False)
        results = await tick_times(session, 6)
        status = replace(session.status, overlay=list(session.status.overlay))
        session.stop()
        return session, results, status

    session, results, status = asyncio.run(scenario())
    assert results == [None] * 6
    assert status.is_live
    assert status.last_match.identity_id == "a"
    assert not status.last_match.accepted
    assert len(status.overlay) == 1
    assert status.overlay[0].label is None
    assert len(session.recorder) == 0


def test_consecutive_match_debounce():
    config = EngineConfig()
    config.session.multi_face = True
    config.session.consecutive_matches_required = 3
    script = [ENROLLED, ENROLLED, STRANGER, ENROLLED, ENROLLED, ENROLLED]

    async def scenario():
        session = build_session(config=config, extractor=ScriptedExtractor(script))
        await session.start(schedule=False)
        results = await tick_times(session, 6)
        session.stop()
        return results

    results = asyncio.run(scenario())
    assert results[:5] == [None] * 5
    assert results[5].identity_id == "a"


def test_write_failure_still_applies_cooldown():
    async def scenario():
        session = build_session(recorder=FailingRecorder())
        await session.start(schedule=False)
        results = await tick_times(session, 3)
        failed_writes = session.status.failed_writes
        phase = session.phase
        cooling = "a" in session.cooldowns
        session.stop()
        return session, results, failed_writes, phase, cooling

    session, results, failed_writes, phase, cooling = asyncio.run(scenario())
    assert results[2] is not None
    assert failed_writes == 1
    assert phase == Phase.COOLDOWN
    assert cooling
    assert len(session.log) == 1


def test_camera_denied_moves_to_error():
    async def scenario():
        source = MovingFaceSource(fail_open=True)
        session = build_session(source=source)
        status = await session.start(schedule=False)
        return session, status

    session, status = asyncio.run(scenario())
    assert status.phase == Phase.ERROR
    assert "permission denied" in status.error
    assert not session.source.opened


def test_model_failure_degrades_without_detecting():
    async def scenario():
        extractor = ScriptedExtractor(ready=False)
        session = build_session(extractor=extractor)
        status = await session.start(schedule=False)
        models_ready = status.models_ready
        first = await session.tick()
        extractor.ready = True
        await tick_times(session, 3)
        ready_after = session.status.models_ready
        session.stop()
        return models_ready, first, ready_after, session

    models_ready, first, ready_after, session = asyncio.run(scenario())
    assert not models_ready
    assert first is None
    assert ready_after
    assert session.source.calls == 3


def test_stop_discards_in_flight_detection():
    async def scenario():
        source = MovingFaceSource()
        session = build_session(source=source)
        await session.start(schedule=False)
        await tick_times(session, 2)

        source.gate = asyncio.Event()
        pending = asyncio.ensure_future(session.tick())
        await asyncio.sleep(0)
        session.stop()
        source.gate.set()
        result = await pending
        return session, source, result

    session, source, result = asyncio.run(scenario())
    assert result is None
    assert source.closed
    assert session.phase == Phase.IDLE
    assert len(session.recorder) == 0
    assert len(session.log) == 0
    assert len(session.liveness) == 0


def test_status_listeners_and_unsubscribe():
    phases = []
    matched = []

    async def scenario():
        session = build_session()
        unsubscribe = session.on_status(lambda status: phases.append(status.phase))
        session.on_matched(lambda entry, result: matched.append((entry.identity_id, result.similarity)))
        await session.start(schedule=False)
        await tick_times(session, 3)
        unsubscribe()
        session.stop()

    asyncio.run(scenario())
    assert phases[:4] == [Phase.LOADING, Phase.CAMERA_INITIALIZING, Phase.CAMERA_READY, Phase.DETECTING]
    assert Phase.MATCHED in phases
    assert phases[-1] == Phase.COOLDOWN
    assert matched == [("a", 1.0)]


def test_store_updates_reach_running_session():
    async def scenario():
        session = build_session()
        await session.start(schedule=False)
        session.store.add_identity(Identity(identity_id="b", name="Bob", legacy_vector=STRANGER))
        loaded = session.status.identities_loaded
        session.stop()
        session.store.add_identity(Identity(identity_id="c", name="Carol", legacy_vector=STRANGER))
        return loaded, session.status.identities_loaded

    loaded, after_stop = asyncio.run(scenario())
    assert loaded == 2
    assert after_stop == 2


@pytest.mark.parametrize("scheduling", ["self_rescheduling", "fixed_interval"])
def test_scheduled_loop_checks_in_and_stops_cleanly(scheduling):
    config = EngineConfig()
    config.session.tick_interval_s = 0.01
    config.session.scheduling = scheduling

    async def scenario():
        session = build_session(config=config)
        await session.start()
        for _ in range(200):
            if session.phase == Phase.COOLDOWN:
                break
            await asyncio.sleep(0.01)
        phase = session.phase
        session.stop()
        timers = (session._timer, session._resume_handle)
        calls = session.source.calls
        await asyncio.sleep(0.05)
        return session, phase, timers, calls

    session, phase, timers, calls = asyncio.run(scenario())
    assert phase == Phase.COOLDOWN
    assert timers == (None, None)
    assert session.source.calls == calls
    assert len(session.recorder) == 1


def enrolled_store() -> InMemoryIdentityStore:
    enrollment = admit(None, EmbeddingEntry(vector=ENROLLED, quality=0.9), now=0.0)
    return InMemoryIdentityStore([Identity(identity_id="a", name="Alice", enrollment=enrollment)], clock=FakeClock())


def test_learning_from_checkin_grows_enrollment():
    config = EngineConfig()
    config.session.learn_from_checkins = True
    store = enrolled_store()

    async def scenario():
        session = build_session(config=config, store=store)
        await session.start(schedule=False)
        results = await tick_times(session, 3)
        phase = session.phase
        session.stop()
        return results, phase

    results, phase = asyncio.run(scenario())
    assert results[2].identity_id == "a"
    assert phase == Phase.COOLDOWN
    enrollment = store.get_enrollment("a")
    assert len(enrollment) == 2
    assert enrollment.entries[-1].quality == pytest.approx(1.0)
    assert enrollment.entries[-1].angle == "front"


def test_learning_rejects_low_quality_sample():
    config = EngineConfig()
    config.session.learn_from_checkins = True
    config.quality.min_face_size = 200.0
    config.quality.min_confidence = 1.0
    store = enrolled_store()
    before = store.get_enrollment("a")

    async def scenario():
        session = build_session(config=config, store=store)
        await session.start(schedule=False)
        results = await tick_times(session, 3)
        session.stop()
        return results

    results = asyncio.run(scenario())
    assert results[2] is not None
    assert store.get_enrollment("a") is before
    assert len(before) == 1


class RemovingRecorder(InMemoryCheckInRecorder):
    """Deletes the identity while the check-in write is pending."""

    def __init__(self, store: InMemoryIdentityStore) -> None:
        super().__init__()
        self.store = store

    async def record(self, identity_id, timestamp, similarity, snapshot=None) -> None:
        await asyncio.sleep(0)
        super().record(identity_id, timestamp, similarity, snapshot)
        self.store.remove_identity(identity_id)


def test_identity_removed_during_write_keeps_session_running():
    config = EngineConfig()
    config.session.learn_from_checkins = True
    store = enrolled_store()
    recorder = RemovingRecorder(store)

    async def scenario():
        session = build_session(config=config, store=store, recorder=recorder)
        await session.start(schedule=False)
        results = await tick_times(session, 3)
        status = replace(session.status, overlay=list(session.status.overlay))
        session.stop()
        return results, status

    results, status = asyncio.run(scenario())
    assert results[2].identity_id == "a"
    assert status.phase == Phase.COOLDOWN
    assert status.error is None
    assert status.identities_loaded == 0
    assert len(recorder) == 1
    assert store.list() == []


def test_scheduled_ticks_are_referenced_until_done():
    config = EngineConfig()
    config.session.tick_interval_s = 0.01

    async def scenario():
        source = MovingFaceSource()
        source.gate = asyncio.Event()
        session = build_session(config=config, source=source)
        await session.start()
        await asyncio.sleep(0.05)
        pending = [task for task in session._tasks if not task.done()]
        session.stop()
        source.gate.set()
        await asyncio.sleep(0.05)
        return pending, set(session._tasks)

    pending, remaining = asyncio.run(scenario())
    assert len(pending) == 1
    assert pending[0].done()
    assert remaining == set()
