"""
Tests for the live proctoring session runtime
"""
import asyncio

import numpy as np
import pytest

from focus_proctor.config import Settings
from focus_proctor.detection.gaze_detector import FrameAnalysis
from focus_proctor.models.detection_models import (
    BoundingBox,
    EventType,
    FocusEventPayload,
    FocusStatePayload,
    ObjectDetectionResult,
)
from focus_proctor.models.messages import (
    ErrorMessage,
    ErrorPayload,
    EventMessage,
    ResultsMessage,
    ResultsPayload,
    StateMessage,
)
from focus_proctor.pipeline.session import ProctoringSession
from focus_proctor.pipeline.video_source import FrameBufferSource


async def wait_until(condition, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class StubGaze:
    """GazeDetector stand-in reporting a NoFace event for every frame"""

    def __init__(self):
        self.frames = []
        self.resets = 0
        self.initialized = 0

    async def initialize(self):
        self.initialized += 1

    async def process_frame(self, frame, timestamp):
        self.frames.append(frame)
        return FrameAnalysis(
            state=FocusStatePayload(focus_state="alert", face_count=0, timestamp=timestamp),
            events=[FocusEventPayload(type=EventType.NO_FACE, start_ts=timestamp - 10000,
                                      end_ts=timestamp, duration_ms=10000)],
        )

    def reset(self):
        self.resets += 1

    def close(self):
        pass


class StubObjects:
    def __init__(self):
        self.frames = []

    async def initialize(self):
        pass

    async def detect(self, frame):
        self.frames.append(frame)
        return []

    def reset(self):
        pass

    def close(self):
        pass


@pytest.fixture
def settings():
    return Settings(FLUSH_INTERVAL_SECONDS=60, OBJECT_ENABLED=True)


@pytest.fixture
def source():
    return FrameBufferSource()


def make_session(store, source, settings, session_id, **kwargs):
    return ProctoringSession(session_id, store, source, settings,
                             gaze_detector=kwargs.pop("gaze", StubGaze()),
                             object_detector=kwargs.pop("objects", StubObjects()),
                             **kwargs)


class TestMessageHandling:
    """Tests for turning worker output into events"""

    @pytest.mark.asyncio
    async def test_focus_event_becomes_proctor_event(self, store, source, settings):
        session_id = await store.create_session("Ada")
        forwarded = []
        session = make_session(store, source, settings, session_id, on_message=forwarded.append)

        message = EventMessage(payload=FocusEventPayload(
            type=EventType.LOOKING_AWAY, start_ts=1000, end_ts=6000, duration_ms=5000, meta={"yaw": 30.0}
        ))
        await session._handle_message(message)

        events = session.aggregator.drain()
        assert len(events) == 1
        assert events[0].type == EventType.LOOKING_AWAY
        assert events[0].duration == 5000
        assert events[0].meta == {"yaw": 30.0}
        assert forwarded == [message]

    @pytest.mark.asyncio
    async def test_state_updates_focus_state(self, store, source, settings):
        session = make_session(store, source, settings, "s1")
        await session._handle_message(StateMessage(payload=FocusStatePayload(
            focus_state="warning", face_count=2, timestamp=1
        )))

        assert session.focus_state == "warning"
        assert len(session.aggregator) == 0

    @pytest.mark.asyncio
    async def test_mapped_detections_become_events_with_thumbnail(self, store, source, settings):
        session = make_session(store, source, settings, "s1")
        source.push(np.zeros((240, 320, 3), dtype=np.uint8))
        bbox = BoundingBox(x=0.1, y=0.2, width=0.3, height=0.4)

        await session._handle_message(ResultsMessage(payload=ResultsPayload(timestamp=42, detections=[
            ObjectDetectionResult(class_name="cell phone", score=0.8, bbox=bbox),
            ObjectDetectionResult(class_name="person", score=0.9, bbox=bbox),
        ])))

        events = session.aggregator.drain()
        assert [e.type for e in events] == [EventType.PHONE_DETECTED]
        assert events[0].meta == {"score": 0.8, "bbox": bbox.model_dump(), "sourceTs": 42}
        assert events[0].frame_thumb.startswith("data:image/jpeg;base64,")
        assert len(session.last_detections) == 2

    @pytest.mark.asyncio
    async def test_errors_reach_error_channel_once(self, store, source, settings):
        errors = []
        session = make_session(store, source, settings, "s1", on_error=errors.append)
        message = ErrorMessage(payload=ErrorPayload(message="Failed to load face models", fatal=True))

        await session._handle_message(message)
        await session._handle_message(message)

        assert errors == ["Failed to load face models"]

    def test_object_worker_optional(self, store, source):
        session = make_session(store, source, Settings(OBJECT_ENABLED=False), "s1")

        assert session.object_worker is None
        assert len(session.scheduler.consumers) == 1
        assert session.scheduler.consumers[0].max_side == 360


class TestLifecycle:
    """Tests for start, pause and stop"""

    @pytest.mark.asyncio
    async def test_frames_flow_to_storage(self, store, source, settings):
        session_id = await store.create_session("Ada")
        gaze, objects = StubGaze(), StubObjects()
        session = make_session(store, source, settings, session_id, gaze=gaze, objects=objects)

        await session.start()
        await wait_until(lambda: session.focus_worker.ready and session.object_worker.ready)

        source.push(np.zeros((480, 640, 3), dtype=np.uint8))
        await wait_until(lambda: gaze.frames and objects.frames)
        await wait_until(lambda: session.focus_state == "alert")

        await session.stop()

        stored = await store.get_session(session_id)
        assert [e.type for e in stored.events] == [EventType.NO_FACE]
        assert stored.events[0].duration == 10000
        assert stored.ended_at is not None
        assert stored.metrics is not None
        assert max(gaze.frames[0].shape[:2]) == 360
        assert max(objects.frames[0].shape[:2]) == 640

    @pytest.mark.asyncio
    async def test_pause_restarts_workers_clean(self, store, source, settings):
        session_id = await store.create_session("Ada")
        gaze = StubGaze()
        session = make_session(store, source, settings, session_id, gaze=gaze)

        await session.start()
        await wait_until(lambda: session.focus_worker.ready)

        await session.set_analysis_enabled(False)
        assert session.focus_worker.running is False
        assert session.focus_worker.try_submit(np.zeros((4, 4, 3), np.uint8), 1) is False

        await session.set_analysis_enabled(True)
        await wait_until(lambda: session.focus_worker.ready)
        assert gaze.initialized == 2

        await session.stop()

    @pytest.mark.asyncio
    async def test_reset_clears_analyzers(self, store, source, settings):
        gaze = StubGaze()
        session = make_session(store, source, settings, "s1", gaze=gaze)
        session.focus_state = "alert"

        session.reset()

        assert gaze.resets == 1
        assert session.focus_state == "focused"
