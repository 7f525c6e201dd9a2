import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..models.detection_models import (
    EventType,
    FaceBox,
    FocusEventPayload,
    FocusState,
    FocusStatePayload,
    FocusThresholds,
)
from .face_detector import FaceLandmarkDetector
from .head_pose import Landmark, compute_bounding_box, compute_pitch, compute_yaw

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_MS = 1500

# Fraction of the breach ratio at which the coarse state turns to "warning"
WARNING_RATIO_FACTOR = 0.6


def _event_timestamp_map() -> Dict[EventType, int]:
    return {event_type: 0 for event_type in EventType}


@dataclass
class DetectionState:
    """Mutable per-session state of the face-pose state machine"""
    look_window: List[Tuple[int, bool]] = field(default_factory=list)
    # Timestamp of the oldest observation in the current uninterrupted window
    observing_since: Optional[int] = None
    look_event_armed: bool = True
    last_events: Dict[EventType, int] = field(default_factory=_event_timestamp_map)
    no_face_start: Optional[int] = None
    multi_face_start: Optional[int] = None
    focus_state: FocusState = "focused"


@dataclass
class FrameAnalysis:
    """Result of one analyzed frame: exactly one state, zero or more events"""
    state: FocusStatePayload
    events: List[FocusEventPayload] = field(default_factory=list)


class GazeDetector:
    """Gaze and focus tracking on top of Face Mesh landmarks.

    Converts per-frame head pose into durable integrity events:
    LookingAway (sustained look-away ratio over a sliding window), NoFace and
    MultipleFaces (conditions held for a threshold, recurring while they
    persist). Every event type has its own cooldown.
    """

    def __init__(self, thresholds: FocusThresholds, cooldown_ms: int = DEFAULT_COOLDOWN_MS,
                 landmark_detector: Optional[FaceLandmarkDetector] = None):
        self.thresholds = thresholds
        self.cooldown_ms = cooldown_ms
        self.landmark_detector = landmark_detector or FaceLandmarkDetector()
        self.state = DetectionState()

    @property
    def is_ready(self) -> bool:
        return self.landmark_detector.is_ready

    async def initialize(self):
        """Load the landmark model and start from a clean state"""
        self.reset()
        await self.landmark_detector.initialize()

    def reset(self):
        """Clear all detection state; the landmark model stays loaded"""
        self.state = DetectionState()

    def close(self):
        self.landmark_detector.close()

    async def process_frame(self, frame: np.ndarray, timestamp: int) -> FrameAnalysis:
        """Run landmark extraction on a frame and advance the state machine"""
        faces = await self.landmark_detector.detect(frame)
        return self.analyze(faces, timestamp)

    def analyze(self, faces: Sequence[Sequence[Landmark]], timestamp: int) -> FrameAnalysis:
        """Advance the state machine with the faces found at `timestamp` (epoch ms)"""
        thresholds = self.thresholds
        state = self.state
        events: List[FocusEventPayload] = []
        window_ms = thresholds.looking_away_seconds * 1000

        face_count = len(faces)
        primary = faces[0] if face_count > 0 else None

        yaw: Optional[float] = None
        pitch: Optional[float] = None
        ratio = 0.0
        bbox: Optional[FaceBox] = None

        if primary:
            yaw = compute_yaw(primary)
            pitch = compute_pitch(primary)
            bbox = compute_bounding_box(primary)
            flagged = abs(yaw) > thresholds.yaw_degrees or pitch > thresholds.pitch_degrees

            if not state.look_window:
                state.observing_since = timestamp
            state.look_window.append((timestamp, flagged))
            self._prune_window(timestamp, window_ms)

            total = len(state.look_window)
            flagged_count = sum(1 for _, is_flagged in state.look_window if is_flagged)
            ratio = flagged_count / total if total else 0.0

            self._handle_look_away(yaw, pitch, ratio, bbox, timestamp, events)
            state.no_face_start = None
        else:
            self._prune_window(timestamp, window_ms)
            if not state.look_window:
                state.look_event_armed = True
            self._handle_no_face(timestamp, events)

        if face_count >= 2:
            self._handle_multiple_faces(timestamp, face_count, events)
        else:
            state.multi_face_start = None

        focus_state = self._classify(face_count if primary else 0, ratio, timestamp)
        state.focus_state = focus_state

        payload = FocusStatePayload(
            focus_state=focus_state,
            yaw=yaw,
            pitch=pitch,
            face_count=face_count,
            ratio=ratio,
            timestamp=timestamp,
            bbox=bbox,
        )
        return FrameAnalysis(state=payload, events=events)

    def _prune_window(self, timestamp: int, window_ms: float):
        state = self.state
        state.look_window = [entry for entry in state.look_window if timestamp - entry[0] <= window_ms]
        if not state.look_window:
            state.observing_since = None
        else:
            oldest = state.look_window[0][0]
            if state.observing_since is None or state.observing_since > oldest:
                state.observing_since = oldest

    def _cooled_down(self, event_type: EventType, timestamp: int) -> bool:
        return timestamp - self.state.last_events[event_type] >= self.cooldown_ms

    def _trigger(self, payload: FocusEventPayload, events: List[FocusEventPayload]):
        self.state.last_events[payload.type] = payload.end_ts
        events.append(payload)
        logger.debug(f"Focus event {payload.type.value} ({payload.duration_ms} ms)")

    def _handle_look_away(self, yaw: float, pitch: float, ratio: float, bbox: FaceBox,
                          timestamp: int, events: List[FocusEventPayload]):
        state = self.state
        thresholds = self.thresholds
        window_ms = thresholds.looking_away_seconds * 1000
        earliest = state.look_window[0][0] if state.look_window else timestamp
        observed_since = state.observing_since if state.observing_since is not None else earliest

        if (
            ratio >= thresholds.breach_ratio
            and timestamp - observed_since >= window_ms
            and state.look_event_armed
            and self._cooled_down(EventType.LOOKING_AWAY, timestamp)
        ):
            first_flagged = next((ts for ts, flagged in state.look_window if flagged), None)
            start_ts = first_flagged if first_flagged is not None else earliest
            self._trigger(
                FocusEventPayload(
                    type=EventType.LOOKING_AWAY,
                    start_ts=start_ts,
                    end_ts=timestamp,
                    duration_ms=timestamp - start_ts,
                    meta={
                        "yaw": yaw,
                        "pitch": pitch,
                        "ratio": ratio,
                        "bbox": bbox.model_dump(by_alias=True),
                    },
                ),
                events,
            )
            state.look_event_armed = False

        if ratio < thresholds.breach_ratio * 0.5 or not state.look_window:
            state.look_event_armed = True

    def _handle_no_face(self, timestamp: int, events: List[FocusEventPayload]):
        state = self.state
        if state.no_face_start is None:
            state.no_face_start = timestamp
        elapsed = timestamp - state.no_face_start

        if (
            elapsed >= self.thresholds.no_face_seconds * 1000
            and self._cooled_down(EventType.NO_FACE, timestamp)
        ):
            self._trigger(
                FocusEventPayload(
                    type=EventType.NO_FACE,
                    start_ts=state.no_face_start,
                    end_ts=timestamp,
                    duration_ms=elapsed,
                ),
                events,
            )
            # Restart the timer so the event recurs while the face stays absent
            state.no_face_start = timestamp

    def _handle_multiple_faces(self, timestamp: int, face_count: int, events: List[FocusEventPayload]):
        state = self.state
        if state.multi_face_start is None:
            state.multi_face_start = timestamp
        elapsed = timestamp - state.multi_face_start

        if (
            elapsed >= self.thresholds.multiple_faces_seconds * 1000
            and self._cooled_down(EventType.MULTIPLE_FACES, timestamp)
        ):
            self._trigger(
                FocusEventPayload(
                    type=EventType.MULTIPLE_FACES,
                    start_ts=state.multi_face_start,
                    end_ts=timestamp,
                    duration_ms=elapsed,
                    meta={"faceCount": face_count},
                ),
                events,
            )
            state.multi_face_start = timestamp

    def _classify(self, face_count: int, ratio: float, timestamp: int) -> FocusState:
        state = self.state
        thresholds = self.thresholds

        if face_count == 0:
            elapsed = timestamp - state.no_face_start if state.no_face_start is not None else 0
            return "alert" if elapsed >= thresholds.no_face_seconds * 1000 else "warning"
        if face_count >= 2:
            elapsed = timestamp - state.multi_face_start if state.multi_face_start is not None else 0
            return "alert" if elapsed >= thresholds.multiple_faces_seconds * 1000 else "warning"
        if ratio >= thresholds.breach_ratio * WARNING_RATIO_FACTOR:
            return "warning"
        return "focused"
