from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Dict, Optional, Any, Literal
from enum import Enum
import uuid


class EventType(str, Enum):
    """Closed set of integrity events shared by analyzers, storage and scorer"""
    LOOKING_AWAY = "LookingAway"
    NO_FACE = "NoFace"
    MULTIPLE_FACES = "MultipleFaces"
    PHONE_DETECTED = "PhoneDetected"
    NOTES_DETECTED = "NotesDetected"
    EXTRA_DEVICE_DETECTED = "ExtraDeviceDetected"


FocusState = Literal["focused", "warning", "alert"]


def new_event_id() -> str:
    return str(uuid.uuid4())


class ProctorEvent(BaseModel):
    """Single integrity event raised by an analyzer"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(default_factory=new_event_id, min_length=1)
    ts: int = Field(ge=0)  # epoch ms
    type: EventType
    duration: Optional[int] = Field(default=None, ge=0)
    meta: Optional[Dict[str, Any]] = None
    frame_thumb: Optional[str] = Field(default=None, alias="frameThumb")


class FocusThresholds(BaseModel):
    """Thresholds driving the face-pose state machine, fixed for a session"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    looking_away_seconds: float = Field(default=5.0, alias="lookingAwaySeconds", ge=0)
    no_face_seconds: float = Field(default=10.0, alias="noFaceSeconds", ge=0)
    multiple_faces_seconds: float = Field(default=2.0, alias="multipleFacesSeconds", ge=0)
    yaw_degrees: float = Field(default=20.0, alias="yawDegrees")
    pitch_degrees: float = Field(default=15.0, alias="pitchDegrees")
    sampling_fps: float = Field(default=8.0, alias="samplingFps", gt=0)
    breach_ratio: float = Field(default=0.7, alias="breachRatio", ge=0.0, le=1.0)


class ObjectDetectionConfig(BaseModel):
    """Runtime configuration for the object detector"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    model_url: str = Field(default="models/yolo-detector.onnx", alias="modelUrl")
    input_size: int = Field(default=256, alias="inputSize", gt=0)
    classes: List[str] = Field(
        default_factory=lambda: ["phone", "book", "notebook", "paper", "laptop", "keyboard", "monitor"]
    )
    confidence_threshold: float = Field(default=0.6, alias="confidenceThreshold", ge=0.0, le=1.0)
    nms_iou: float = Field(default=0.45, alias="nmsIou", ge=0.0, le=1.0)
    inference_interval: int = Field(default=3, alias="inferenceInterval", ge=1)
    backend: str = "cpu"


class BoundingBox(BaseModel):
    """Normalized box relative to the source frame"""
    x: float
    y: float
    width: float
    height: float


class FaceBox(BaseModel):
    """Normalized extent of the primary face landmarks"""
    model_config = ConfigDict(populate_by_name=True)

    min_x: float = Field(alias="minX")
    min_y: float = Field(alias="minY")
    max_x: float = Field(alias="maxX")
    max_y: float = Field(alias="maxY")


class ObjectDetectionResult(BaseModel):
    """One detection surviving decode and NMS"""
    model_config = ConfigDict(populate_by_name=True)

    class_name: str = Field(alias="className")
    score: float
    bbox: BoundingBox


class FocusStatePayload(BaseModel):
    """Per-frame output of the face-pose analyzer"""
    model_config = ConfigDict(populate_by_name=True)

    focus_state: FocusState = Field(alias="focusState")
    yaw: Optional[float] = None
    pitch: Optional[float] = None
    face_count: int = Field(alias="faceCount")
    ratio: float = 0.0
    timestamp: int
    bbox: Optional[FaceBox] = None


class FocusEventPayload(BaseModel):
    """Event raised by the face-pose state machine"""
    model_config = ConfigDict(populate_by_name=True)

    type: EventType
    start_ts: int = Field(alias="startTs")
    end_ts: int = Field(alias="endTs")
    duration_ms: int = Field(alias="durationMs")
    meta: Optional[Dict[str, Any]] = None


class ReportCountsByType(BaseModel):
    """Per-type event counts; every event type is always present"""
    LookingAway: int = 0
    NoFace: int = 0
    MultipleFaces: int = 0
    PhoneDetected: int = 0
    NotesDetected: int = 0
    ExtraDeviceDetected: int = 0


class IntegrityTimelinePoint(BaseModel):
    ts: int
    score: int


class IntegrityReport(BaseModel):
    """Scored report derived from a session's event log"""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    integrity_score: int = Field(alias="integrityScore", ge=0, le=100)
    counts_by_type: ReportCountsByType = Field(alias="countsByType")
    duration_ms: int = Field(alias="durationMs", ge=0)
    timeline: List[IntegrityTimelinePoint] = []


class EventEpisode(BaseModel):
    """Run of same-type events not separated by a cooldown gap"""
    model_config = ConfigDict(populate_by_name=True)

    type: EventType
    started_at: int = Field(alias="startedAt")
    ended_at: int = Field(alias="endedAt")
    count: int = 1


class SessionVideoReference(BaseModel):
    url: Optional[str] = None
    bytes: Optional[int] = None


class SessionMetrics(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    avg_fps: float = Field(default=0.0, alias="avgFps")
    dropped_frames: int = Field(default=0, alias="droppedFrames")


class SessionData(BaseModel):
    """Stored proctoring session and its event log"""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    candidate_name: str = Field(alias="candidateName", min_length=1)
    candidate_id: Optional[str] = Field(default=None, alias="candidateId")
    started_at: int = Field(alias="startedAt")
    ended_at: Optional[int] = Field(default=None, alias="endedAt")
    events: List[ProctorEvent] = []
    video_ref: Optional[SessionVideoReference] = Field(default=None, alias="videoRef")
    metrics: Optional[SessionMetrics] = None


class CreateSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    candidate_name: str = Field(alias="candidateName", min_length=1)
    candidate_id: Optional[str] = Field(default=None, alias="candidateId")


class AppendEventsRequest(BaseModel):
    events: List[ProctorEvent] = Field(min_length=1)

    @field_validator("events")
    @classmethod
    def _unique_ids(cls, events: List[ProctorEvent]) -> List[ProctorEvent]:
        ids = [event.id for event in events]
        if len(ids) != len(set(ids)):
            raise ValueError("event ids must be unique within a batch")
        return events
