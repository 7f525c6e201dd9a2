import inspect
import logging
from typing import Callable, List, Optional

from ..config import FACE_FRAME_MAX_SIDE, OBJECT_FRAME_MAX_SIDE, Settings
from ..detection.face_detector import FaceLandmarkDetector
from ..detection.gaze_detector import GazeDetector
from ..detection.object_detector import ObjectDetector, map_detection_to_event_type
from ..models.detection_models import (
    FocusState,
    ObjectDetectionResult,
    ProctorEvent,
    SessionMetrics,
)
from ..models.messages import (
    ErrorMessage,
    EventMessage,
    OutboundMessage,
    ReadyMessage,
    ResultsMessage,
    StateMessage,
)
from ..utils.logger import ErrorChannel
from ..utils.video import capture_frame_thumbnail, now_ms
from .aggregator import EventAggregator, EventFlusher
from .scheduler import FrameConsumer, FrameScheduler
from .workers import AnalyzerWorker, FocusWorker, ObjectWorker

logger = logging.getLogger(__name__)


def build_gaze_detector(settings: Settings) -> GazeDetector:
    return GazeDetector(
        settings.focus_thresholds(),
        cooldown_ms=settings.COOLDOWN_MS,
        landmark_detector=FaceLandmarkDetector(
            model_path=settings.FACE_MODEL_PATH,
            max_num_faces=settings.FACE_MAX_FACES,
            min_detection_confidence=settings.FACE_MIN_DETECTION_CONFIDENCE,
            min_tracking_confidence=settings.FACE_MIN_TRACKING_CONFIDENCE,
        ),
    )


class ProctoringSession:
    """One live proctoring session: scheduler, both workers, event batching"""

    def __init__(self, session_id: str, storage, source, settings: Settings,
                 gaze_detector: Optional[GazeDetector] = None,
                 object_detector: Optional[ObjectDetector] = None,
                 on_message: Optional[Callable[[OutboundMessage], object]] = None,
                 on_error: Optional[Callable[[str], object]] = None):
        self.session_id = session_id
        self.storage = storage
        self.source = source
        self.settings = settings
        self.on_message = on_message

        self.errors = ErrorChannel(sink=on_error, logger=logger)
        self.aggregator = EventAggregator()
        self.flusher = EventFlusher(
            self.aggregator, storage, session_id,
            interval_seconds=settings.FLUSH_INTERVAL_SECONDS,
            on_error=self.errors,
        )

        self.focus_worker = FocusWorker(gaze_detector or build_gaze_detector(settings), self._handle_message)
        self.object_worker: Optional[ObjectWorker] = None
        if settings.OBJECT_ENABLED:
            self.object_worker = ObjectWorker(
                object_detector or ObjectDetector(settings.object_config()),
                self._handle_message,
            )

        consumers = [FrameConsumer(self.focus_worker, FACE_FRAME_MAX_SIDE)]
        if self.object_worker is not None:
            consumers.append(
                FrameConsumer(self.object_worker, OBJECT_FRAME_MAX_SIDE, settings.object_frame_interval_ms)
            )
        self.scheduler = FrameScheduler(source, consumers, settings.effective_fps, on_error=self.errors)

        self.focus_state: FocusState = "focused"
        self.last_detections: List[ObjectDetectionResult] = []
        self.active = False
        self.analysis_enabled = False

    @property
    def workers(self) -> List[AnalyzerWorker]:
        return [w for w in (self.focus_worker, self.object_worker) if w is not None]

    async def start(self):
        if self.active:
            return
        self.active = True
        self._start_workers()
        self.flusher.start()
        self.scheduler.start()
        logger.info(f"🚀 Proctoring session {self.session_id} started")

    async def stop(self):
        """Stop analysis, flush remaining events and close the session in storage"""
        if not self.active:
            return
        self.active = False
        await self.scheduler.stop()
        await self._stop_workers()
        await self.flusher.stop()
        self.source.close()

        metrics = SessionMetrics(avg_fps=round(self.scheduler.avg_fps, 2),
                                 dropped_frames=self.scheduler.dropped_frames)
        try:
            await self.storage.end_session(self.session_id, metrics)
        except Exception as e:
            logger.error(f"Failed to end session {self.session_id}: {e}")
            self.errors(str(e) or "Failed to end session")
        logger.info(f"🏁 Proctoring session {self.session_id} stopped")

    def reset(self):
        """Clear analyzer state without reloading models"""
        for worker in self.workers:
            worker.reset()
        self.focus_state = "focused"
        self.last_detections = []

    async def set_analysis_enabled(self, enabled: bool):
        """Pause (terminating the workers) or resume analysis, e.g. on tab visibility"""
        if not self.active or enabled == self.analysis_enabled:
            return
        if enabled:
            self._start_workers()
        else:
            await self._stop_workers()

    def _start_workers(self):
        for worker in self.workers:
            worker.start()
        self.analysis_enabled = True

    async def _stop_workers(self):
        for worker in self.workers:
            await worker.stop()
        self.analysis_enabled = False

    async def _handle_message(self, message: OutboundMessage):
        if isinstance(message, ReadyMessage):
            pass
        elif isinstance(message, StateMessage):
            self.focus_state = message.payload.focus_state
        elif isinstance(message, EventMessage):
            payload = message.payload
            self.aggregator.append(ProctorEvent(
                ts=now_ms(),
                type=payload.type,
                duration=payload.duration_ms,
                meta=payload.meta,
            ))
        elif isinstance(message, ResultsMessage):
            self._handle_results(message)
        elif isinstance(message, ErrorMessage):
            self.errors(message.payload.message)
        else:
            raise TypeError(f"Unknown worker message: {message!r}")

        if self.on_message is not None:
            result = self.on_message(message)
            if inspect.isawaitable(result):
                await result

    def _handle_results(self, message: ResultsMessage):
        detections = message.payload.detections
        self.last_detections = detections

        mapped = [(d, map_detection_to_event_type(d.class_name)) for d in detections]
        mapped = [(d, event_type) for d, event_type in mapped if event_type is not None]
        if not mapped:
            return

        frame_thumb = capture_frame_thumbnail(self.source.snapshot())
        ts = now_ms()
        for detection, event_type in mapped:
            self.aggregator.append(ProctorEvent(
                ts=ts,
                type=event_type,
                meta={
                    "score": detection.score,
                    "bbox": detection.bbox.model_dump(),
                    "sourceTs": message.payload.timestamp,
                },
                frame_thumb=frame_thumb,
            ))
