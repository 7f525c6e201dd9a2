import asyncio
import logging
from typing import Dict, List, Optional

import numpy as np
import onnxruntime as ort

from ..errors import AnalyzerNotReady, FrameProcessingError, ModelInitializationError
from ..models.detection_models import EventType, ObjectDetectionConfig, ObjectDetectionResult
from .model_assets import load_model_source
from .yolo_postprocess import decode_output, letterbox

logger = logging.getLogger(__name__)

# Detector class names (lower case) that count as integrity events
CLASS_TO_EVENT: Dict[str, EventType] = {
    'phone': EventType.PHONE_DETECTED,
    'cell phone': EventType.PHONE_DETECTED,
    'book': EventType.NOTES_DETECTED,
    'notebook': EventType.NOTES_DETECTED,
    'paper': EventType.NOTES_DETECTED,
    'laptop': EventType.EXTRA_DEVICE_DETECTED,
    'keyboard': EventType.EXTRA_DEVICE_DETECTED,
    'monitor': EventType.EXTRA_DEVICE_DETECTED,
    'tv': EventType.EXTRA_DEVICE_DETECTED,
}

EXECUTION_PROVIDERS = {
    'cpu': ['CPUExecutionProvider'],
    'cuda': ['CUDAExecutionProvider', 'CPUExecutionProvider'],
    'directml': ['DmlExecutionProvider', 'CPUExecutionProvider'],
    'coreml': ['CoreMLExecutionProvider', 'CPUExecutionProvider'],
}


def map_detection_to_event_type(class_name: str) -> Optional[EventType]:
    """Event type for a detected class, or None when the class is not suspicious"""
    return CLASS_TO_EVENT.get(class_name.strip().lower())


def resolve_providers(backend: str) -> List[str]:
    wanted = EXECUTION_PROVIDERS.get(backend.lower(), EXECUTION_PROVIDERS['cpu'])
    available = set(ort.get_available_providers())
    providers = [p for p in wanted if p in available]
    return providers or ['CPUExecutionProvider']


class ObjectDetector:
    """Suspicious object detection with a YOLO-style ONNX model"""

    def __init__(self, config: ObjectDetectionConfig):
        self.config = config
        self.session: Optional[ort.InferenceSession] = None
        self.input_name: Optional[str] = None
        self.output_name: Optional[str] = None
        self.is_ready = False
        self._init_lock = asyncio.Lock()

    async def initialize(self):
        """Create the inference session once; later calls reuse it"""
        async with self._init_lock:
            if self.session is not None:
                return

            try:
                logger.info("📱 Initializing Object Detector (ONNX)...")
                model = await load_model_source(self.config.model_url)

                providers = resolve_providers(self.config.backend)
                session = await asyncio.to_thread(
                    ort.InferenceSession, model, providers=providers
                )
                self.input_name = session.get_inputs()[0].name
                outputs = session.get_outputs()
                self.output_name = outputs[0].name if outputs else None
                self.session = session
                self.is_ready = True
                logger.info(f"✅ Object detection model loaded ({session.get_providers()[0]})")

            except Exception as e:
                logger.error(f"❌ Failed to initialize object detector: {e}")
                self.session = None
                raise ModelInitializationError(f"Failed to initialise object detector: {e}") from e

    def reset(self):
        """Nothing to reset: detection is stateless between frames"""

    def close(self):
        self.session = None
        self.input_name = None
        self.output_name = None
        self.is_ready = False

    async def detect(self, frame: np.ndarray) -> List[ObjectDetectionResult]:
        """Detect objects in a BGR frame"""
        if not self.is_ready or self.session is None:
            raise AnalyzerNotReady("Object detector is not initialised")

        try:
            return await asyncio.to_thread(self._detect_sync, frame)
        except FrameProcessingError:
            raise
        except Exception as e:
            raise FrameProcessingError(f"Object detection failed: {e}") from e

    def _detect_sync(self, frame: np.ndarray) -> List[ObjectDetectionResult]:
        config = self.config
        tensor, meta = letterbox(frame, config.input_size)

        if not self.input_name:
            raise FrameProcessingError("Model inputs not resolved")

        outputs = self.session.run(None, {self.input_name: tensor})
        if not outputs:
            raise FrameProcessingError("Model output missing")

        output = self._select_output(outputs)
        return decode_output(
            output,
            meta,
            config.classes,
            config.confidence_threshold,
            config.nms_iou,
        )

    def _select_output(self, outputs: List[np.ndarray]) -> np.ndarray:
        # Some exports do not keep stable output names; fall back to the first output
        if self.output_name:
            names = [o.name for o in self.session.get_outputs()]
            if self.output_name in names:
                return outputs[names.index(self.output_name)]
        return outputs[0]
