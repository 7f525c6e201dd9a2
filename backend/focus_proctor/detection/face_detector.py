import asyncio
import logging
from typing import List, Optional, Union

import cv2
import mediapipe as mp
import numpy as np

from ..config import DEFAULT_FACE_MODEL
from ..errors import AnalyzerNotReady, FrameProcessingError, ModelInitializationError
from .head_pose import Landmark, to_landmarks
from .model_assets import load_model_source

logger = logging.getLogger(__name__)


class FaceLandmarkDetector:
    """Face landmark extraction using the MediaPipe Face Landmarker task"""

    def __init__(self, model_path: str = DEFAULT_FACE_MODEL, max_num_faces: int = 2,
                 min_detection_confidence: float = 0.5, min_tracking_confidence: float = 0.5):
        self.model_path = model_path
        self.max_num_faces = max_num_faces
        self.min_detection_confidence = min_detection_confidence
        self.min_tracking_confidence = min_tracking_confidence
        self.landmarker = None
        self.is_ready = False

    async def initialize(self):
        """Load the landmarker model; safe to call more than once"""
        if self.is_ready:
            return

        try:
            logger.info("👁️ Initializing Face Landmark Detector...")
            model = await load_model_source(self.model_path)
            self.landmarker = await asyncio.to_thread(self._create_landmarker, model)
            self.is_ready = True
            logger.info("✅ MediaPipe Face Landmarker initialized")
        except Exception as e:
            logger.error(f"❌ Failed to initialize face landmark detector: {e}")
            raise ModelInitializationError(f"Failed to load face models: {e}") from e

    def _create_landmarker(self, model: Union[str, bytes]):
        vision = mp.tasks.vision
        if isinstance(model, bytes):
            base_options = mp.tasks.BaseOptions(model_asset_buffer=model)
        else:
            base_options = mp.tasks.BaseOptions(model_asset_path=model)

        # IMAGE mode: frames are decimated, tracking between them is unreliable
        options = vision.FaceLandmarkerOptions(
            base_options=base_options,
            running_mode=vision.RunningMode.IMAGE,
            num_faces=self.max_num_faces,
            min_face_detection_confidence=self.min_detection_confidence,
            min_face_presence_confidence=self.min_detection_confidence,
            min_tracking_confidence=self.min_tracking_confidence,
        )
        return vision.FaceLandmarker.create_from_options(options)

    async def detect(self, frame: np.ndarray) -> List[List[Landmark]]:
        """Return one list of normalized landmarks per detected face"""
        if not self.is_ready or self.landmarker is None:
            raise AnalyzerNotReady("Face landmark detector is not initialised")

        if frame is None or frame.size == 0:
            raise FrameProcessingError("Empty frame")

        try:
            return await asyncio.to_thread(self._detect_sync, frame)
        except FrameProcessingError:
            raise
        except Exception as e:
            raise FrameProcessingError(f"Face landmark inference failed: {e}") from e

    def _detect_sync(self, frame: np.ndarray) -> List[List[Landmark]]:
        rgb_frame = np.ascontiguousarray(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))
        image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb_frame)
        result = self.landmarker.detect(image)

        return [to_landmarks(face_landmarks) for face_landmarks in result.face_landmarks or []]

    def close(self):
        """Release the landmarker"""
        landmarker: Optional[object] = self.landmarker
        self.landmarker = None
        self.is_ready = False
        if landmarker is not None:
            landmarker.close()
