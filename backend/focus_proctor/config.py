"""
Focus Proctor configuration.

All values can be overridden with PROCTOR_* environment variables or a .env
file. Settings are read once at startup; analyzers receive the frozen config
objects built here and never read the environment themselves.
"""

from functools import lru_cache
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models.detection_models import FocusThresholds, ObjectDetectionConfig

# Hard cap on sampling rate to bound CPU use
MAX_DETECTION_FPS = 8

# Downscale targets (longest side, px) per analyzer
FACE_FRAME_MAX_SIDE = 360
OBJECT_FRAME_MAX_SIDE = 640

DEFAULT_FACE_MODEL = (
    "https://storage.googleapis.com/mediapipe-models/face_landmarker/face_landmarker/float16/1/face_landmarker.task"
)

DEFAULT_OBJECT_CLASSES = ["phone", "book", "notebook", "paper", "laptop", "keyboard", "monitor"]


class Settings(BaseSettings):
    """Configuration for the proctoring backend."""

    model_config = SettingsConfigDict(env_prefix="PROCTOR_", env_file=".env", extra="ignore")

    # API Settings
    APP_NAME: str = "Focus Proctor Backend"
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    CORS_ORIGINS: List[str] = ["http://localhost:5173", "http://127.0.0.1:5173"]

    # Auth
    JWT_SECRET: str = "devsecret"
    AUTH_REQUIRED: bool = False

    # Storage
    STORAGE_DIR: str = "logs"
    STORAGE_API_URL: str = ""
    STORAGE_API_TOKEN: str = ""

    # Sampling
    DETECTION_FPS: float = 8
    COOLDOWN_MS: int = 1500
    FLUSH_INTERVAL_SECONDS: float = 2.0

    # Face / gaze thresholds
    LOOKAWAY_SECONDS: float = 5
    NOFACE_SECONDS: float = 10
    MULTIFACE_SECONDS: float = 2
    YAW_DEGREES: float = 20
    PITCH_DEGREES: float = 15
    LOOKAWAY_RATIO: float = 0.7

    # Face landmark model (local .task file or URL)
    FACE_MODEL_PATH: str = DEFAULT_FACE_MODEL
    FACE_MAX_FACES: int = 2
    FACE_MIN_DETECTION_CONFIDENCE: float = 0.5
    FACE_MIN_TRACKING_CONFIDENCE: float = 0.5

    # Object detection model
    OBJECT_ENABLED: bool = True
    OBJECT_MODEL_URL: str = "models/yolo-detector.onnx"
    OBJECT_INPUT_SIZE: int = 256
    OBJECT_CLASSES: List[str] = DEFAULT_OBJECT_CLASSES
    OBJECT_FRAME_INTERVAL: int = 3
    OBJECT_BACKEND: str = "cpu"
    CONF_THRESHOLD: float = 0.6
    NMS_IOU: float = 0.45

    @field_validator("LOOKAWAY_RATIO")
    @classmethod
    def _clamp_ratio(cls, value: float) -> float:
        return min(max(value, 0.0), 1.0)

    @field_validator("OBJECT_FRAME_INTERVAL")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        return max(1, value)

    @property
    def effective_fps(self) -> float:
        return max(1.0, min(self.DETECTION_FPS, MAX_DETECTION_FPS))

    @property
    def object_frame_interval_ms(self) -> float:
        return (1000.0 / self.effective_fps) * self.OBJECT_FRAME_INTERVAL

    def focus_thresholds(self) -> FocusThresholds:
        return FocusThresholds(
            looking_away_seconds=self.LOOKAWAY_SECONDS,
            no_face_seconds=self.NOFACE_SECONDS,
            multiple_faces_seconds=self.MULTIFACE_SECONDS,
            yaw_degrees=self.YAW_DEGREES,
            pitch_degrees=self.PITCH_DEGREES,
            sampling_fps=self.effective_fps,
            breach_ratio=self.LOOKAWAY_RATIO,
        )

    def object_config(self) -> ObjectDetectionConfig:
        classes = [c.strip() for c in self.OBJECT_CLASSES if c.strip()] or DEFAULT_OBJECT_CLASSES
        return ObjectDetectionConfig(
            model_url=self.OBJECT_MODEL_URL,
            input_size=self.OBJECT_INPUT_SIZE,
            classes=classes,
            confidence_threshold=self.CONF_THRESHOLD,
            nms_iou=self.NMS_IOU,
            inference_interval=self.OBJECT_FRAME_INTERVAL,
            backend=self.OBJECT_BACKEND,
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
