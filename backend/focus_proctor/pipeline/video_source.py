import asyncio
import logging
from typing import Optional, Tuple, Union

import cv2
import numpy as np

from ..errors import CapabilityError, FrameProcessingError

logger = logging.getLogger(__name__)


class CameraSource:
    """Frames pulled from a local camera or a video file via OpenCV"""

    def __init__(self, device: Union[int, str] = 0):
        self.device = device
        self.capture: Optional[cv2.VideoCapture] = None
        self._latest: Optional[np.ndarray] = None

    async def open(self):
        capture = await asyncio.to_thread(cv2.VideoCapture, self.device)
        if not capture.isOpened():
            capture.release()
            raise CapabilityError(f"Unable to open video source {self.device!r}")
        self.capture = capture
        logger.info(f"📷 Opened video source {self.device!r}")

    @property
    def dimensions(self) -> Optional[Tuple[int, int]]:
        if self._latest is not None:
            h, w = self._latest.shape[:2]
            return w, h
        if self.capture is None:
            return None
        w = int(self.capture.get(cv2.CAP_PROP_FRAME_WIDTH))
        h = int(self.capture.get(cv2.CAP_PROP_FRAME_HEIGHT))
        if w <= 0 or h <= 0:
            return None
        return w, h

    async def read(self) -> np.ndarray:
        if self.capture is None:
            raise CapabilityError("Video source is not open")
        ok, frame = await asyncio.to_thread(self.capture.read)
        if not ok or frame is None:
            raise FrameProcessingError("Failed to capture frame")
        self._latest = frame
        return frame

    def snapshot(self) -> Optional[np.ndarray]:
        return self._latest

    def close(self):
        if self.capture is not None:
            self.capture.release()
            self.capture = None
        self._latest = None


class FrameBufferSource:
    """Latest-frame buffer fed by a push transport (e.g. a WebSocket).

    Exposes wait_for_frame() so the scheduler can wake exactly when a new
    frame arrives instead of polling on a timer.
    """

    def __init__(self):
        self._latest: Optional[np.ndarray] = None
        self._new_frame = asyncio.Event()
        self._closed = False

    async def open(self):
        if not hasattr(cv2, "imdecode"):
            raise CapabilityError("OpenCV image decoding is not available")
        self._closed = False

    def push(self, frame: np.ndarray):
        if self._closed:
            return
        self._latest = frame
        self._new_frame.set()

    @property
    def dimensions(self) -> Optional[Tuple[int, int]]:
        if self._latest is None:
            return None
        h, w = self._latest.shape[:2]
        if w <= 0 or h <= 0:
            return None
        return w, h

    async def wait_for_frame(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._new_frame.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        self._new_frame.clear()
        return not self._closed

    async def read(self) -> np.ndarray:
        if self._latest is None:
            raise FrameProcessingError("No frame received yet")
        return self._latest

    def snapshot(self) -> Optional[np.ndarray]:
        return self._latest

    def close(self):
        self._closed = True
        self._latest = None
        self._new_frame.set()
