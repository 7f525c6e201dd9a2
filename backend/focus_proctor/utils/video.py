import base64
import logging
import time
from typing import Optional

import cv2
import numpy as np

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds"""
    return int(time.time() * 1000)


def decode_base64_image(base64_string: str) -> Optional[np.ndarray]:
    """Decode base64 image to OpenCV format"""
    try:
        # Remove data URL prefix if present
        if base64_string.startswith('data:image'):
            base64_string = base64_string.split(',', 1)[1]

        img_data = base64.b64decode(base64_string)
        nparr = np.frombuffer(img_data, np.uint8)
        return cv2.imdecode(nparr, cv2.IMREAD_COLOR)
    except Exception as e:
        logger.error(f"Error decoding image: {e}")
        return None


def downscale(frame: np.ndarray, max_side: int) -> np.ndarray:
    """Independent copy of `frame` whose longest side is at most `max_side`"""
    h, w = frame.shape[:2]
    scale = min(1.0, max_side / max(w, h))
    if scale >= 1.0:
        return frame.copy()

    width = max(1, round(w * scale))
    height = max(1, round(h * scale))
    return cv2.resize(frame, (width, height), interpolation=cv2.INTER_AREA)


def capture_frame_thumbnail(frame: Optional[np.ndarray], max_width: int = 160, quality: int = 70) -> Optional[str]:
    """Small JPEG data URL of a frame, for attaching to events"""
    if frame is None or frame.size == 0:
        return None

    h, w = frame.shape[:2]
    scale = min(max_width / w, 1.0)
    width = max(1, int(w * scale))
    height = max(1, int(h * scale))
    thumb = cv2.resize(frame, (width, height), interpolation=cv2.INTER_AREA) if scale < 1.0 else frame

    ok, buffer = cv2.imencode('.jpg', thumb, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        return None
    return 'data:image/jpeg;base64,' + base64.b64encode(buffer.tobytes()).decode('ascii')
