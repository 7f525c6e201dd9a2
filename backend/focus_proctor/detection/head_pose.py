"""Head pose heuristics over normalized Face Mesh landmarks.

Yaw and pitch are rough estimates from landmark geometry, not a full PnP
solve. They are cheap enough to run on every sampled frame and good enough to
tell "facing the screen" from "turned away".
"""

import math
from typing import List, NamedTuple, Sequence

from ..models.detection_models import FaceBox

# Face Mesh landmark indices
LEFT_EYE = [33, 133]
RIGHT_EYE = [362, 263]
LEFT_CHEEK = 234
RIGHT_CHEEK = 454
BROW = [10, 338, 297, 67]
CHIN = 152
NOSE_TIP = 1


class Landmark(NamedTuple):
    x: float
    y: float
    z: float = 0.0


def to_landmarks(points) -> List[Landmark]:
    """Convert MediaPipe landmark objects (or tuples) to Landmark tuples"""
    out = []
    for p in points:
        if isinstance(p, Landmark):
            out.append(p)
        elif hasattr(p, "x"):
            out.append(Landmark(float(p.x), float(p.y), float(getattr(p, "z", 0.0) or 0.0)))
        else:
            out.append(Landmark(*(float(v) for v in p)))
    return out


def _get(landmarks: Sequence[Landmark], index: int, fallback: int = 0) -> Landmark:
    if 0 <= index < len(landmarks):
        return landmarks[index]
    return landmarks[fallback]


def average_landmarks(landmarks: Sequence[Landmark], indices: List[int]) -> Landmark:
    if not landmarks:
        return Landmark(0.0, 0.0, 0.0)

    sx = sy = sz = 0.0
    for idx in indices:
        lm = _get(landmarks, idx)
        sx += lm.x
        sy += lm.y
        sz += lm.z
    count = len(indices) or 1
    return Landmark(sx / count, sy / count, sz / count)


def distance_2d(a: Landmark, b: Landmark) -> float:
    return math.hypot(a.x - b.x, a.y - b.y)


def compute_yaw(landmarks: Sequence[Landmark]) -> float:
    """Horizontal head turn in degrees; positive when turned towards the right cheek"""
    if not landmarks:
        return 0.0

    left_eye = average_landmarks(landmarks, LEFT_EYE)
    right_eye = average_landmarks(landmarks, RIGHT_EYE)
    left_cheek = _get(landmarks, LEFT_CHEEK)
    right_cheek = _get(landmarks, RIGHT_CHEEK, fallback=len(landmarks) - 1)

    left_dist = distance_2d(left_eye, left_cheek)
    right_dist = distance_2d(right_eye, right_cheek)
    denom = (left_dist + right_dist) / 2 or 1.0
    return math.degrees(math.atan2(right_dist - left_dist, denom))


def compute_pitch(landmarks: Sequence[Landmark]) -> float:
    """Vertical head tilt in degrees, from brow-to-chin offset over chin/nose depth"""
    if not landmarks:
        return 0.0

    brow = average_landmarks(landmarks, BROW)
    chin = _get(landmarks, CHIN, fallback=len(landmarks) - 1)
    nose = _get(landmarks, NOSE_TIP)

    vertical = chin.y - brow.y
    depth = abs(chin.z - nose.z) + 1e-6
    return math.degrees(math.atan2(vertical, depth))


def compute_bounding_box(landmarks: Sequence[Landmark]) -> FaceBox:
    min_x, min_y, max_x, max_y = 1.0, 1.0, 0.0, 0.0
    for lm in landmarks:
        min_x = min(min_x, lm.x)
        min_y = min(min_y, lm.y)
        max_x = max(max_x, lm.x)
        max_y = max(max_y, lm.y)
    return FaceBox(min_x=min_x, min_y=min_y, max_x=max_x, max_y=max_y)
