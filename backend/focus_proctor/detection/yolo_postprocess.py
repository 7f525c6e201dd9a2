"""Pre- and post-processing for fixed-shape YOLO-style detection models.

letterbox() turns a BGR frame into the model input tensor and records how to
undo the transform; decode_output() interprets the raw output tensor and maps
boxes back to normalized source-frame coordinates; non_max_suppression()
keeps the best of overlapping boxes.
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

import cv2
import numpy as np

from ..models.detection_models import BoundingBox, ObjectDetectionResult

MIN_ATTRIBUTES = 6  # cx, cy, w, h, objectness, at least one class score


@dataclass(frozen=True)
class LetterboxMeta:
    input_size: int
    scale: float
    pad_x: int
    pad_y: int
    original_width: int
    original_height: int


def letterbox(frame: np.ndarray, input_size: int):
    """Fit a BGR frame into an input_size square, padded with black.

    Returns a planar RGB float32 tensor in [0, 1] of shape
    [1, 3, input_size, input_size] and the LetterboxMeta needed to map boxes
    back onto the source frame.
    """
    ih, iw = frame.shape[:2]
    if iw <= 0 or ih <= 0:
        raise ValueError("Frame has no pixels")

    scale = min(input_size / iw, input_size / ih)
    resized_w = max(1, int(round(iw * scale)))
    resized_h = max(1, int(round(ih * scale)))
    pad_x = (input_size - resized_w) // 2
    pad_y = (input_size - resized_h) // 2

    canvas = np.zeros((input_size, input_size, 3), dtype=np.uint8)
    resized = cv2.resize(frame, (resized_w, resized_h), interpolation=cv2.INTER_LINEAR)
    canvas[pad_y:pad_y + resized_h, pad_x:pad_x + resized_w] = resized[:, :, :3]

    rgb = cv2.cvtColor(canvas, cv2.COLOR_BGR2RGB)
    tensor = rgb.astype(np.float32) / 255.0
    tensor = np.ascontiguousarray(tensor.transpose(2, 0, 1))[np.newaxis, ...]

    meta = LetterboxMeta(
        input_size=input_size,
        scale=scale,
        pad_x=pad_x,
        pad_y=pad_y,
        original_width=iw,
        original_height=ih,
    )
    return tensor, meta


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def to_bounding_box(cx: float, cy: float, width: float, height: float, meta: LetterboxMeta) -> BoundingBox:
    """Map a center/size box in letterboxed pixels to normalized source coordinates"""
    x1 = (cx - width / 2 - meta.pad_x) / meta.scale
    y1 = (cy - height / 2 - meta.pad_y) / meta.scale
    final_w = width / meta.scale
    final_h = height / meta.scale

    return BoundingBox(
        x=_clamp01(x1 / meta.original_width),
        y=_clamp01(y1 / meta.original_height),
        width=_clamp01(final_w / meta.original_width),
        height=_clamp01(final_h / meta.original_height),
    )


def compute_iou(a: BoundingBox, b: BoundingBox) -> float:
    ax1, ay1, ax2, ay2 = a.x, a.y, a.x + a.width, a.y + a.height
    bx1, by1, bx2, by2 = b.x, b.y, b.x + b.width, b.y + b.height

    inter_w = max(0.0, min(ax2, bx2) - max(ax1, bx1))
    inter_h = max(0.0, min(ay2, by2) - max(ay1, by1))
    inter_area = inter_w * inter_h
    area_a = max(0.0, ax2 - ax1) * max(0.0, ay2 - ay1)
    area_b = max(0.0, bx2 - bx1) * max(0.0, by2 - by1)

    union = area_a + area_b - inter_area
    return 0.0 if union <= 0 else inter_area / union


def non_max_suppression(detections: Sequence[ObjectDetectionResult], iou_threshold: float) -> List[ObjectDetectionResult]:
    """Greedy class-agnostic NMS; the highest score wins each overlap"""
    ordered = sorted(detections, key=lambda d: d.score, reverse=True)
    selected: List[ObjectDetectionResult] = []

    for candidate in ordered:
        if all(compute_iou(kept.bbox, candidate.bbox) < iou_threshold for kept in selected):
            selected.append(candidate)
    return selected


def _row_to_detection(row: np.ndarray, meta: LetterboxMeta, classes: Sequence[str],
                      confidence_threshold: float) -> Optional[ObjectDetectionResult]:
    cx, cy, width, height, objectness = (float(v) for v in row[:5])
    class_scores = row[5:5 + len(classes)]

    max_class_score = 0.0
    class_index = -1
    for j, value in enumerate(class_scores):
        value = float(value)
        if value > max_class_score:
            max_class_score = value
            class_index = j
    if class_index == -1:
        return None

    score = objectness * max_class_score
    if math.isnan(score) or score < confidence_threshold:
        return None

    class_name = classes[class_index] if class_index < len(classes) else f"class_{class_index}"
    return ObjectDetectionResult(
        class_name=class_name,
        score=score,
        bbox=to_bounding_box(cx, cy, width, height, meta),
    )


def decode_output(output: np.ndarray, meta: LetterboxMeta, classes: Sequence[str],
                  confidence_threshold: float, nms_iou: float) -> List[ObjectDetectionResult]:
    """Decode a [1, N, A] or [1, A, N] output tensor into detections after NMS"""
    output = np.asarray(output)
    if output.ndim < 3 or output.shape[0] != 1:
        return []

    d1, d2 = int(output.shape[1]), int(output.shape[2])
    row_major = max(d1, d2) >= MIN_ATTRIBUTES and d2 >= MIN_ATTRIBUTES
    count = d1 if row_major else d2
    attributes = d2 if row_major else d1
    if attributes < MIN_ATTRIBUTES or count <= 0:
        return []

    rows = output[0] if row_major else output[0].T

    results = []
    for row in rows:
        detection = _row_to_detection(row, meta, classes, confidence_threshold)
        if detection is not None:
            results.append(detection)

    return non_max_suppression(results, nms_iou)
