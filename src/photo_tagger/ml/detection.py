"""Detection result types and box geometry helpers."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Sequence


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned bounding box with coordinates normalized to [0, 1]."""

    x_min: float
    y_min: float
    x_max: float
    y_max: float

    @property
    def area(self) -> float:
        """Fraction of the frame covered by the box."""

        width = max(0.0, min(self.x_max, 1.0) - max(self.x_min, 0.0))
        height = max(0.0, min(self.y_max, 1.0) - max(self.y_min, 0.0))
        return width * height

    @property
    def center(self) -> tuple[float, float]:
        return 0.5 * (self.x_min + self.x_max), 0.5 * (self.y_min + self.y_max)

    def center_offset(self) -> float:
        """Euclidean distance between the box center and the frame center."""

        cx, cy = self.center
        return math.sqrt((cx - 0.5) ** 2 + (cy - 0.5) ** 2)


@dataclass(frozen=True)
class Detection:
    """Single detection returned by an inference engine."""

    bbox: BoundingBox
    label: str
    score: float


def iou(a: BoundingBox, b: BoundingBox) -> float:
    """Compute intersection-over-union (IoU) for normalized bounding boxes."""

    inter_w = max(0.0, min(a.x_max, b.x_max) - max(a.x_min, b.x_min))
    inter_h = max(0.0, min(a.y_max, b.y_max) - max(a.y_min, b.y_min))
    inter_area = inter_w * inter_h
    if inter_area <= 0.0:
        return 0.0

    area_a = max(0.0, (a.x_max - a.x_min) * (a.y_max - a.y_min))
    area_b = max(0.0, (b.x_max - b.x_min) * (b.y_max - b.y_min))
    union = area_a + area_b - inter_area
    if union <= 0.0:
        return 0.0
    return inter_area / union


def non_max_suppression(detections: Sequence[Detection], iou_threshold: float) -> List[Detection]:
    """Class-agnostic non-max suppression.

    For highly overlapping boxes, keep only the highest-score detection.
    """

    if not detections:
        return []
    if iou_threshold <= 0.0:
        return list(detections)

    kept: List[Detection] = []
    for det in sorted(detections, key=lambda item: item.score, reverse=True):
        if all(iou(det.bbox, other.bbox) < iou_threshold for other in kept):
            kept.append(det)
    return kept


__all__ = ["BoundingBox", "Detection", "iou", "non_max_suppression"]
