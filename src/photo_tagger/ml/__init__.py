"""Model-related helpers for photo_tagger.

Only torch-free contracts are exported here; torch-backed engines live in
:mod:`photo_tagger.ml.torchscript`, :mod:`photo_tagger.ml.siglip` and
:mod:`photo_tagger.ml.devices` and are imported on demand.
"""

from .detection import BoundingBox, Detection, iou, non_max_suppression
from .engine import DETECTION_MODEL, SCENE_MODEL, InferenceEngine, NullEngine

__all__ = [
    "BoundingBox",
    "DETECTION_MODEL",
    "Detection",
    "InferenceEngine",
    "NullEngine",
    "SCENE_MODEL",
    "iou",
    "non_max_suppression",
]
