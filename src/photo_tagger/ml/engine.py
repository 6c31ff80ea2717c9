"""Inference engine contract used by the tagging stage."""

from __future__ import annotations

from typing import List, Protocol

from PIL import Image

from photo_tagger.ml.detection import Detection

SCENE_MODEL: str = "scene"
DETECTION_MODEL: str = "detection"


class InferenceEngine(Protocol):
    """Black-box model runner.

    ``classify`` returns scores over the model's fixed label set and
    ``detect`` returns boxes. Either may return an empty result when the
    corresponding model is not configured.
    """

    provider: str

    def classify(self, image: Image.Image, model_id: str = SCENE_MODEL) -> dict[str, float]:
        ...

    def detect(self, image: Image.Image, model_id: str = DETECTION_MODEL) -> List[Detection]:
        ...


class NullEngine:
    """Engine used when no model is configured; the tagger falls back to heuristics."""

    provider = "none"

    def classify(self, image: Image.Image, model_id: str = SCENE_MODEL) -> dict[str, float]:
        return {}

    def detect(self, image: Image.Image, model_id: str = DETECTION_MODEL) -> List[Detection]:
        return []


__all__ = ["DETECTION_MODEL", "InferenceEngine", "NullEngine", "SCENE_MODEL"]
