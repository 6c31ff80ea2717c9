"""Scene tagging: classification rules evaluated over inference engine outputs.

Rules are small frozen dataclasses. Each one is a pure function of the class
scores and detections for one image, so they can be tested without any model.
The :class:`Tagger` evaluates them in a fixed order and applies the
suggestion and confidence thresholds.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence, Union

from PIL import Image

from photo_tagger.config import TaggingConfig
from photo_tagger.metadata import PhotoMetadata
from photo_tagger.ml.detection import Detection
from photo_tagger.ml.engine import DETECTION_MODEL, SCENE_MODEL, InferenceEngine, NullEngine
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "tagging"})


@dataclass(frozen=True)
class TagDecision:
    """A label proposed for one photo."""

    label: str
    confidence: float
    accepted: bool = False


@dataclass(frozen=True)
class ScoreThresholdRule:
    """Emit ``label`` when the classifier scored it at least ``min_score``."""

    label: str
    min_score: float = 0.0

    def evaluate(self, scores: Mapping[str, float], detections: Sequence[Detection]) -> TagDecision | None:
        score = scores.get(self.label)
        if score is None or score < self.min_score:
            return None
        return TagDecision(self.label, float(score))


@dataclass(frozen=True)
class DominantSubjectRule:
    """Emit ``label`` only for a large, centered, uncrowded subject.

    The label is accepted when between one and ``max_subjects`` detections of
    ``subject_class`` reach ``min_confidence``, and the largest of them covers
    at least ``min_area_ratio`` of the frame with its center no further than
    ``max_center_offset`` from the frame center. The decision confidence is
    the subject's detection score, or ``scores[base_label]`` when set.
    """

    label: str
    subject_class: str
    min_confidence: float = 0.5
    min_area_ratio: float = 0.08
    max_center_offset: float = 0.3
    max_subjects: int = 2
    base_label: str | None = None

    def evaluate(self, scores: Mapping[str, float], detections: Sequence[Detection]) -> TagDecision | None:
        subjects = [
            det for det in detections if det.label == self.subject_class and det.score >= self.min_confidence
        ]
        if not subjects or len(subjects) > self.max_subjects:
            return None

        dominant = max(subjects, key=lambda det: (det.bbox.area, det.score))
        if dominant.bbox.area < self.min_area_ratio:
            return None
        if dominant.bbox.center_offset() > self.max_center_offset:
            return None

        confidence = dominant.score
        if self.base_label is not None:
            confidence = scores.get(self.base_label, 0.0)
        return TagDecision(self.label, float(confidence))


ClassificationRule = Union[ScoreThresholdRule, DominantSubjectRule]


def evaluate_rules(
    rules: Sequence[ClassificationRule],
    scores: Mapping[str, float],
    detections: Sequence[Detection],
) -> list[TagDecision]:
    """Run ``rules`` in order; a later rule never overrides an earlier decision for the same label."""

    decisions: list[TagDecision] = []
    seen: set[str] = set()
    for rule in rules:
        decision = rule.evaluate(scores, detections)
        if decision is None or decision.label in seen:
            continue
        seen.add(decision.label)
        decisions.append(decision)
    return decisions


def heuristic_scores(metadata: PhotoMetadata, width: int, height: int, file_name: str = "") -> dict[str, float]:
    """Model-free scores from file name, geometry, lens and GPS metadata."""

    scores: dict[str, float] = {}
    if "street" in file_name.lower():
        scores["street"] = 0.6
    if width > height + height // 5:
        scores["landscape"] = 0.5
    elif height > width + width // 5:
        scores["portrait"] = 0.5
    if metadata.focal_length is not None and metadata.focal_length >= 70.0:
        scores["portrait"] = 0.6
    if metadata.gps_lat is not None or metadata.gps_lng is not None:
        scores["nature"] = 0.4
    return scores


def build_rules(config: TaggingConfig) -> list[ClassificationRule]:
    """Default rule chain: one threshold rule per scene label, then the portrait rule."""

    rules: list[ClassificationRule] = [ScoreThresholdRule(label) for label in config.scene_labels]
    portrait = config.portrait
    rules.append(
        DominantSubjectRule(
            label=portrait.label,
            subject_class=portrait.subject_class,
            min_confidence=portrait.min_confidence,
            min_area_ratio=portrait.min_area_ratio,
            max_center_offset=portrait.max_center_offset,
            max_subjects=portrait.max_subjects,
        )
    )
    return rules


class Tagger:
    """Runs the inference engine and turns its outputs into tag decisions.

    With a :class:`NullEngine` the heuristic scores are used instead; every
    decision below ``suggestion_threshold`` is discarded and those at or above
    ``confidence_threshold`` are marked accepted.
    """

    def __init__(
        self,
        engine: InferenceEngine | None,
        rules: Sequence[ClassificationRule],
        *,
        confidence_threshold: float = 0.65,
        suggestion_threshold: float = 0.45,
        portrait_label: str = "portrait",
        long_lens_focal_mm: float = 70.0,
        long_lens_boost: float = 0.1,
        use_heuristics: bool = True,
    ) -> None:
        self.engine = engine or NullEngine()
        self.use_heuristics = use_heuristics
        self.rules = list(rules)
        self.confidence_threshold = confidence_threshold
        self.suggestion_threshold = suggestion_threshold
        self._portrait_label = portrait_label
        self._long_lens_focal_mm = long_lens_focal_mm
        self._long_lens_boost = long_lens_boost

    @classmethod
    def from_config(cls, engine: InferenceEngine | None, config: TaggingConfig) -> "Tagger":
        if not config.enabled:
            return cls(NullEngine(), [], use_heuristics=False)
        return cls(
            engine,
            build_rules(config),
            confidence_threshold=config.confidence_threshold,
            suggestion_threshold=config.suggestion_threshold,
            portrait_label=config.portrait.label,
            long_lens_focal_mm=config.portrait.long_lens_focal_mm,
            long_lens_boost=config.portrait.long_lens_boost,
        )

    @property
    def uses_models(self) -> bool:
        return not isinstance(self.engine, NullEngine)

    def tag(self, image: Image.Image, metadata: PhotoMetadata, file_name: str = "") -> list[TagDecision]:
        if self.uses_models:
            scores = self.engine.classify(image, SCENE_MODEL)
            detections = self.engine.detect(image, DETECTION_MODEL)
            raw = evaluate_rules(self.rules, scores, detections)
        elif self.use_heuristics:
            scores = heuristic_scores(metadata, image.width, image.height, file_name)
            raw = [TagDecision(label, score) for label, score in sorted(scores.items())]
        else:
            return []

        decisions: list[TagDecision] = []
        for decision in raw:
            confidence = decision.confidence
            if (
                self.uses_models
                and decision.label == self._portrait_label
                and metadata.focal_length is not None
                and metadata.focal_length > self._long_lens_focal_mm
            ):
                confidence = min(1.0, confidence + self._long_lens_boost)
            if confidence < self.suggestion_threshold:
                continue
            decisions.append(TagDecision(decision.label, confidence, confidence >= self.confidence_threshold))
        LOGGER.debug(
            "tagging_decisions",
            extra={"file_name": file_name, "tags": [(d.label, round(d.confidence, 3)) for d in decisions]},
        )
        return decisions


__all__ = [
    "ClassificationRule",
    "DominantSubjectRule",
    "ScoreThresholdRule",
    "TagDecision",
    "Tagger",
    "build_rules",
    "evaluate_rules",
    "heuristic_scores",
]
