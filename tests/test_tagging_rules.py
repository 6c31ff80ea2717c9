from __future__ import annotations

from PIL import Image

from photo_tagger.config import TaggingConfig
from photo_tagger.metadata import PhotoMetadata
from photo_tagger.ml.detection import BoundingBox, Detection, non_max_suppression
from photo_tagger.tagging import (
    DominantSubjectRule,
    ScoreThresholdRule,
    Tagger,
    build_rules,
    evaluate_rules,
    heuristic_scores,
)


def _face(x_min: float, y_min: float, x_max: float, y_max: float, score: float = 0.9) -> Detection:
    return Detection(BoundingBox(x_min, y_min, x_max, y_max), "face", score)


class _StubEngine:
    provider = "stub"

    def __init__(self, scores: dict[str, float], detections: list[Detection]) -> None:
        self._scores = scores
        self._detections = detections

    def classify(self, image, model_id="scene"):
        return dict(self._scores)

    def detect(self, image, model_id="detection"):
        return list(self._detections)


def test_dominant_subject_requires_large_centered_uncrowded_subject() -> None:
    rule = DominantSubjectRule("portrait", "face", min_area_ratio=0.08, max_center_offset=0.3, max_subjects=2)

    centered = [_face(0.3, 0.3, 0.7, 0.7)]
    decision = rule.evaluate({}, centered)
    assert decision is not None
    assert decision.label == "portrait"
    assert decision.confidence == 0.9

    assert rule.evaluate({}, [_face(0.45, 0.45, 0.55, 0.55)]) is None
    assert rule.evaluate({}, [_face(0.0, 0.0, 0.3, 0.3)]) is None
    crowd = [_face(0.3, 0.3, 0.7, 0.7), _face(0.0, 0.0, 0.1, 0.1), _face(0.9, 0.9, 1.0, 1.0)]
    assert rule.evaluate({}, crowd) is None
    assert rule.evaluate({}, [_face(0.3, 0.3, 0.7, 0.7, score=0.2)]) is None


def test_rules_run_in_order_and_first_decision_wins() -> None:
    rules = [ScoreThresholdRule("street", 0.3), ScoreThresholdRule("street", 0.0), ScoreThresholdRule("nature", 0.5)]

    decisions = evaluate_rules(rules, {"street": 0.4, "nature": 0.2}, [])

    assert [(d.label, d.confidence) for d in decisions] == [("street", 0.4)]


def test_tagger_applies_thresholds_and_long_lens_boost() -> None:
    config = TaggingConfig()
    engine = _StubEngine({"street": 0.7, "landscape": 0.5, "nature": 0.1}, [_face(0.3, 0.3, 0.7, 0.7, score=0.6)])
    tagger = Tagger.from_config(engine, config)
    image = Image.new("RGB", (64, 64))

    decisions = {d.label: d for d in tagger.tag(image, PhotoMetadata(focal_length=85.0), "img.jpg")}

    assert set(decisions) == {"street", "landscape", "portrait"}
    assert decisions["street"].accepted
    assert not decisions["landscape"].accepted
    assert abs(decisions["portrait"].confidence - 0.7) < 1e-9
    assert decisions["portrait"].accepted


def test_tagger_without_models_uses_heuristics() -> None:
    tagger = Tagger.from_config(None, TaggingConfig())
    image = Image.new("RGB", (300, 200))

    decisions = tagger.tag(image, PhotoMetadata(gps_lat=1.0, gps_lng=2.0), "street_market.jpg")

    assert not tagger.uses_models
    assert [(d.label, d.accepted) for d in decisions] == [("landscape", False), ("street", False)]


def test_disabled_tagging_returns_nothing() -> None:
    tagger = Tagger.from_config(None, TaggingConfig(enabled=False))

    assert tagger.tag(Image.new("RGB", (300, 200)), PhotoMetadata(), "street.jpg") == []


def test_heuristic_scores_use_geometry_lens_and_gps() -> None:
    scores = heuristic_scores(PhotoMetadata(focal_length=105.0, gps_lat=3.0), 200, 400, "IMG_1.JPG")

    assert scores == {"portrait": 0.6, "nature": 0.4}
    assert heuristic_scores(PhotoMetadata(), 100, 100) == {}


def test_build_rules_appends_portrait_rule_last() -> None:
    rules = build_rules(TaggingConfig(scene_labels=("street", "nature")))

    assert [type(rule).__name__ for rule in rules] == ["ScoreThresholdRule", "ScoreThresholdRule", "DominantSubjectRule"]


def test_non_max_suppression_keeps_highest_scoring_overlap() -> None:
    kept = non_max_suppression([_face(0.1, 0.1, 0.5, 0.5, 0.6), _face(0.12, 0.1, 0.52, 0.5, 0.9), _face(0.6, 0.6, 0.9, 0.9, 0.5)], 0.5)

    assert [det.score for det in kept] == [0.9, 0.5]
