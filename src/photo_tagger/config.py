"""Configuration loader and typed settings for the photo_tagger catalog."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

STAGE_NAMES: tuple[str, ...] = ("extract", "thumbnail", "hash", "tag", "embed", "persist")

DEFAULT_EXTENSIONS: tuple[str, ...] = (
    ".jpg",
    ".jpeg",
    ".png",
    ".tiff",
    ".tif",
    ".cr2",
    ".nef",
    ".arw",
    ".dng",
    ".raf",
)


def _cpu_workers() -> int:
    return max(1, os.cpu_count() or 1)


@dataclass
class StageSettings:
    """Worker pool size and input queue capacity for one pipeline stage."""

    workers: int = 1
    queue_capacity: int = 64


def _default_stages() -> dict[str, StageSettings]:
    return {
        "extract": StageSettings(workers=2, queue_capacity=256),
        "thumbnail": StageSettings(workers=_cpu_workers(), queue_capacity=128),
        "hash": StageSettings(workers=_cpu_workers(), queue_capacity=128),
        "tag": StageSettings(workers=1, queue_capacity=64),
        "embed": StageSettings(workers=1, queue_capacity=64),
        "persist": StageSettings(workers=1, queue_capacity=64),
    }


@dataclass
class DatabaseConfig:
    """Catalog database location."""

    catalog_url: str = "sqlite:///data/catalog.db"


@dataclass
class StorageConfig:
    """Where derived raster artifacts are written."""

    thumbnails_dir: Path = Path("cache/thumbnails")
    previews_dir: Path = Path("cache/previews")


@dataclass
class PipelineConfig:
    """Import pipeline scheduling and artifact sizing."""

    stages: dict[str, StageSettings] = field(default_factory=_default_stages)
    extensions: tuple[str, ...] = DEFAULT_EXTENSIONS
    thumbnail_size: int = 320
    preview_size: int = 1600
    jpeg_quality: int = 85
    progress_interval_s: float = 0.2
    throughput_window_s: float = 10.0

    def stage(self, name: str) -> StageSettings:
        """Return the settings for ``name``, creating defaults for unknown stages."""

        settings = self.stages.get(name)
        if settings is None:
            settings = StageSettings()
            self.stages[name] = settings
        return settings


@dataclass
class MetadataConfig:
    """External metadata tool selection.

    ``backend`` is ``auto`` (exiftool when found on PATH, else Pillow), ``exiftool`` or ``pillow``.
    ``timeout_s`` bounds each exiftool call; ``None`` disables the timeout.
    """

    backend: str = "auto"
    exiftool_path: str = "exiftool"
    timeout_s: float | None = None


@dataclass
class PortraitRuleConfig:
    """Geometry thresholds for accepting the dominant-subject portrait tag."""

    label: str = "portrait"
    subject_class: str = "face"
    min_confidence: float = 0.5
    min_area_ratio: float = 0.08
    max_center_offset: float = 0.3
    max_subjects: int = 2
    long_lens_focal_mm: float = 70.0
    long_lens_boost: float = 0.1


@dataclass
class TaggingConfig:
    """Scene classification and detection models plus acceptance thresholds."""

    enabled: bool = True
    device: str = "auto"
    scene_model_path: Path | None = None
    detection_model_path: Path | None = None
    scene_labels: tuple[str, ...] = ("street", "landscape", "nature")
    detection_labels: tuple[str, ...] = ("face",)
    detection_score_threshold: float = 0.25
    nms_iou_threshold: float = 0.5
    confidence_threshold: float = 0.65
    suggestion_threshold: float = 0.45
    input_size: int = 224
    portrait: PortraitRuleConfig = field(default_factory=PortraitRuleConfig)


@dataclass
class AcceleratorConfig:
    """Device used by the resize and histogram kernels (``cpu``, ``auto``, ``cuda`` or ``mps``)."""

    transform_device: str = "cpu"


@dataclass
class EmbeddingConfig:
    """Embedding backend. ``histogram`` is the baseline, ``siglip`` a learned alternative."""

    backend: str = "histogram"
    bins: int = 16
    grid_size: int = 64
    model_name: str = "google/siglip2-base-patch16-224"
    device: str = "auto"


@dataclass
class DuplicatesConfig:
    """Near-duplicate grouping parameters."""

    hamming_threshold: int = 8
    max_threshold: int = 20
    bands: int = 4
    probe_radius: int = 1
    min_group_size: int = 2


@dataclass
class SimilarityConfig:
    """Similarity ranking limits."""

    default_limit: int = 12
    max_limit: int = 50


@dataclass
class Settings:
    """Top-level application settings."""

    databases: DatabaseConfig = field(default_factory=DatabaseConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    metadata: MetadataConfig = field(default_factory=MetadataConfig)
    tagging: TaggingConfig = field(default_factory=TaggingConfig)
    accelerator: AcceleratorConfig = field(default_factory=AcceleratorConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    duplicates: DuplicatesConfig = field(default_factory=DuplicatesConfig)
    similarity: SimilarityConfig = field(default_factory=SimilarityConfig)


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_settings_path(settings_path: Path | str | None) -> Path | None:
    """Determine which settings file to load, honoring overrides."""

    if settings_path:
        return Path(settings_path).expanduser().resolve()

    env_override = os.getenv("PHOTO_TAGGER_SETTINGS")
    if env_override:
        return Path(env_override).expanduser().resolve()

    for candidate in (Path.cwd() / "config" / "settings.yaml", _project_root() / "config" / "settings.yaml"):
        if candidate.is_file():
            return candidate.resolve()
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _apply_stages(pipeline_cfg: PipelineConfig, stages_raw: dict[str, Any]) -> None:
    for name, stage_raw in stages_raw.items():
        if name not in STAGE_NAMES:
            continue
        values = _as_dict(stage_raw)
        stage_cfg = pipeline_cfg.stage(name)
        if _is_int(values.get("workers")) and values["workers"] > 0:
            stage_cfg.workers = values["workers"]
        if _is_int(values.get("queue_capacity")) and values["queue_capacity"] > 0:
            stage_cfg.queue_capacity = values["queue_capacity"]


def _apply_tagging(tagging_cfg: TaggingConfig, tagging_raw: dict[str, Any]) -> None:
    if isinstance(tagging_raw.get("enabled"), bool):
        tagging_cfg.enabled = tagging_raw["enabled"]
    if isinstance(tagging_raw.get("device"), str):
        tagging_cfg.device = tagging_raw["device"]
    if isinstance(tagging_raw.get("scene_model_path"), str):
        tagging_cfg.scene_model_path = Path(tagging_raw["scene_model_path"])
    if isinstance(tagging_raw.get("detection_model_path"), str):
        tagging_cfg.detection_model_path = Path(tagging_raw["detection_model_path"])
    labels = tagging_raw.get("scene_labels")
    if isinstance(labels, list) and labels:
        tagging_cfg.scene_labels = tuple(str(label) for label in labels)
    detection_labels = tagging_raw.get("detection_labels")
    if isinstance(detection_labels, list) and detection_labels:
        tagging_cfg.detection_labels = tuple(str(label) for label in detection_labels)
    if _is_number(tagging_raw.get("detection_score_threshold")):
        tagging_cfg.detection_score_threshold = float(tagging_raw["detection_score_threshold"])
    if _is_number(tagging_raw.get("nms_iou_threshold")):
        tagging_cfg.nms_iou_threshold = float(tagging_raw["nms_iou_threshold"])
    if _is_number(tagging_raw.get("confidence_threshold")):
        tagging_cfg.confidence_threshold = float(tagging_raw["confidence_threshold"])
    if _is_number(tagging_raw.get("suggestion_threshold")):
        tagging_cfg.suggestion_threshold = float(tagging_raw["suggestion_threshold"])
    if _is_int(tagging_raw.get("input_size")):
        tagging_cfg.input_size = tagging_raw["input_size"]

    portrait_raw = _as_dict(tagging_raw.get("portrait"))
    portrait_cfg = tagging_cfg.portrait
    if isinstance(portrait_raw.get("label"), str):
        portrait_cfg.label = portrait_raw["label"]
    if isinstance(portrait_raw.get("subject_class"), str):
        portrait_cfg.subject_class = portrait_raw["subject_class"]
    for key in ("min_confidence", "min_area_ratio", "max_center_offset", "long_lens_focal_mm", "long_lens_boost"):
        if _is_number(portrait_raw.get(key)):
            setattr(portrait_cfg, key, float(portrait_raw[key]))
    if _is_int(portrait_raw.get("max_subjects")):
        portrait_cfg.max_subjects = portrait_raw["max_subjects"]


def load_settings(settings_path: Path | str | None = None) -> Settings:
    """Load application settings from a YAML file, falling back to defaults.

    Missing files, malformed documents and mistyped values leave the
    corresponding defaults in place.
    """

    settings = Settings()
    path = _resolve_settings_path(settings_path)
    if path is None or not path.is_file():
        return settings

    with path.open("r", encoding="utf-8") as fp:
        raw = yaml.safe_load(fp) or {}

    if not isinstance(raw, dict):
        return settings

    databases_raw = _as_dict(raw.get("databases"))
    if isinstance(databases_raw.get("catalog_url"), str):
        settings.databases.catalog_url = databases_raw["catalog_url"]

    storage_raw = _as_dict(raw.get("storage"))
    if isinstance(storage_raw.get("thumbnails_dir"), str):
        settings.storage.thumbnails_dir = Path(storage_raw["thumbnails_dir"])
    if isinstance(storage_raw.get("previews_dir"), str):
        settings.storage.previews_dir = Path(storage_raw["previews_dir"])

    pipeline_raw = _as_dict(raw.get("pipeline"))
    pipeline_cfg = settings.pipeline
    _apply_stages(pipeline_cfg, _as_dict(pipeline_raw.get("stages")))
    extensions = pipeline_raw.get("extensions")
    if isinstance(extensions, list) and extensions:
        pipeline_cfg.extensions = tuple(
            ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in extensions if isinstance(ext, str)
        )
    if _is_int(pipeline_raw.get("thumbnail_size")):
        pipeline_cfg.thumbnail_size = pipeline_raw["thumbnail_size"]
    if _is_int(pipeline_raw.get("preview_size")):
        pipeline_cfg.preview_size = pipeline_raw["preview_size"]
    if _is_int(pipeline_raw.get("jpeg_quality")):
        pipeline_cfg.jpeg_quality = pipeline_raw["jpeg_quality"]
    if _is_number(pipeline_raw.get("progress_interval_s")):
        pipeline_cfg.progress_interval_s = float(pipeline_raw["progress_interval_s"])
    if _is_number(pipeline_raw.get("throughput_window_s")):
        pipeline_cfg.throughput_window_s = float(pipeline_raw["throughput_window_s"])

    metadata_raw = _as_dict(raw.get("metadata"))
    if isinstance(metadata_raw.get("backend"), str):
        settings.metadata.backend = metadata_raw["backend"].lower()
    if isinstance(metadata_raw.get("exiftool_path"), str):
        settings.metadata.exiftool_path = metadata_raw["exiftool_path"]
    if _is_number(metadata_raw.get("timeout_s")):
        settings.metadata.timeout_s = float(metadata_raw["timeout_s"])

    _apply_tagging(settings.tagging, _as_dict(raw.get("tagging")))

    accelerator_raw = _as_dict(raw.get("accelerator"))
    if isinstance(accelerator_raw.get("transform_device"), str):
        settings.accelerator.transform_device = accelerator_raw["transform_device"].lower()

    embedding_raw = _as_dict(raw.get("embedding"))
    embedding_cfg = settings.embedding
    if isinstance(embedding_raw.get("backend"), str):
        embedding_cfg.backend = embedding_raw["backend"].lower()
    if _is_int(embedding_raw.get("bins")):
        embedding_cfg.bins = embedding_raw["bins"]
    if _is_int(embedding_raw.get("grid_size")):
        embedding_cfg.grid_size = embedding_raw["grid_size"]
    if isinstance(embedding_raw.get("model_name"), str):
        embedding_cfg.model_name = embedding_raw["model_name"]
    if isinstance(embedding_raw.get("device"), str):
        embedding_cfg.device = embedding_raw["device"]

    duplicates_raw = _as_dict(raw.get("duplicates"))
    for key in ("hamming_threshold", "max_threshold", "bands", "probe_radius", "min_group_size"):
        if _is_int(duplicates_raw.get(key)):
            setattr(settings.duplicates, key, duplicates_raw[key])

    similarity_raw = _as_dict(raw.get("similarity"))
    for key in ("default_limit", "max_limit"):
        if _is_int(similarity_raw.get(key)):
            setattr(settings.similarity, key, similarity_raw[key])

    return settings


__all__ = [
    "AcceleratorConfig",
    "DEFAULT_EXTENSIONS",
    "DatabaseConfig",
    "DuplicatesConfig",
    "EmbeddingConfig",
    "MetadataConfig",
    "PipelineConfig",
    "PortraitRuleConfig",
    "STAGE_NAMES",
    "Settings",
    "SimilarityConfig",
    "StageSettings",
    "StorageConfig",
    "TaggingConfig",
    "load_settings",
]
