from __future__ import annotations

from pathlib import Path

from photo_tagger.config import Settings, load_settings


def test_defaults_without_settings_file(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.delenv("PHOTO_TAGGER_SETTINGS", raising=False)
    settings = load_settings(tmp_path / "missing.yaml")

    assert settings == Settings()
    assert settings.duplicates.hamming_threshold == 8
    assert settings.similarity.default_limit == 12
    assert settings.metadata.timeout_s is None
    assert settings.pipeline.stage("persist").workers == 1


def test_yaml_overrides_and_ignores_mistyped_values(tmp_path: Path) -> None:
    path = tmp_path / "settings.yaml"
    path.write_text(
        """
databases:
  catalog_url: sqlite:///tmp/catalog.db
pipeline:
  extensions: [JPG, .png]
  stages:
    hash: {workers: 3, queue_capacity: 16}
    tag: {workers: -1}
    resize: {workers: 9}
metadata:
  backend: Pillow
  timeout_s: 12
tagging:
  scene_labels: [beach]
  confidence_threshold: high
  portrait:
    max_subjects: 1
duplicates:
  hamming_threshold: 6
similarity:
  max_limit: "lots"
""",
        encoding="utf-8",
    )

    settings = load_settings(path)

    assert settings.databases.catalog_url == "sqlite:///tmp/catalog.db"
    assert settings.pipeline.extensions == (".jpg", ".png")
    assert settings.pipeline.stage("hash").workers == 3
    assert settings.pipeline.stage("hash").queue_capacity == 16
    assert settings.pipeline.stage("tag").workers == 1
    assert "resize" not in settings.pipeline.stages
    assert settings.metadata.backend == "pillow"
    assert settings.metadata.timeout_s == 12.0
    assert settings.tagging.scene_labels == ("beach",)
    assert settings.tagging.confidence_threshold == 0.65
    assert settings.tagging.portrait.max_subjects == 1
    assert settings.duplicates.hamming_threshold == 6
    assert settings.similarity.max_limit == 50


def test_environment_variable_selects_settings_file(monkeypatch, tmp_path: Path) -> None:
    path = tmp_path / "env.yaml"
    path.write_text("embedding:\n  bins: 8\n", encoding="utf-8")
    monkeypatch.setenv("PHOTO_TAGGER_SETTINGS", str(path))

    assert load_settings().embedding.bins == 8
