from __future__ import annotations

import subprocess
from datetime import datetime
from pathlib import Path

import pytest
from PIL import Image

from photo_tagger.config import MetadataConfig
from photo_tagger.errors import ConfigurationError, MissingDependencyError
from photo_tagger.metadata import (
    ExiftoolExtractor,
    PillowExtractor,
    build_metadata_extractor,
    map_metadata,
)


def test_map_metadata_parses_exiftool_values() -> None:
    raw = {
        "Make": "FUJIFILM",
        "Model": "X-T4 ",
        "LensInfo": "16-80mm f/4",
        "CreateDate": "2023:07:14 18:02:11+02:00",
        "ISO": 320,
        "FNumber": "5.6",
        "FocalLength": "50.0 mm",
        "ExposureTime": "1/250",
        "ExposureCompensation": "+0.7",
        "GPSLatitude": 48.85,
        "GPSLongitude": -2.35,
        "ImageWidth": 6240,
        "ImageHeight": 4160,
    }

    meta = map_metadata(raw)

    assert meta.make == "FUJIFILM"
    assert meta.model == "X-T4"
    assert meta.lens == "16-80mm f/4"
    assert meta.date_taken == datetime(2023, 7, 14, 18, 2, 11)
    assert meta.iso == 320
    assert meta.fnumber == 5.6
    assert meta.focal_length == 50.0
    assert meta.exposure_time == pytest.approx(0.004)
    assert meta.exposure_comp == pytest.approx(0.7)
    assert meta.has_gps
    assert (meta.width, meta.height) == (6240, 4160)


def test_map_metadata_prefers_original_date_and_tolerates_garbage() -> None:
    meta = map_metadata(
        {
            "DateTimeOriginal": "2020:01:02 03:04:05",
            "ModifyDate": "2021:01:01 00:00:00",
            "FNumber": "n/a",
            "ISO": [200, 400],
        }
    )

    assert meta.date_taken == datetime(2020, 1, 2, 3, 4, 5)
    assert meta.fnumber is None
    assert meta.iso == 200
    assert map_metadata({}).as_dict()["make"] is None


def test_pillow_extractor_reads_base_exif(tmp_path: Path) -> None:
    exif = Image.Exif()
    exif[0x010F] = "Canon"
    exif[0x0110] = "EOS R6"
    exif[0x0132] = "2022:05:06 07:08:09"
    path = tmp_path / "tagged.jpg"
    Image.new("RGB", (40, 30), "gray").save(path, exif=exif)

    meta = map_metadata(PillowExtractor().extract(path))

    assert meta.make == "Canon"
    assert meta.model == "EOS R6"
    assert meta.date_taken == datetime(2022, 5, 6, 7, 8, 9)
    assert (meta.width, meta.height) == (40, 30)


def test_pillow_extractor_returns_empty_map_for_unreadable_file(tmp_path: Path) -> None:
    path = tmp_path / "broken.jpg"
    path.write_bytes(b"not an image")

    assert PillowExtractor().extract(path) == {}


def test_exiftool_failures_yield_empty_metadata(monkeypatch, tmp_path: Path) -> None:
    calls: list[list[str]] = []
    outcomes = iter(
        [
            subprocess.CompletedProcess(["exiftool"], 0, b'[{"Make": "Nikon", "ISO": 100}]', b""),
            subprocess.CompletedProcess(["exiftool"], 1, b"", b"File not found"),
            subprocess.CompletedProcess(["exiftool"], 0, b"{not json", b""),
        ]
    )

    def _fake_run(args, **_kwargs):
        calls.append(list(args))
        return next(outcomes)

    monkeypatch.setattr("photo_tagger.metadata.subprocess.run", _fake_run)
    extractor = ExiftoolExtractor("exiftool", timeout_s=5.0)
    photo = tmp_path / "a.nef"

    assert extractor.extract(photo) == {"Make": "Nikon", "ISO": 100}
    assert extractor.extract(photo) == {}
    assert extractor.extract(photo) == {}
    assert calls[0][:3] == ["exiftool", "-json", "-n"]


def test_exiftool_timeout_yields_empty_metadata(monkeypatch, tmp_path: Path) -> None:
    def _timeout(args, **kwargs):
        raise subprocess.TimeoutExpired(args, kwargs.get("timeout"))

    monkeypatch.setattr("photo_tagger.metadata.subprocess.run", _timeout)

    assert ExiftoolExtractor(timeout_s=0.1).extract(tmp_path / "slow.cr2") == {}
    assert ExiftoolExtractor(timeout_s=0.1).extract_preview(tmp_path / "slow.cr2") is None


def test_exiftool_preview_queries_tags_in_priority_order(monkeypatch, tmp_path: Path) -> None:
    calls: list[str] = []
    embedded = {"BigImage": b"\xff\xd8big", "PreviewImage": b"\xff\xd8small"}

    def _fake_run(args, **_kwargs):
        tag = args[2].lstrip("-")
        calls.append(tag)
        return subprocess.CompletedProcess(args, 0, embedded.get(tag, b""), b"")

    monkeypatch.setattr("photo_tagger.metadata.subprocess.run", _fake_run)
    extractor = ExiftoolExtractor("exiftool")

    assert extractor.extract_preview(tmp_path / "shot.nef") == b"\xff\xd8big"
    assert calls == ["JpgFromRaw", "BigImage"]
    assert extractor.extract_preview(tmp_path / "shot.jpg") is None
    assert calls == ["JpgFromRaw", "BigImage"]


def test_exiftool_preview_is_none_without_embedded_jpeg(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(
        "photo_tagger.metadata.subprocess.run",
        lambda args, **_kwargs: subprocess.CompletedProcess(args, 0, b"", b""),
    )

    assert ExiftoolExtractor("exiftool").extract_preview(tmp_path / "shot.cr2") is None


def test_build_extractor_selects_backend(monkeypatch) -> None:
    monkeypatch.setattr("photo_tagger.metadata.shutil.which", lambda _name: None)

    assert build_metadata_extractor(MetadataConfig(backend="auto")).name == "pillow"
    assert build_metadata_extractor(MetadataConfig(backend="pillow")).name == "pillow"
    with pytest.raises(MissingDependencyError) as excinfo:
        build_metadata_extractor(MetadataConfig(backend="exiftool", exiftool_path="/missing/exiftool"))
    assert excinfo.value.dependency == "/missing/exiftool"
    with pytest.raises(ConfigurationError):
        build_metadata_extractor(MetadataConfig(backend="magic"))

    monkeypatch.setattr("photo_tagger.metadata.shutil.which", lambda name: f"/usr/bin/{name}")
    assert build_metadata_extractor(MetadataConfig(backend="auto")).name == "exiftool"
