"""Metadata extraction via exiftool or Pillow, mapped into structured photo fields."""

from __future__ import annotations

import json
import shutil
import subprocess
from dataclasses import asdict, dataclass
from datetime import datetime
from fractions import Fraction
from pathlib import Path
from typing import Any, Mapping, Protocol

from PIL import ExifTags, Image, UnidentifiedImageError

from photo_tagger.config import MetadataConfig
from photo_tagger.errors import ConfigurationError, MissingDependencyError
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "metadata"})

_DATETIME_FORMATS = ("%Y:%m:%d %H:%M:%S", "%Y-%m-%d %H:%M:%S")
_LENS_KEYS = ("LensModel", "Lens", "LensInfo", "LensMake")
_DATE_KEYS = ("DateTimeOriginal", "CreateDate", "ModifyDate")
_DIRECT_PREVIEW_SUFFIXES = frozenset({".jpg", ".jpeg", ".png", ".tif", ".tiff"})
# Embedded JPEG tags, full-size renditions first.
_PREVIEW_TAGS = ("JpgFromRaw", "BigImage", "PreviewImage")


@dataclass(frozen=True)
class PhotoMetadata:
    """Structured metadata for one photo. Unknown fields stay ``None``."""

    make: str | None = None
    model: str | None = None
    lens: str | None = None
    body_serial: str | None = None
    date_taken: datetime | None = None
    iso: int | None = None
    fnumber: float | None = None
    focal_length: float | None = None
    exposure_time: float | None = None
    exposure_comp: float | None = None
    gps_lat: float | None = None
    gps_lng: float | None = None
    width: int | None = None
    height: int | None = None

    @property
    def has_gps(self) -> bool:
        return self.gps_lat is not None and self.gps_lng is not None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class MetadataExtractor(Protocol):
    """Black-box metadata tool returning a flat key/value map per file."""

    name: str

    def extract(self, path: Path) -> dict[str, Any]:
        ...

    def extract_preview(self, path: Path) -> bytes | None:
        ...


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="ignore")
    text = str(value).strip().strip("\x00").strip()
    return text or None


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        pass
    text = _as_text(value)
    if text is None:
        return None
    # "1/250", "50.0 mm", "+0.7"
    token = text.split()[0]
    try:
        return float(Fraction(token))
    except (ValueError, ZeroDivisionError):
        return None


def _as_int(value: Any) -> int | None:
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    number = _as_float(value)
    return int(number) if number is not None else None


def _parse_datetime(value: Any) -> datetime | None:
    text = _as_text(value)
    if text is None:
        return None
    candidate = text[:19]
    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(candidate, fmt)
        except ValueError:
            continue
    return None


def _first_text(raw: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = _as_text(raw.get(key))
        if value is not None:
            return value
    return None


def map_metadata(raw: Mapping[str, Any]) -> PhotoMetadata:
    """Map an exiftool-style key/value map onto :class:`PhotoMetadata`.

    Missing or unparseable fields are left as ``None``.
    """

    date_taken = None
    for key in _DATE_KEYS:
        date_taken = _parse_datetime(raw.get(key))
        if date_taken is not None:
            break

    return PhotoMetadata(
        make=_as_text(raw.get("Make")),
        model=_as_text(raw.get("Model")),
        lens=_first_text(raw, _LENS_KEYS),
        body_serial=_as_text(raw.get("BodySerialNumber")),
        date_taken=date_taken,
        iso=_as_int(raw.get("ISO")),
        fnumber=_as_float(raw.get("FNumber")),
        focal_length=_as_float(raw.get("FocalLength")),
        exposure_time=_as_float(raw.get("ExposureTime")),
        exposure_comp=_as_float(raw.get("ExposureCompensation")),
        gps_lat=_as_float(raw.get("GPSLatitude")),
        gps_lng=_as_float(raw.get("GPSLongitude")),
        width=_as_int(raw.get("ImageWidth")),
        height=_as_int(raw.get("ImageHeight")),
    )


class ExiftoolExtractor:
    """Runs ``exiftool -json -n`` once per file.

    A nonzero exit, a timeout or unparseable output yields an empty map; the
    photo is still imported with null metadata.
    """

    name = "exiftool"

    def __init__(self, binary: str = "exiftool", timeout_s: float | None = None) -> None:
        self.binary = binary
        self.timeout_s = timeout_s

    def _run(self, args: list[str]) -> subprocess.CompletedProcess[bytes]:
        return subprocess.run(
            [self.binary, *args],
            capture_output=True,
            check=False,
            timeout=self.timeout_s,
        )

    def extract(self, path: Path) -> dict[str, Any]:
        try:
            completed = self._run(["-json", "-n", str(path)])
        except subprocess.TimeoutExpired:
            LOGGER.warning("exiftool_timeout", extra={"path": str(path), "timeout_s": self.timeout_s})
            return {}
        except OSError as exc:
            LOGGER.warning("exiftool_exec_error", extra={"path": str(path), "error": str(exc)})
            return {}

        if completed.returncode != 0:
            LOGGER.warning(
                "exiftool_nonzero_exit",
                extra={
                    "path": str(path),
                    "returncode": completed.returncode,
                    "stderr": completed.stderr.decode("utf-8", errors="ignore").strip(),
                },
            )
            return {}

        try:
            entries = json.loads(completed.stdout or b"[]")
        except ValueError as exc:
            LOGGER.warning("exiftool_output_invalid", extra={"path": str(path), "error": str(exc)})
            return {}

        if not isinstance(entries, list) or not entries or not isinstance(entries[0], dict):
            return {}
        return entries[0]

    def extract_preview(self, path: Path) -> bytes | None:
        """Return the first embedded JPEG found in :data:`_PREVIEW_TAGS` order, if any."""

        if path.suffix.lower() in _DIRECT_PREVIEW_SUFFIXES:
            return None
        for tag in _PREVIEW_TAGS:
            try:
                completed = self._run(["-b", f"-{tag}", str(path)])
            except (subprocess.TimeoutExpired, OSError) as exc:
                LOGGER.warning("exiftool_preview_error", extra={"path": str(path), "tag": tag, "error": str(exc)})
                return None
            if completed.returncode == 0 and completed.stdout:
                return completed.stdout
        return None


class PillowExtractor:
    """Reads EXIF and GPS tags through Pillow and reports them under exiftool key names."""

    name = "pillow"

    def extract(self, path: Path) -> dict[str, Any]:
        try:
            with Image.open(path) as image:
                exif = image.getexif()
                width, height = image.size
                base = {ExifTags.TAGS.get(key, str(key)): value for key, value in exif.items()}
                sub = {ExifTags.TAGS.get(key, str(key)): value for key, value in exif.get_ifd(ExifTags.IFD.Exif).items()}
                gps = {
                    ExifTags.GPSTAGS.get(key, str(key)): value
                    for key, value in exif.get_ifd(ExifTags.IFD.GPSInfo).items()
                }
        except (OSError, UnidentifiedImageError, ValueError) as exc:
            LOGGER.warning("pillow_exif_error", extra={"path": str(path), "error": str(exc)})
            return {}

        raw: dict[str, Any] = {"ImageWidth": width, "ImageHeight": height}
        for target, source, table in (
            ("Make", "Make", base),
            ("Model", "Model", base),
            ("ModifyDate", "DateTime", base),
            ("DateTimeOriginal", "DateTimeOriginal", sub),
            ("CreateDate", "DateTimeDigitized", sub),
            ("LensModel", "LensModel", sub),
            ("LensMake", "LensMake", sub),
            ("BodySerialNumber", "BodySerialNumber", sub),
            ("FNumber", "FNumber", sub),
            ("FocalLength", "FocalLength", sub),
            ("ExposureTime", "ExposureTime", sub),
            ("ExposureCompensation", "ExposureBiasValue", sub),
            ("ISO", "ISOSpeedRatings", sub),
        ):
            if source in table:
                raw[target] = table[source]

        latitude = _gps_degrees(gps.get("GPSLatitude"), gps.get("GPSLatitudeRef"))
        longitude = _gps_degrees(gps.get("GPSLongitude"), gps.get("GPSLongitudeRef"))
        if latitude is not None and longitude is not None:
            raw["GPSLatitude"] = latitude
            raw["GPSLongitude"] = longitude
        return raw

    def extract_preview(self, path: Path) -> bytes | None:
        return None


def _gps_degrees(value: Any, ref: Any) -> float | None:
    if not isinstance(value, (list, tuple)) or len(value) < 3:
        return None
    parts = [_as_float(part) for part in value[:3]]
    if any(part is None for part in parts):
        return None
    degrees = parts[0] + parts[1] / 60.0 + parts[2] / 3600.0
    if isinstance(ref, str) and ref.upper() in {"S", "W"}:
        degrees = -degrees
    return degrees


def build_metadata_extractor(config: MetadataConfig) -> MetadataExtractor:
    """Return the configured extractor, failing fast when a required tool is absent."""

    backend = (config.backend or "auto").lower()
    if backend == "pillow":
        return PillowExtractor()

    resolved = shutil.which(config.exiftool_path)
    if backend == "exiftool":
        if resolved is None:
            raise MissingDependencyError(config.exiftool_path, "metadata.backend is 'exiftool'")
        return ExiftoolExtractor(resolved, config.timeout_s)

    if backend != "auto":
        raise ConfigurationError(f"unknown metadata backend: {config.backend!r}")

    if resolved is None:
        LOGGER.info("exiftool_not_found_using_pillow", extra={"exiftool_path": config.exiftool_path})
        return PillowExtractor()
    return ExiftoolExtractor(resolved, config.timeout_s)


__all__ = [
    "ExiftoolExtractor",
    "MetadataExtractor",
    "PhotoMetadata",
    "PillowExtractor",
    "build_metadata_extractor",
    "map_metadata",
]
