"""Thumbnail and preview generation for imported photos."""

from __future__ import annotations

import io
from dataclasses import dataclass
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError

from photo_tagger.accel import CpuKernel, TransformKernel
from photo_tagger.hasher import path_name_hint
from photo_tagger.metadata import MetadataExtractor
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "thumbnailing"})


@dataclass(frozen=True)
class RenderedArtifacts:
    """Derived rasters for one source image.

    ``preview`` stays decoded in memory so the hash, tag and embed stages work
    on the same pixel grid that was written to ``preview_path``.
    """

    thumb_path: Path
    preview_path: Path
    preview: Image.Image
    source_width: int
    source_height: int


def decode_image(path: Path, extractor: MetadataExtractor | None = None) -> Image.Image:
    """Decode ``path`` into an RGB image with EXIF orientation applied.

    RAW files that Pillow cannot open are decoded from the embedded JPEG
    preview reported by ``extractor``.
    """

    try:
        with Image.open(path) as opened:
            opened.load()
            image = ImageOps.exif_transpose(opened)
            return image.convert("RGB")
    except (UnidentifiedImageError, OSError) as exc:
        if extractor is None:
            raise
        embedded = extractor.extract_preview(path)
        if not embedded:
            raise
        LOGGER.debug("decode_embedded_preview", extra={"path": str(path), "error": str(exc)})

    with Image.open(io.BytesIO(embedded)) as opened:
        opened.load()
        return ImageOps.exif_transpose(opened).convert("RGB")


def save_jpeg(image: Image.Image, output_path: Path, quality: int) -> None:
    """Persist ``image`` as a JPEG, creating parent directories as needed."""

    output_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        image.save(output_path, format="JPEG", quality=quality)
    except OSError as exc:
        LOGGER.error("thumbnail_save_error", extra={"path": str(output_path), "quality": quality, "error": str(exc)})
        raise


class ThumbnailRenderer:
    """Writes a small thumbnail and a larger preview for each source image.

    Artifact file names derive from the source path, so re-rendering an
    unchanged file overwrites the same outputs with the same bytes.
    """

    def __init__(
        self,
        thumbnails_dir: Path,
        previews_dir: Path,
        *,
        kernel: TransformKernel | None = None,
        thumbnail_size: int = 320,
        preview_size: int = 1600,
        quality: int = 85,
    ) -> None:
        self.thumbnails_dir = thumbnails_dir
        self.previews_dir = previews_dir
        self.kernel = kernel or CpuKernel()
        self.thumbnail_size = thumbnail_size
        self.preview_size = preview_size
        self.quality = quality

    def artifact_paths(self, source: Path) -> tuple[Path, Path]:
        stem = path_name_hint(source)
        return self.thumbnails_dir / f"{stem}.jpg", self.previews_dir / f"{stem}.jpg"

    def render(self, source: Path, image: Image.Image) -> RenderedArtifacts:
        thumb_path, preview_path = self.artifact_paths(source)

        preview = self.kernel.resize(image, self.preview_size)
        thumbnail = self.kernel.resize(preview, self.thumbnail_size)

        save_jpeg(preview, preview_path, self.quality)
        save_jpeg(thumbnail, thumb_path, self.quality)

        return RenderedArtifacts(
            thumb_path=thumb_path,
            preview_path=preview_path,
            preview=preview,
            source_width=image.width,
            source_height=image.height,
        )


__all__ = ["RenderedArtifacts", "ThumbnailRenderer", "decode_image", "save_jpeg"]
