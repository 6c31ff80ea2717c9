"""Per-item stage transforms for the import pipeline.

Each function takes the item (or branch task) produced by the previous stage
and returns the enriched value for the next one. Recoverable problems surface
as :class:`StageError`; job-fatal errors propagate unchanged.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
from PIL import Image

from photo_tagger.embedding import Embedder
from photo_tagger.errors import JobFatalError, StageError
from photo_tagger.hasher import compute_content_hash, compute_dhash
from photo_tagger.metadata import MetadataExtractor, PhotoMetadata, map_metadata
from photo_tagger.scanner import DiscoveredFile
from photo_tagger.store import CatalogStore, EmbeddingRecord, PhotoRecord
from photo_tagger.tagging import TagDecision, Tagger
from photo_tagger.thumbnailing import ThumbnailRenderer, decode_image

EXTRACT = "extract"
THUMBNAIL = "thumbnail"
HASH = "hash"
TAG = "tag"
EMBED = "embed"
PERSIST = "persist"


@dataclass
class WorkItem:
    """One photo travelling through the pipeline with the results gathered so far.

    The item is owned by exactly one stage at a time. ``admitted`` flips when
    the first stage starts working on it; from then on a graceful cancel lets
    it drain to persistence.
    """

    item_id: int
    source: DiscoveredFile
    admitted: bool = False
    metadata: PhotoMetadata | None = None
    thumb_path: Path | None = None
    preview_path: Path | None = None
    preview: Image.Image | None = None
    source_width: int | None = None
    source_height: int | None = None
    content_hash: str | None = None
    dhash: int | None = None
    tags: list[TagDecision] = field(default_factory=list)
    embedding: np.ndarray | None = None
    embedding_scheme: str | None = None
    photo_id: int | None = None

    @property
    def path(self) -> Path:
        return self.source.path

    def release_pixels(self) -> None:
        self.preview = None


@dataclass(frozen=True)
class BranchTask:
    """Read-only inputs handed to the tag and embed branches for one item."""

    item_id: int
    path: Path
    preview: Image.Image
    metadata: PhotoMetadata


@dataclass
class StageContext:
    """Collaborators shared by the stage functions of one job."""

    extractor: MetadataExtractor
    renderer: ThumbnailRenderer
    tagger: Tagger
    embedder: Embedder
    store: CatalogStore
    import_batch_id: str


@contextmanager
def stage_errors(stage: str, path: Path) -> Iterator[None]:
    """Convert unexpected exceptions raised inside a stage into :class:`StageError`."""

    try:
        yield
    except (StageError, JobFatalError):
        raise
    except Exception as exc:
        raise StageError(stage, str(path), f"{type(exc).__name__}: {exc}") from exc


def run_extract(ctx: StageContext, item: WorkItem) -> WorkItem:
    with stage_errors(EXTRACT, item.path):
        item.metadata = map_metadata(ctx.extractor.extract(item.path))
    return item


def run_thumbnail(ctx: StageContext, item: WorkItem) -> WorkItem:
    with stage_errors(THUMBNAIL, item.path):
        image = decode_image(item.path, ctx.extractor)
        artifacts = ctx.renderer.render(item.path, image)
        item.thumb_path = artifacts.thumb_path
        item.preview_path = artifacts.preview_path
        item.preview = artifacts.preview
        item.source_width = artifacts.source_width
        item.source_height = artifacts.source_height
    return item


def run_hash(ctx: StageContext, item: WorkItem) -> WorkItem:
    if item.preview is None:
        raise StageError(HASH, str(item.path), "no decoded preview available")
    with stage_errors(HASH, item.path):
        item.dhash = compute_dhash(item.preview)
        item.content_hash = compute_content_hash(item.path)
    return item


def branch_task(item: WorkItem) -> BranchTask:
    if item.preview is None:
        raise StageError(HASH, str(item.path), "no decoded preview available")
    return BranchTask(
        item_id=item.item_id,
        path=item.path,
        preview=item.preview,
        metadata=item.metadata or PhotoMetadata(),
    )


def run_tag(ctx: StageContext, task: BranchTask) -> list[TagDecision]:
    with stage_errors(TAG, task.path):
        return ctx.tagger.tag(task.preview, task.metadata, task.path.name)


def run_embed(ctx: StageContext, task: BranchTask) -> np.ndarray:
    with stage_errors(EMBED, task.path):
        vector = np.asarray(ctx.embedder.embed(task.preview), dtype=np.float32)
    if vector.shape != (ctx.embedder.dim,):
        raise StageError(EMBED, str(task.path), f"expected {ctx.embedder.dim} values, got shape {vector.shape}")
    return vector


def build_record(ctx: StageContext, item: WorkItem) -> PhotoRecord:
    source = item.source
    return PhotoRecord(
        path=str(source.path),
        file_name=source.path.name,
        ext=source.path.suffix.lstrip(".").lower(),
        format=source.format,
        size_bytes=source.size_bytes,
        mtime=source.mtime,
        content_hash=item.content_hash,
        metadata=item.metadata or PhotoMetadata(),
        width=item.source_width,
        height=item.source_height,
        thumb_path=str(item.thumb_path) if item.thumb_path else None,
        preview_path=str(item.preview_path) if item.preview_path else None,
        dhash=item.dhash,
        import_batch_id=ctx.import_batch_id,
    )


def run_persist(ctx: StageContext, item: WorkItem) -> WorkItem:
    embedding = None
    if item.embedding is not None and item.embedding_scheme:
        embedding = EmbeddingRecord(scheme=item.embedding_scheme, vector=item.embedding)
    with stage_errors(PERSIST, item.path):
        item.photo_id = ctx.store.save_import(build_record(ctx, item), item.tags, embedding)
    item.release_pixels()
    return item


__all__ = [
    "BranchTask",
    "EMBED",
    "EXTRACT",
    "HASH",
    "PERSIST",
    "StageContext",
    "TAG",
    "THUMBNAIL",
    "WorkItem",
    "branch_task",
    "build_record",
    "run_embed",
    "run_extract",
    "run_hash",
    "run_persist",
    "run_tag",
    "run_thumbnail",
    "stage_errors",
]
