from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from photo_tagger.accel import CpuKernel
from photo_tagger.embedding import HistogramEmbedder
from photo_tagger.errors import StageError
from photo_tagger.metadata import PillowExtractor
from photo_tagger.ml.engine import NullEngine
from photo_tagger.scanner import DiscoveredFile
from photo_tagger.stages import (
    StageContext,
    WorkItem,
    branch_task,
    run_embed,
    run_extract,
    run_hash,
    run_tag,
    run_thumbnail,
)
from photo_tagger.store import CatalogStore
from photo_tagger.tagging import Tagger
from photo_tagger.thumbnailing import ThumbnailRenderer


def _context(tmp_path: Path) -> StageContext:
    kernel = CpuKernel()
    return StageContext(
        extractor=PillowExtractor(),
        renderer=ThumbnailRenderer(
            tmp_path / "cache" / "thumbnails",
            tmp_path / "cache" / "previews",
            kernel=kernel,
            thumbnail_size=64,
            preview_size=256,
        ),
        tagger=Tagger(NullEngine(), []),
        embedder=HistogramEmbedder(kernel),
        store=CatalogStore(tmp_path / "catalog.db"),
        import_batch_id="batch",
    )


def _photo(path: Path) -> DiscoveredFile:
    rng = np.random.default_rng(7)
    grid = rng.integers(0, 256, size=(12, 16, 3), dtype=np.uint8)
    Image.fromarray(grid).resize((640, 480), Image.BILINEAR).save(path, quality=90)
    stat = path.stat()
    return DiscoveredFile(path=path.resolve(), size_bytes=stat.st_size, mtime=stat.st_mtime, format="JPEG")


def _run_chain(ctx: StageContext, source: DiscoveredFile) -> tuple[WorkItem, np.ndarray, bytes, bytes]:
    item = run_hash(ctx, run_thumbnail(ctx, run_extract(ctx, WorkItem(item_id=0, source=source))))
    task = branch_task(item)
    run_tag(ctx, task)
    vector = run_embed(ctx, task)
    return item, vector, item.thumb_path.read_bytes(), item.preview_path.read_bytes()


def test_processing_the_same_file_twice_gives_identical_results(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    source = _photo(tmp_path / "photo.jpg")

    first, first_vector, first_thumb, first_preview = _run_chain(ctx, source)
    second, second_vector, second_thumb, second_preview = _run_chain(ctx, source)

    assert first.dhash == second.dhash
    assert first.content_hash == second.content_hash
    assert first.thumb_path == second.thumb_path
    assert first.preview_path == second.preview_path
    np.testing.assert_allclose(first_vector, second_vector, atol=1e-6)
    assert first_thumb == second_thumb
    assert first_preview == second_preview
    assert (first.source_width, first.source_height) == (640, 480)


def test_hash_stage_requires_a_decoded_preview(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    source = _photo(tmp_path / "photo.jpg")

    with pytest.raises(StageError):
        run_hash(ctx, WorkItem(item_id=0, source=source))


def test_thumbnail_stage_wraps_decode_errors(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    broken = tmp_path / "broken.jpg"
    broken.write_bytes(b"not a jpeg")
    source = DiscoveredFile(path=broken.resolve(), size_bytes=10, mtime=0.0, format="JPEG")

    with pytest.raises(StageError) as excinfo:
        run_thumbnail(ctx, WorkItem(item_id=0, source=source))

    assert excinfo.value.stage == "thumbnail"
