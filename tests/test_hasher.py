from __future__ import annotations

from pathlib import Path

import numpy as np
from PIL import Image

from photo_tagger.hasher import (
    compute_content_hash,
    compute_dhash,
    format_dhash,
    from_signed64,
    hamming_distance,
    to_signed64,
)


def _gradient(descending: bool) -> Image.Image:
    row = np.arange(9, dtype=np.uint8) * 20
    if descending:
        row = row[::-1]
    return Image.fromarray(np.tile(row, (8, 1)).astype(np.uint8), mode="L")


def test_dhash_sets_bit_when_left_pixel_is_brighter() -> None:
    """A left-to-right darkening grid sets every bit; the mirror sets none."""

    assert compute_dhash(_gradient(descending=True)) == (1 << 64) - 1
    assert compute_dhash(_gradient(descending=False)) == 0


def test_dhash_is_stable_and_tolerates_recompression(tmp_path: Path) -> None:
    rng = np.random.default_rng(7)
    base = Image.fromarray(rng.integers(0, 256, size=(8, 9, 3), dtype=np.uint8)).resize((360, 320), Image.BILINEAR)
    jpeg_path = tmp_path / "copy.jpg"
    base.save(jpeg_path, quality=85)

    with Image.open(jpeg_path) as reopened:
        recompressed = reopened.convert("RGB")

    assert compute_dhash(base) == compute_dhash(base.copy())
    assert hamming_distance(compute_dhash(base), compute_dhash(recompressed)) <= 4


def test_hamming_distance_counts_differing_bits() -> None:
    assert hamming_distance(0, 0) == 0
    assert hamming_distance(0b1011, 0b0001) == 2
    assert hamming_distance(0, (1 << 64) - 1) == 64


def test_signed_round_trip_covers_high_bit() -> None:
    value = 0xF0F0_0000_0000_0001
    stored = to_signed64(value)

    assert stored < 0
    assert from_signed64(stored) == value
    assert to_signed64(5) == 5
    assert format_dhash(value) == "f0f0000000000001"


def test_content_hash_depends_on_bytes_only(tmp_path: Path) -> None:
    first = tmp_path / "a.bin"
    second = tmp_path / "nested" / "b.bin"
    second.parent.mkdir()
    first.write_bytes(b"photo-bytes" * 1000)
    second.write_bytes(b"photo-bytes" * 1000)

    digest = compute_content_hash(first, chunk_size=17)

    assert len(digest) == 16
    assert digest == compute_content_hash(second)
    first.write_bytes(b"other")
    assert compute_content_hash(first) != digest
