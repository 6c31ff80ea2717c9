"""Content and perceptual hashing helpers for images."""

from __future__ import annotations

from pathlib import Path
from typing import Final

import numpy as np
import xxhash
from PIL import Image
from PIL.Image import Resampling

DHASH_BITS: Final[int] = 64

_DHASH_WIDTH: Final[int] = 9
_DHASH_HEIGHT: Final[int] = 8
_UINT64_MASK: Final[int] = (1 << 64) - 1


def compute_content_hash(path: Path, chunk_size: int = 1 << 20) -> str:
    """Compute the 64-bit content hash for a file.

    The file is streamed through ``xxhash.xxh64`` so large RAW files are never
    loaded into memory at once.

    Args:
        path: Path to the file whose content should be hashed.
        chunk_size: Size of the read buffer in bytes.

    Returns:
        Content hash as a 16-character lowercase hexadecimal string.
    """

    hasher = xxhash.xxh64()
    with path.open("rb") as handle:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            hasher.update(chunk)
    return f"{hasher.intdigest():016x}"


def path_name_hint(path: Path) -> str:
    """Return a stable artifact file stem for ``path``."""

    return xxhash.xxh3_64_hexdigest(str(path).encode("utf-8"))


def compute_dhash(image: Image.Image) -> int:
    """Compute the 64-bit difference hash for an image.

    - Convert to a single luminance channel.
    - Resize to 9x8 pixels with the bilinear (triangle) filter.
    - For each row, set a bit when a pixel is brighter than its right neighbour.
    - Pack the 64 bits row-major, most significant bit first.

    The result depends only on the decoded pixel grid, so re-hashing an
    unchanged image always yields the same value.

    Args:
        image: PIL Image instance to hash.

    Returns:
        Difference hash as an unsigned 64-bit integer.
    """

    gray = image.convert("L").resize((_DHASH_WIDTH, _DHASH_HEIGHT), resample=Resampling.BILINEAR)
    pixels = np.asarray(gray, dtype=np.int16)
    bits = (pixels[:, :-1] > pixels[:, 1:]).flatten()

    value = 0
    for bit in bits:
        value = (value << 1) | int(bit)
    return value


def hamming_distance(a: int, b: int) -> int:
    """Count the differing bits between two 64-bit hashes."""

    return int(((a ^ b) & _UINT64_MASK).bit_count())


def to_signed64(value: int) -> int:
    """Map an unsigned 64-bit hash onto SQLite's signed INTEGER range."""

    value &= _UINT64_MASK
    return value - (1 << 64) if value >= (1 << 63) else value


def from_signed64(value: int) -> int:
    """Inverse of :func:`to_signed64`."""

    return value & _UINT64_MASK


def format_dhash(value: int) -> str:
    return f"{value & _UINT64_MASK:016x}"


__all__ = [
    "DHASH_BITS",
    "compute_content_hash",
    "compute_dhash",
    "format_dhash",
    "from_signed64",
    "hamming_distance",
    "path_name_hint",
    "to_signed64",
]
