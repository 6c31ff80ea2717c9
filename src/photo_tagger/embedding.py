"""Fixed-length image embeddings and their storage encoding."""

from __future__ import annotations

from typing import Final, Protocol

import numpy as np
from PIL import Image
from PIL.Image import Resampling

from photo_tagger.accel import CpuKernel, TransformKernel

NORM_FLOOR: Final[float] = 1e-6


class Embedder(Protocol):
    """Anything that maps a decoded image to a vector of constant length.

    ``scheme`` names the embedding family; vectors from different schemes are
    never compared with each other.
    """

    scheme: str
    dim: int

    def embed(self, image: Image.Image) -> np.ndarray:
        ...


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    """Scale ``vector`` to unit length; near-zero vectors are divided by :data:`NORM_FLOOR`."""

    values = np.asarray(vector, dtype=np.float32)
    norm = max(float(np.linalg.norm(values)), NORM_FLOOR)
    return (values / norm).astype(np.float32)


class HistogramEmbedder:
    """Baseline embedding: an L2-normalized RGB histogram.

    The image is first reduced to a ``grid_size`` x ``grid_size`` square so
    the vector does not depend on source resolution, then each channel is
    quantized into ``bins`` buckets. The result has ``3 * bins`` entries.
    """

    def __init__(self, kernel: TransformKernel | None = None, bins: int = 16, grid_size: int = 64) -> None:
        if bins < 1 or bins > 256:
            raise ValueError(f"bins must be within 1..256, got {bins}")
        self._kernel = kernel or CpuKernel()
        self.bins = bins
        self.grid_size = max(1, grid_size)
        self.scheme = f"rgb_hist_{bins}"
        self.dim = 3 * bins

    def embed(self, image: Image.Image) -> np.ndarray:
        small = image.convert("RGB").resize((self.grid_size, self.grid_size), resample=Resampling.BILINEAR)
        return l2_normalize(self._kernel.histogram(small, self.bins))


def serialize_vector(vector: np.ndarray) -> bytes:
    """Encode a vector as little-endian float32 bytes."""

    return np.asarray(vector, dtype="<f4").tobytes()


def deserialize_vector(blob: bytes) -> np.ndarray:
    if len(blob) % 4:
        raise ValueError(f"embedding blob length {len(blob)} is not a multiple of 4")
    return np.frombuffer(blob, dtype="<f4").astype(np.float32)


__all__ = [
    "Embedder",
    "HistogramEmbedder",
    "NORM_FLOOR",
    "deserialize_vector",
    "l2_normalize",
    "serialize_vector",
]
