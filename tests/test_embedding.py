from __future__ import annotations

import numpy as np
import pytest
from PIL import Image

from photo_tagger.accel import CpuKernel, build_transform_kernel, fit_within
from photo_tagger.embedding import HistogramEmbedder, deserialize_vector, l2_normalize, serialize_vector


def test_histogram_embedding_has_fixed_length_and_unit_norm() -> None:
    embedder = HistogramEmbedder(bins=16)
    small = Image.new("RGB", (10, 7), (255, 0, 0))
    large = Image.new("RGB", (1200, 900), (255, 0, 0))

    first = embedder.embed(small)
    second = embedder.embed(large)

    assert embedder.scheme == "rgb_hist_16"
    assert embedder.dim == 48
    assert first.shape == (48,)
    assert first.dtype == np.float32
    assert np.linalg.norm(first) == pytest.approx(1.0, abs=1e-5)
    np.testing.assert_allclose(first, second, atol=1e-6)
    # Pure red lands in the top red bin and the bottom green and blue bins.
    assert set(np.flatnonzero(first)) == {15, 16, 32}


def test_similar_colors_embed_closer_than_different_ones() -> None:
    embedder = HistogramEmbedder(bins=8)
    warm = embedder.embed(Image.new("RGB", (32, 32), (220, 40, 30)))
    warmer = embedder.embed(Image.new("RGB", (32, 32), (230, 45, 25)))
    cold = embedder.embed(Image.new("RGB", (32, 32), (20, 60, 230)))

    assert float(warm @ warmer) > float(warm @ cold)


def test_zero_vector_normalizes_without_dividing_by_zero() -> None:
    assert not np.any(l2_normalize(np.zeros(4)))


def test_vector_bytes_are_little_endian_float32() -> None:
    vector = np.array([1.0, -0.5, 0.25], dtype=np.float32)
    blob = serialize_vector(vector)

    assert blob == np.array([1.0, -0.5, 0.25], dtype="<f4").tobytes()
    np.testing.assert_array_equal(deserialize_vector(blob), vector)
    with pytest.raises(ValueError):
        deserialize_vector(b"\x00\x01\x02")


def test_cpu_kernel_resizes_without_upscaling() -> None:
    kernel = CpuKernel()

    assert fit_within(4000, 3000, 1600) == (1600, 1200)
    assert fit_within(300, 200, 1600) == (300, 200)
    assert kernel.resize(Image.new("RGB", (4000, 3000)), 320).size == (320, 240)
    assert kernel.resize(Image.new("L", (30, 20)), 320).mode == "RGB"


def test_cpu_kernel_histogram_counts_every_pixel() -> None:
    counts = CpuKernel().histogram(Image.new("RGB", (5, 4), (0, 128, 255)), bins=4)

    assert counts.tolist() == [20, 0, 0, 0, 0, 0, 20, 0, 0, 0, 0, 20]


def test_cpu_device_never_builds_accelerated_kernel() -> None:
    assert isinstance(build_transform_kernel("cpu"), CpuKernel)
