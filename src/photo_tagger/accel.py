"""Resize and color-histogram kernels with a CPU implementation and an optional torch accelerator."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import numpy as np
from PIL import Image
from PIL.Image import Resampling

from photo_tagger.errors import AcceleratorError
from utils.logging import get_logger

if TYPE_CHECKING:
    from photo_tagger.ml.devices import AcceleratorSession

LOGGER = get_logger(__name__, extra={"component": "accel"})


def fit_within(width: int, height: int, max_side: int) -> tuple[int, int]:
    """Return ``(width, height)`` scaled down so the longest side is at most ``max_side``.

    Images already small enough keep their size; nothing is upscaled.
    """

    longest = max(width, height)
    safe_side = max(1, int(max_side))
    if longest <= safe_side:
        return width, height
    scale = safe_side / float(longest)
    return max(1, round(width * scale)), max(1, round(height * scale))


class TransformKernel(Protocol):
    """Pixel-buffer transforms used by the thumbnail and embedding stages."""

    name: str

    def resize(self, image: Image.Image, max_side: int) -> Image.Image:
        ...

    def histogram(self, image: Image.Image, bins: int) -> np.ndarray:
        ...


def _quantize(pixels: np.ndarray, bins: int) -> np.ndarray:
    return (pixels.astype(np.uint32) * bins) >> 8


class CpuKernel:
    """Pillow resize plus numpy histogram."""

    name = "cpu"

    def resize(self, image: Image.Image, max_side: int) -> Image.Image:
        rgb = image.convert("RGB")
        size = fit_within(rgb.width, rgb.height, max_side)
        if size == rgb.size:
            return rgb.copy()
        return rgb.resize(size, resample=Resampling.LANCZOS)

    def histogram(self, image: Image.Image, bins: int) -> np.ndarray:
        pixels = np.asarray(image.convert("RGB"), dtype=np.uint8).reshape(-1, 3)
        quantized = _quantize(pixels, bins)
        counts = [np.bincount(quantized[:, channel], minlength=bins)[:bins] for channel in range(3)]
        return np.concatenate(counts).astype(np.float32)


class TorchKernel:
    """Antialiased bilinear resize and ``bincount`` histograms on a torch device.

    Output is visually equivalent to :class:`CpuKernel` but not bit-identical.
    """

    name = "torch"

    def __init__(self, session: AcceleratorSession) -> None:
        self._session = session

    def _to_tensor(self, image: Image.Image, device: object) -> object:
        import torch

        array = np.asarray(image.convert("RGB"), dtype=np.uint8)
        return torch.from_numpy(array.copy()).to(device)

    def resize(self, image: Image.Image, max_side: int) -> Image.Image:
        import torch
        import torch.nn.functional as F

        size = fit_within(image.width, image.height, max_side)
        if size == image.size:
            return image.convert("RGB").copy()

        with self._session.exclusive() as device:
            try:
                tensor = self._to_tensor(image, device).permute(2, 0, 1).unsqueeze(0).float()
                resized = F.interpolate(
                    tensor, size=(size[1], size[0]), mode="bilinear", align_corners=False, antialias=True
                )
                out = resized.round().clamp(0, 255).to(torch.uint8).squeeze(0).permute(1, 2, 0).cpu().numpy()
            except RuntimeError as exc:
                raise AcceleratorError(f"resize kernel failed on {device}: {exc}") from exc
        return Image.fromarray(out)

    def histogram(self, image: Image.Image, bins: int) -> np.ndarray:
        import torch

        with self._session.exclusive() as device:
            try:
                pixels = self._to_tensor(image, device).reshape(-1, 3).to(torch.int64)
                quantized = (pixels * bins) >> 8
                counts = [torch.bincount(quantized[:, channel], minlength=bins)[:bins] for channel in range(3)]
                out = torch.cat(counts).to(torch.float32).cpu().numpy()
            except RuntimeError as exc:
                raise AcceleratorError(f"histogram kernel failed on {device}: {exc}") from exc
        return out


def build_transform_kernel(device: str = "cpu", session: AcceleratorSession | None = None) -> TransformKernel:
    """Return the kernel for ``device``, falling back to :class:`CpuKernel`.

    ``cpu`` never touches torch. Any other value opens (or reuses) an
    accelerator session and keeps the CPU kernel when no accelerator is
    available.
    """

    normalized = (device or "cpu").lower()
    if normalized == "cpu":
        return CpuKernel()

    if session is None:
        from photo_tagger.ml.devices import AcceleratorSession

        session = AcceleratorSession(normalized)

    if not session.accelerated:
        LOGGER.info("transform_kernel_cpu", extra={"requested": normalized})
        return CpuKernel()

    LOGGER.info("transform_kernel_accelerated", extra={"device": str(session.device)})
    return TorchKernel(session)


__all__ = ["CpuKernel", "TorchKernel", "TransformKernel", "build_transform_kernel", "fit_within"]
