"""Torch device selection and the shared accelerator session handle."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

import torch
from torch import device as TorchDevice

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "accelerator"})


def _mps_available() -> bool:
    return getattr(torch.backends, "mps", None) is not None and torch.backends.mps.is_available()


def select_device(requested: str = "auto") -> TorchDevice:
    """Select a torch device, preferring CPU-safe fallbacks.

    - ``auto``: CUDA → MPS → CPU, silently.
    - Explicit values (``cuda``, ``mps``): used when available, otherwise CPU
      with an ``accelerator_fallback`` warning since the caller asked for it.
    """

    normalized = (requested or "auto").lower()

    if normalized == "auto":
        if torch.cuda.is_available():
            return torch.device("cuda")
        if _mps_available():
            return torch.device("mps")
        return torch.device("cpu")

    if normalized == "cpu":
        return torch.device("cpu")
    if normalized.startswith("cuda") and torch.cuda.is_available():
        return torch.device(normalized)
    if normalized == "mps" and _mps_available():
        return torch.device("mps")

    LOGGER.warning("accelerator_fallback", extra={"requested": normalized, "device": "cpu"})
    return torch.device("cpu")


class AcceleratorSession:
    """Explicitly owned device handle with single-access discipline.

    Every model or kernel call on the device goes through :meth:`exclusive`, so
    at most one call runs against the session at a time regardless of how many
    workers share it.
    """

    def __init__(self, requested: str = "auto") -> None:
        self.requested = (requested or "auto").lower()
        self.device = select_device(self.requested)
        self._lock = threading.Lock()

    @property
    def accelerated(self) -> bool:
        return self.device.type != "cpu"

    @property
    def explicit(self) -> bool:
        """True when the caller named a specific accelerator instead of ``auto``."""

        return self.requested not in {"auto", "cpu"}

    def fall_back_to_cpu(self, reason: str) -> None:
        """Move the session to CPU after an accelerator initialization failure."""

        if not self.accelerated:
            return
        if self.explicit:
            LOGGER.warning(
                "accelerator_fallback",
                extra={"requested": self.requested, "device": "cpu", "error": reason},
            )
        else:
            LOGGER.debug("accelerator_auto_cpu", extra={"device": str(self.device), "error": reason})
        self.device = torch.device("cpu")

    @contextmanager
    def exclusive(self) -> Iterator[TorchDevice]:
        with self._lock:
            yield self.device


__all__ = ["AcceleratorSession", "select_device"]
