"""Filesystem discovery of importable image files."""

from __future__ import annotations

import os
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path

from photo_tagger.concurrency import CancellationToken
from photo_tagger.config import DEFAULT_EXTENSIONS
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "scanner"})

_FORMAT_ALIASES = {"JPG": "JPEG", "TIF": "TIFF"}

Fingerprint = tuple[float, int]


@dataclass(frozen=True)
class DiscoveredFile:
    """A candidate file found under an import root."""

    path: Path
    size_bytes: int
    mtime: float
    format: str


def detect_format(path: Path) -> str:
    """Return the upper-case format name implied by the file suffix."""

    suffix = path.suffix.lstrip(".").upper()
    return _FORMAT_ALIASES.get(suffix, suffix)


def _normalize_extensions(extensions: Iterable[str] | None) -> frozenset[str]:
    values = extensions or DEFAULT_EXTENSIONS
    return frozenset(ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in values)


def _log_walk_error(exc: OSError) -> None:
    LOGGER.warning("scan_walk_error", extra={"path": exc.filename, "error": str(exc)})


def discover_files(
    root: Path,
    extensions: Iterable[str] | None = None,
    fingerprints: Mapping[str, Fingerprint] | None = None,
    cancel_token: CancellationToken | None = None,
    on_skipped: Callable[[Path], None] | None = None,
) -> Iterator[DiscoveredFile]:
    """Recursively walk ``root`` and yield importable files.

    Args:
        root: Import root directory.
        extensions: Allowed suffixes, with or without the leading dot.
        fingerprints: Stored ``path -> (mtime, size)`` pairs; files whose
            current stat matches are skipped as unchanged.
        cancel_token: Stops the walk promptly once cancelled.
        on_skipped: Called with the path of every unchanged file.

    Yields:
        DiscoveredFile instances as the walk reaches them. Each directory
        lists its files in sorted order before descending into its sorted
        subdirectories.
    """

    allowed = _normalize_extensions(extensions)
    known = fingerprints or {}

    if not root.is_dir():
        LOGGER.warning("scan_root_missing", extra={"root": str(root)})
        return

    for dirpath, dirnames, filenames in os.walk(root, onerror=_log_walk_error):
        if cancel_token is not None and cancel_token.cancelled:
            LOGGER.info("scan_cancelled", extra={"root": str(root)})
            return
        dirnames.sort()
        directory = Path(dirpath)

        for name in sorted(filenames):
            if cancel_token is not None and cancel_token.cancelled:
                LOGGER.info("scan_cancelled", extra={"root": str(root)})
                return
            path = directory / name
            if path.suffix.lower() not in allowed or not path.is_file():
                continue

            try:
                stat = path.stat()
            except OSError as exc:
                LOGGER.warning("scan_stat_error", extra={"path": str(path), "error": str(exc)})
                continue

            resolved = path.resolve()
            previous = known.get(str(resolved))
            if previous is not None and previous == (stat.st_mtime, stat.st_size):
                if on_skipped is not None:
                    on_skipped(resolved)
                continue

            yield DiscoveredFile(path=resolved, size_bytes=stat.st_size, mtime=stat.st_mtime, format=detect_format(path))


__all__ = ["DiscoveredFile", "Fingerprint", "detect_format", "discover_files"]
