"""Exception hierarchy shared by the import pipeline and catalog queries."""

from __future__ import annotations


class PhotoTaggerError(Exception):
    """Base class for all errors raised by photo_tagger."""


class ConfigurationError(PhotoTaggerError):
    """Raised at job submission when settings or inputs are unusable."""


class MissingDependencyError(ConfigurationError):
    """A required external binary or model file could not be found."""

    def __init__(self, dependency: str, detail: str | None = None) -> None:
        self.dependency = dependency
        message = f"missing dependency: {dependency}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class AlreadyRunning(PhotoTaggerError):
    """Raised when an import is submitted while another one is active."""


class NoActiveJob(PhotoTaggerError):
    """Raised when a job handle does not refer to a known job."""


class StageError(PhotoTaggerError):
    """Recoverable failure of one stage for one item."""

    def __init__(self, stage: str, path: str, message: str) -> None:
        self.stage = stage
        self.path = path
        self.message = message
        super().__init__(f"{stage} failed for {path}: {message}")


class JobFatalError(PhotoTaggerError):
    """Failure that aborts the whole import job."""


class StoreUnavailable(JobFatalError):
    """The catalog database cannot be reached or written."""


class AcceleratorError(JobFatalError):
    """An accelerator session failed while a job was running."""


class PhotoNotFound(PhotoTaggerError):
    """No photo record exists for the requested identifier."""


class EmbeddingMissing(PhotoTaggerError):
    """The requested photo has no embedding for the active scheme."""


__all__ = [
    "AcceleratorError",
    "AlreadyRunning",
    "ConfigurationError",
    "EmbeddingMissing",
    "JobFatalError",
    "MissingDependencyError",
    "NoActiveJob",
    "PhotoNotFound",
    "PhotoTaggerError",
    "StageError",
    "StoreUnavailable",
]
