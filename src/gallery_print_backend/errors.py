"""
Error taxonomy for the print-photo pipeline.

Every pipeline failure is a PrintPipelineError. The ``retryable`` flag tells
the job queue whether another attempt can succeed; ``stage`` names the
pipeline step that raised it so operators can see where a task stopped.
"""

from __future__ import annotations

from typing import Optional


class PrintPipelineError(Exception):
    """Base class for all print pipeline failures."""

    retryable: bool = True

    def __init__(self, message: str, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.stage = stage


class SourceNotFound(PrintPipelineError):
    """The original image does not exist in storage."""

    retryable = False


class DimensionExtractionFailed(PrintPipelineError):
    """The source bytes could not be decoded into a usable raster."""

    retryable = False


class ExternalToolFailed(PrintPipelineError):
    """A single invocation of the metadata-copy step failed."""


class MetadataReattachFailed(PrintPipelineError):
    """Capture metadata could not be copied onto the print artifact."""


class StorageWriteFailed(PrintPipelineError):
    """Persisting the print artifact failed."""


def is_retryable(exc: BaseException) -> bool:
    """Errors outside the taxonomy are assumed transient."""
    return getattr(exc, "retryable", True)
