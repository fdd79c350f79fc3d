"""Exception hierarchy for the extraction pipeline.

Batch-level errors (``BatchError`` and subclasses) are absorbed by the
dispatcher and recorded inline in the extracted text. Job-level errors
(``RasterizationFailed``, ``AllBatchesFailed``, ``CancellationRequested``)
decide a job's terminal status.
"""

from __future__ import annotations


class SheetScanError(Exception):
    """Base class for all pipeline errors."""


class RasterizationFailed(SheetScanError):
    """Raised when a source document cannot be turned into page images."""


class BatchError(SheetScanError):
    """Raised by an OCR client when a single batch cannot be extracted."""

    kind = "service_error"


class BatchServiceError(BatchError):
    """The OCR service failed or returned a malformed response."""

    kind = "service_error"


class BatchEmptyResult(BatchError):
    """The OCR service answered but produced no text."""

    kind = "empty_result"


class BatchTimeout(BatchError):
    """The OCR call did not finish within its timeout."""

    kind = "timeout"


class AllBatchesFailed(SheetScanError):
    """Raised after every batch of a document was attempted and none succeeded."""

    def __init__(self, message: str, failures=None) -> None:
        super().__init__(message)
        self.failures = list(failures or [])


class CancellationRequested(SheetScanError):
    """Raised between waves when a caller asked for the job to stop."""


class InvalidTransition(SheetScanError):
    """Raised when a job status change violates the lifecycle rules."""


class AttemptSuperseded(SheetScanError):
    """Raised when a write targets an attempt that a newer attempt replaced."""


class JobNotFound(SheetScanError):
    """Raised when a job id is unknown to the registry."""


__all__ = [
    "SheetScanError",
    "RasterizationFailed",
    "BatchError",
    "BatchServiceError",
    "BatchEmptyResult",
    "BatchTimeout",
    "AllBatchesFailed",
    "CancellationRequested",
    "InvalidTransition",
    "AttemptSuperseded",
    "JobNotFound",
]
