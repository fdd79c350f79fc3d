"""Dataclasses used throughout the extraction pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class BatchErrorKind(str, Enum):
    SERVICE_ERROR = "service_error"
    EMPTY_RESULT = "empty_result"
    TIMEOUT = "timeout"


DOCUMENT_TYPES = ("question", "answer", "student-sheet", "chapter-material")


@dataclass
class ExtractionJob:
    id: str
    source_ref: str
    document_type: str
    status: JobStatus
    attempt: int
    extracted_text: Optional[str]
    has_extracted_text: bool
    phase: Optional[str]
    progress: float
    partial_text: Optional[str]
    error_kind: Optional[str]
    page_count: Optional[int]
    batch_count: Optional[int]
    failed_batches: List[int]
    cancel_requested: bool
    metadata: Dict[str, object]
    created_at: str
    updated_at: str
    finished_at: Optional[str]


@dataclass
class AttemptRecord:
    job_id: str
    attempt: int
    status: JobStatus
    extracted_text: Optional[str]
    partial_text: Optional[str]
    error_kind: Optional[str]
    started_at: str
    finished_at: Optional[str]
    archived_at: str


@dataclass(frozen=True)
class Page:
    """One rasterized page; ``index`` is zero-based."""

    index: int
    image: bytes
    mime_type: str = "image/png"


@dataclass(frozen=True)
class Batch:
    index: int
    pages: Tuple[Page, ...]

    @property
    def first_page(self) -> int:
        return self.pages[0].index + 1

    @property
    def last_page(self) -> int:
        return self.pages[-1].index + 1

    @property
    def number(self) -> int:
        return self.index + 1


@dataclass(frozen=True)
class BatchResult:
    batch_index: int
    first_page: int
    last_page: int
    text: Optional[str] = None
    error_kind: Optional[BatchErrorKind] = None
    error_message: Optional[str] = None
    attempts: int = field(default=1, compare=False)

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @classmethod
    def success(cls, batch: Batch, text: str, attempts: int = 1) -> "BatchResult":
        return cls(batch.index, batch.first_page, batch.last_page, text=text, attempts=attempts)

    @classmethod
    def failure(
        cls, batch: Batch, kind: BatchErrorKind, message: str, attempts: int = 1
    ) -> "BatchResult":
        return cls(
            batch.index,
            batch.first_page,
            batch.last_page,
            error_kind=kind,
            error_message=message,
            attempts=attempts,
        )
