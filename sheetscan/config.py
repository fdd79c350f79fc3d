"""Configuration defaults for Sheet Scan."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

# Default locations and tuning; can be overridden via env vars or CLI args.
DEFAULT_DB_PATH = Path("sheetscan.db")
DEFAULT_BATCH_SIZE = 10
DEFAULT_CONCURRENCY = 3
DEFAULT_WAVE_DELAY = 1.0
DEFAULT_OCR_TIMEOUT = 120.0
DEFAULT_BATCH_RETRIES = 0
DEFAULT_DPI = 200
DEFAULT_IMAGE_FORMAT = "png"
DEFAULT_MAX_FILE_BYTES = 25 * 1024 * 1024
DEFAULT_JOB_CONCURRENCY = 2
DEFAULT_STALE_AFTER = 15 * 60

SUPPORTED_IMAGE_FORMATS = {"png", "jpeg"}


def _get_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "t", "yes", "y", "on")


def _get_int(name: str, default: Optional[int]) -> Optional[int]:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    return int(v)


def _get_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    return float(v)


@dataclass
class Config:
    """Pipeline settings."""

    db_path: Path = DEFAULT_DB_PATH

    # Rasterization
    dpi: int = DEFAULT_DPI
    grayscale: bool = True
    image_format: str = DEFAULT_IMAGE_FORMAT
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES
    max_pages: Optional[int] = None

    # Dispatch
    batch_size: int = DEFAULT_BATCH_SIZE
    concurrency: int = DEFAULT_CONCURRENCY
    wave_delay: float = DEFAULT_WAVE_DELAY
    ocr_timeout: float = DEFAULT_OCR_TIMEOUT
    batch_retries: int = DEFAULT_BATCH_RETRIES

    # OCR service; Tesseract runs locally when no URL is set
    ocr_url: Optional[str] = None
    ocr_api_key: Optional[str] = None
    tesseract_lang: str = "eng"

    # Worker
    job_concurrency: int = DEFAULT_JOB_CONCURRENCY
    stale_after: int = DEFAULT_STALE_AFTER

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            db_path=Path(os.getenv("SHEETSCAN_DB_PATH", str(DEFAULT_DB_PATH))),
            dpi=_get_int("SHEETSCAN_DPI", DEFAULT_DPI),
            grayscale=_get_bool("SHEETSCAN_GRAYSCALE", True),
            image_format=os.getenv("SHEETSCAN_IMAGE_FORMAT", DEFAULT_IMAGE_FORMAT).strip().lower(),
            max_file_bytes=_get_int("SHEETSCAN_MAX_FILE_BYTES", DEFAULT_MAX_FILE_BYTES),
            max_pages=_get_int("SHEETSCAN_MAX_PAGES", None),
            batch_size=_get_int("SHEETSCAN_BATCH_SIZE", DEFAULT_BATCH_SIZE),
            concurrency=_get_int("SHEETSCAN_CONCURRENCY", DEFAULT_CONCURRENCY),
            wave_delay=_get_float("SHEETSCAN_WAVE_DELAY", DEFAULT_WAVE_DELAY),
            ocr_timeout=_get_float("SHEETSCAN_OCR_TIMEOUT", DEFAULT_OCR_TIMEOUT),
            batch_retries=_get_int("SHEETSCAN_BATCH_RETRIES", DEFAULT_BATCH_RETRIES),
            ocr_url=os.getenv("SHEETSCAN_OCR_URL") or None,
            ocr_api_key=os.getenv("SHEETSCAN_OCR_API_KEY") or None,
            tesseract_lang=os.getenv("SHEETSCAN_TESSERACT_LANG", "eng"),
            job_concurrency=_get_int("SHEETSCAN_JOB_CONCURRENCY", DEFAULT_JOB_CONCURRENCY),
            stale_after=_get_int("SHEETSCAN_STALE_AFTER", DEFAULT_STALE_AFTER),
        )

    def validate(self) -> None:
        if self.batch_size < 1:
            raise ValueError("SHEETSCAN_BATCH_SIZE must be >= 1")
        if self.concurrency < 1:
            raise ValueError("SHEETSCAN_CONCURRENCY must be >= 1")
        if self.job_concurrency < 1:
            raise ValueError("SHEETSCAN_JOB_CONCURRENCY must be >= 1")
        if self.wave_delay < 0:
            raise ValueError("SHEETSCAN_WAVE_DELAY must be >= 0")
        if self.ocr_timeout <= 0:
            raise ValueError("SHEETSCAN_OCR_TIMEOUT must be > 0")
        if self.batch_retries < 0:
            raise ValueError("SHEETSCAN_BATCH_RETRIES must be >= 0")
        if self.dpi < 1:
            raise ValueError("SHEETSCAN_DPI must be >= 1")
        if self.max_pages is not None and self.max_pages < 1:
            raise ValueError("SHEETSCAN_MAX_PAGES must be >= 1 when set")
        if self.image_format not in SUPPORTED_IMAGE_FORMATS:
            raise ValueError(
                f"Unsupported image format {self.image_format!r}; "
                f"expected one of {', '.join(sorted(SUPPORTED_IMAGE_FORMATS))}"
            )
