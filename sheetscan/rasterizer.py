"""Turn source documents into ordered page images using pdftoppm and Pillow."""

from __future__ import annotations

import io
import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Iterator, Optional, Union

from PIL import Image, ImageOps, ImageSequence, UnidentifiedImageError

from . import config
from .errors import RasterizationFailed
from .models import Page

logger = logging.getLogger(__name__)

PDF_EXTENSION = ".pdf"
IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".tif", ".tiff"}
SUPPORTED_EXTENSIONS = IMAGE_EXTENSIONS | {PDF_EXTENSION}

_MIME_TYPES = {"png": "image/png", "jpeg": "image/jpeg"}


class Rasterizer:
    """Produces pages numbered from 0 in the document's natural order."""

    def __init__(
        self,
        dpi: int = config.DEFAULT_DPI,
        grayscale: bool = True,
        image_format: str = config.DEFAULT_IMAGE_FORMAT,
        max_file_bytes: Optional[int] = config.DEFAULT_MAX_FILE_BYTES,
        pdftoppm: str = "pdftoppm",
    ) -> None:
        if image_format not in _MIME_TYPES:
            raise ValueError(f"Unsupported image format: {image_format}")
        self.dpi = dpi
        self.grayscale = grayscale
        self.image_format = image_format
        self.max_file_bytes = max_file_bytes
        self.pdftoppm = pdftoppm

    @classmethod
    def from_config(cls, cfg: config.Config) -> "Rasterizer":
        return cls(
            dpi=cfg.dpi,
            grayscale=cfg.grayscale,
            image_format=cfg.image_format,
            max_file_bytes=cfg.max_file_bytes,
        )

    @property
    def mime_type(self) -> str:
        return _MIME_TYPES[self.image_format]

    def rasterize(self, path: Union[Path, str], limit: Optional[int] = None) -> Iterator[Page]:
        """Validate ``path`` now and return a lazy iterator over its pages.

        ``limit`` stops after that many pages. Problems found while iterating
        (corrupt data, zero pages) raise ``RasterizationFailed`` as well.
        """
        path = Path(path)
        suffix = self._validate(path)
        if suffix == PDF_EXTENSION:
            return self._pdf_pages(path, limit)
        return self._image_pages(path, limit)

    def _validate(self, path: Path) -> str:
        if not path.exists() or not path.is_file():
            raise RasterizationFailed(f"Source document not found: {path}")

        suffix = path.suffix.lower()
        if suffix not in SUPPORTED_EXTENSIONS:
            raise RasterizationFailed(f"Unsupported file extension: {suffix or '<none>'}")

        size = path.stat().st_size
        if size == 0:
            raise RasterizationFailed(f"Source document is empty: {path}")
        if self.max_file_bytes is not None and size > self.max_file_bytes:
            raise RasterizationFailed(
                f"Source document is {size} bytes; the limit is {self.max_file_bytes} bytes"
            )
        return suffix

    def _pdf_pages(self, path: Path, limit: Optional[int]) -> Iterator[Page]:
        with tempfile.TemporaryDirectory() as tmpdir:
            output_prefix = Path(tmpdir) / "page"
            cmd = [self.pdftoppm, "-r", str(self.dpi), "-png"]
            if self.grayscale:
                cmd.append("-gray")
            if limit is not None:
                cmd.extend(["-l", str(limit)])
            cmd.extend([str(path), str(output_prefix)])

            try:
                proc = subprocess.run(cmd, capture_output=True, text=True)
            except FileNotFoundError as exc:
                raise RasterizationFailed(f"{self.pdftoppm} is not installed") from exc
            if proc.returncode != 0:
                raise RasterizationFailed(f"pdftoppm failed: {proc.stderr.strip()}")

            images = sorted(Path(tmpdir).glob(f"{output_prefix.name}-*.png"), key=_page_sort_key)
            if not images:
                raise RasterizationFailed("No images produced from PDF rasterization")
            logger.debug("Rasterized %s into %d page images", path, len(images))

            for index, image_path in enumerate(images):
                try:
                    with Image.open(image_path) as img:
                        data = self._encode(img)
                except (OSError, UnidentifiedImageError) as exc:
                    raise RasterizationFailed(f"Unreadable page {index + 1}: {exc}") from exc
                yield Page(index=index, image=data, mime_type=self.mime_type)

    def _image_pages(self, path: Path, limit: Optional[int]) -> Iterator[Page]:
        count = 0
        try:
            with Image.open(path) as img:
                # Multi-page TIFF scans carry one frame per page.
                for frame in ImageSequence.Iterator(img):
                    if limit is not None and count >= limit:
                        break
                    yield Page(index=count, image=self._encode(frame), mime_type=self.mime_type)
                    count += 1
        except (OSError, UnidentifiedImageError) as exc:
            raise RasterizationFailed(f"Unreadable image {path.name}: {exc}") from exc
        if count == 0:
            raise RasterizationFailed(f"No pages found in {path.name}")

    def _encode(self, img: Image.Image) -> bytes:
        """Normalise one page for OCR and encode it."""
        img = img.convert("L" if self.grayscale else "RGB")
        img = ImageOps.autocontrast(img)
        buf = io.BytesIO()
        img.save(buf, format=self.image_format.upper())
        return buf.getvalue()


def _page_sort_key(path: Path) -> int:
    """Extract a numeric sort key from pdftoppm output filenames."""
    try:
        return int(path.stem.split("-")[-1])
    except ValueError:
        return 0
