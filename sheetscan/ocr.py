"""OCR service clients: local Tesseract or a remote vision endpoint."""

from __future__ import annotations

import asyncio
import base64
import io
import logging
from typing import Optional, Protocol

import httpx
import pytesseract
from PIL import Image

from . import config
from .errors import BatchEmptyResult, BatchServiceError, BatchTimeout
from .models import Batch

logger = logging.getLogger(__name__)


class OcrClient(Protocol):
    async def extract(self, batch: Batch, *, document_type: str = "question") -> str:
        """Return the text of every page in ``batch``, in page order."""
        ...


def page_header(page_number: int) -> str:
    return f"=== PAGE {page_number} ==="


async def _run_in_thread(func, *args):
    """Run ``func`` in a worker thread and hold the caller until it returns.

    A cancelled caller (for example by ``asyncio.wait_for``) still waits for
    the thread, so work that cannot be interrupted is never left running
    behind the caller's back.
    """
    task = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        await asyncio.wait([task])
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Abandoned OCR call failed: %s", task.exception())
        raise


class TesseractClient:
    """Runs Tesseract on each page of a batch in a worker thread.

    ``timeout`` is the budget for the whole batch. Each page gets what is left
    of it as pytesseract's own timeout, which kills the tesseract process.
    """

    def __init__(self, lang: str = "eng", timeout: float = 0) -> None:
        self.lang = lang
        self.timeout = timeout

    async def extract(self, batch: Batch, *, document_type: str = "question") -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout if self.timeout > 0 else None
        parts = []
        found_text = False
        for page in batch.pages:
            page_timeout = 0.0
            if deadline is not None:
                page_timeout = deadline - loop.time()
                if page_timeout <= 0:
                    raise BatchTimeout(
                        f"batch budget of {self.timeout:g}s used up before page {page.index + 1}"
                    )
            text = (await _run_in_thread(self._ocr_page, page.image, page_timeout)).strip()
            found_text = found_text or bool(text)
            parts.append(f"{page_header(page.index + 1)}\n\n{text}")
        if not found_text:
            raise BatchEmptyResult("no text extracted")
        return "\n\n".join(parts)

    def _ocr_page(self, image: bytes, timeout: float = 0) -> str:
        try:
            with Image.open(io.BytesIO(image)) as img:
                return pytesseract.image_to_string(img, lang=self.lang, timeout=timeout)
        except (pytesseract.TesseractError, OSError) as exc:
            raise BatchServiceError(f"tesseract failed: {exc}") from exc
        except RuntimeError as exc:
            # pytesseract signals its own timeout with a bare RuntimeError.
            raise BatchTimeout(f"tesseract timed out: {exc}") from exc


class HttpVisionClient:
    """Posts a batch of base64 page images to a remote vision service.

    The service answers ``{"text": "..."}``; anything else is treated as a
    malformed response.
    """

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        timeout: float = config.DEFAULT_OCR_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    async def extract(self, batch: Batch, *, document_type: str = "question") -> str:
        payload = {
            "document_type": document_type,
            "batch": batch.number,
            "pages": [
                {
                    "page": page.index + 1,
                    "mime_type": page.mime_type,
                    "image": base64.b64encode(page.image).decode("ascii"),
                }
                for page in batch.pages
            ],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        try:
            resp = await self._client.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as exc:
            raise BatchTimeout(f"request timed out after {self.timeout:g}s") from exc
        except httpx.HTTPError as exc:
            raise BatchServiceError(f"service unreachable: {exc}") from exc

        if resp.status_code >= 400:
            raise BatchServiceError(f"service returned HTTP {resp.status_code}: {resp.text[:200]}")

        try:
            body = resp.json()
        except ValueError as exc:
            raise BatchServiceError("malformed response: body is not JSON") from exc

        text = body.get("text") if isinstance(body, dict) else None
        if not isinstance(text, str):
            raise BatchServiceError("malformed response: missing 'text'")
        return text

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_client(cfg: config.Config) -> OcrClient:
    if cfg.ocr_url:
        logger.info("Using remote OCR service at %s", cfg.ocr_url)
        return HttpVisionClient(cfg.ocr_url, api_key=cfg.ocr_api_key, timeout=cfg.ocr_timeout)
    logger.info("Using local Tesseract OCR (lang=%s)", cfg.tesseract_lang)
    return TesseractClient(lang=cfg.tesseract_lang, timeout=cfg.ocr_timeout)
