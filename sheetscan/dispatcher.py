"""Wave-based dispatch of page batches to the OCR service.

Batches go out in waves of at most ``concurrency`` requests. A wave is
awaited as a whole before the next one starts, which bounds the load on the
service and gives a checkpoint for progress writes. A failing batch becomes a
failed ``BatchResult``; it never aborts the other batches.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from . import config
from .batcher import make_waves
from .errors import BatchError, CancellationRequested
from .models import Batch, BatchErrorKind, BatchResult
from .ocr import OcrClient

logger = logging.getLogger(__name__)

OnWave = Callable[[int, int, List[BatchResult]], None]
ShouldCancel = Callable[[], bool]
Sleep = Callable[[float], Awaitable[None]]

MAX_BACKOFF = 10.0


class Dispatcher:
    def __init__(
        self,
        client: OcrClient,
        concurrency: int = config.DEFAULT_CONCURRENCY,
        timeout: float = config.DEFAULT_OCR_TIMEOUT,
        wave_delay: float = config.DEFAULT_WAVE_DELAY,
        retries: int = config.DEFAULT_BATCH_RETRIES,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.client = client
        self.concurrency = concurrency
        self.timeout = timeout
        self.wave_delay = wave_delay
        self.retries = retries
        self._sleep = sleep

    @classmethod
    def from_config(cls, client: OcrClient, cfg: config.Config) -> "Dispatcher":
        return cls(
            client,
            concurrency=cfg.concurrency,
            timeout=cfg.ocr_timeout,
            wave_delay=cfg.wave_delay,
            retries=cfg.batch_retries,
        )

    async def dispatch(
        self,
        batches: Sequence[Batch],
        *,
        document_type: str = "question",
        on_wave: Optional[OnWave] = None,
        should_cancel: Optional[ShouldCancel] = None,
    ) -> List[BatchResult]:
        """Run every batch and return one result per batch, in batch order.

        ``on_wave(k, n, results)`` is called after wave ``k`` of ``n`` settles
        with the results gathered so far. ``should_cancel`` is checked between
        waves only; a true answer raises ``CancellationRequested``.
        """
        if [b.index for b in batches] != list(range(len(batches))):
            raise ValueError("batches must be indexed 0..n-1 in order")

        waves = make_waves(batches, self.concurrency)
        slots: List[Optional[BatchResult]] = [None] * len(batches)

        for number, wave in enumerate(waves, start=1):
            logger.info(
                "Dispatching wave %d of %d (batches %d-%d)",
                number,
                len(waves),
                wave[0].number,
                wave[-1].number,
            )
            settled = await asyncio.gather(*(self._run_batch(b, document_type) for b in wave))
            for result in settled:
                slots[result.batch_index] = result

            done = [r for r in slots if r is not None]
            if on_wave is not None:
                on_wave(number, len(waves), done)

            if number < len(waves):
                if should_cancel is not None and should_cancel():
                    raise CancellationRequested(
                        f"stopped after wave {number} of {len(waves)}"
                    )
                if self.wave_delay > 0:
                    await self._sleep(self.wave_delay)

        return [r for r in slots if r is not None]

    async def _run_batch(self, batch: Batch, document_type: str) -> BatchResult:
        attempt = 0
        while True:
            attempt += 1
            try:
                text = await asyncio.wait_for(
                    self.client.extract(batch, document_type=document_type),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                kind, message = BatchErrorKind.TIMEOUT, f"timed out after {self.timeout:g}s"
            except BatchError as exc:
                kind, message = BatchErrorKind(exc.kind), str(exc) or type(exc).__name__
            except Exception as exc:
                # Anything the client raises is a failure of this batch only.
                kind, message = BatchErrorKind.SERVICE_ERROR, f"{type(exc).__name__}: {exc}"
            else:
                if text and text.strip():
                    logger.debug("Batch %d extracted %d chars", batch.number, len(text))
                    return BatchResult.success(batch, text.strip(), attempts=attempt)
                kind, message = BatchErrorKind.EMPTY_RESULT, "no text extracted"

            if kind is BatchErrorKind.EMPTY_RESULT or attempt > self.retries:
                logger.warning(
                    "Batch %d (pages %d-%d) failed: %s: %s",
                    batch.number,
                    batch.first_page,
                    batch.last_page,
                    kind.value,
                    message,
                )
                return BatchResult.failure(batch, kind, message, attempts=attempt)

            delay = min(2 ** (attempt - 1), MAX_BACKOFF)
            logger.warning(
                "Batch %d failed (attempt %d/%d): %s; retrying in %gs",
                batch.number,
                attempt,
                self.retries + 1,
                message,
                delay,
            )
            await self._sleep(delay)
