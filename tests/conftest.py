"""Shared fixtures: a temporary job registry, a fake OCR service, fake pages."""

from __future__ import annotations

import asyncio
from typing import Callable, Dict, Iterable, Optional

import pytest

from sheetscan import db
from sheetscan.dispatcher import Dispatcher
from sheetscan.errors import BatchServiceError, RasterizationFailed
from sheetscan.models import Batch, Page
from sheetscan.pipeline import ExtractionPipeline


def text_for(batch: Batch) -> str:
    return f"text of pages {batch.first_page}-{batch.last_page}"


class FakeOcrClient:
    """Answers with deterministic text and records how many calls overlap."""

    def __init__(
        self,
        fail: Iterable[int] = (),
        empty: Iterable[int] = (),
        delays: Optional[Dict[int, float]] = None,
        hook: Optional[Callable[[Batch], None]] = None,
    ) -> None:
        self.fail = set(fail)
        self.empty = set(empty)
        self.delays = delays or {}
        self.hook = hook
        self.calls = []
        self.completed = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def extract(self, batch: Batch, *, document_type: str = "question") -> str:
        self.calls.append(batch.number)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.hook is not None:
                self.hook(batch)
            await asyncio.sleep(self.delays.get(batch.number, 0))
            if batch.number in self.fail:
                raise BatchServiceError("service unavailable")
            if batch.number in self.empty:
                return "   "
            return text_for(batch)
        finally:
            self.in_flight -= 1
            self.completed.append(batch.number)


class FakeRasterizer:
    def __init__(self, page_count: int, error: Optional[str] = None) -> None:
        self.page_count = page_count
        self.error = error

    def rasterize(self, path, limit=None):
        if self.error:
            raise RasterizationFailed(self.error)
        count = self.page_count if limit is None else min(self.page_count, limit)
        return iter([Page(index=i, image=b"page-%d" % i) for i in range(count)])


def make_pages(count: int):
    return [Page(index=i, image=b"page-%d" % i) for i in range(count)]


@pytest.fixture
def conn(tmp_path):
    connection = db.init_db(tmp_path / "sheetscan.db")
    yield connection
    connection.close()


@pytest.fixture
def fake_client():
    return FakeOcrClient


@pytest.fixture
def pages():
    return make_pages


@pytest.fixture
def make_pipeline(conn):
    def _make(
        client,
        page_count: int = 25,
        batch_size: int = 10,
        concurrency: int = 3,
        timeout: float = 5.0,
        max_pages: Optional[int] = None,
        rasterizer=None,
        **kwargs,
    ) -> ExtractionPipeline:
        dispatcher = Dispatcher(client, concurrency=concurrency, timeout=timeout, wave_delay=0)
        return ExtractionPipeline(
            conn,
            rasterizer or FakeRasterizer(page_count),
            dispatcher,
            batch_size=batch_size,
            max_pages=max_pages,
            **kwargs,
        )

    return _make


@pytest.fixture
def failing_rasterizer():
    return FakeRasterizer(0, error="file is not a PDF")
