"""Split pages into batches and batches into waves."""

from __future__ import annotations

from typing import Iterable, List, Sequence

from .models import Batch, Page


def make_batches(pages: Iterable[Page], batch_size: int) -> List[Batch]:
    """Contiguous, order-preserving slices of at most ``batch_size`` pages."""
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")

    batches: List[Batch] = []
    current: List[Page] = []
    for page in pages:
        current.append(page)
        if len(current) == batch_size:
            batches.append(Batch(index=len(batches), pages=tuple(current)))
            current = []
    if current:
        batches.append(Batch(index=len(batches), pages=tuple(current)))
    return batches


def make_waves(batches: Sequence[Batch], concurrency: int) -> List[List[Batch]]:
    """Group batches into waves of at most ``concurrency`` batches."""
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")
    return [list(batches[i : i + concurrency]) for i in range(0, len(batches), concurrency)]
