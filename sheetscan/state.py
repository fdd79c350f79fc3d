"""Lifecycle rules for extraction jobs.

Within one attempt a job only moves forward::

    pending -> processing -> completed
       |            |
       +------------+-----> failed

A terminal job changes again only through a new attempt, which starts over at
``pending`` with no text carried forward (see ``db.request_extraction``).
"""

from __future__ import annotations

from typing import Dict, FrozenSet

from .errors import InvalidTransition
from .models import JobStatus

TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

# Statuses a caller may start a fresh attempt from.
RETRYABLE = frozenset({JobStatus.FAILED})
REEXTRACTABLE = frozenset({JobStatus.FAILED, JobStatus.COMPLETED})


def can_transition(current: JobStatus, new: JobStatus) -> bool:
    return new in TRANSITIONS[JobStatus(current)]


def check_transition(current: JobStatus, new: JobStatus) -> None:
    current = JobStatus(current)
    new = JobStatus(new)
    if not can_transition(current, new):
        raise InvalidTransition(f"Cannot move job from {current.value} to {new.value}")


def sources_for(new: JobStatus) -> FrozenSet[JobStatus]:
    """Statuses from which ``new`` may be entered within an attempt."""
    return frozenset(s for s, targets in TRANSITIONS.items() if new in targets)
