"""Scrape job statuses and their lifecycle transitions."""
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet


class JobStatus(str, Enum):
    """Lifecycle states of a scrape job."""

    PENDING = "pending"
    SCRAPING = "scraping"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


ACTIVE_STATUSES: FrozenSet[JobStatus] = frozenset({JobStatus.PENDING, JobStatus.SCRAPING})
TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# Terminal states have no outgoing edges; a second completion or failure is a no-op.
TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.SCRAPING, JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.SCRAPING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def can_transition(current: JobStatus | str, target: JobStatus | str) -> bool:
    """Return True when moving from `current` to `target` is allowed."""
    return JobStatus(target) in TRANSITIONS[JobStatus(current)]


def allowed_sources(target: JobStatus | str) -> FrozenSet[JobStatus]:
    """Statuses from which `target` may be entered."""
    target = JobStatus(target)
    return frozenset(status for status, targets in TRANSITIONS.items() if target in targets)
