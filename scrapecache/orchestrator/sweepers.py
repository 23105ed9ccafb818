"""Periodic maintenance sweeps over the job store."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from scrapecache.observability.metrics import MetricsRegistry
from scrapecache.orchestrator.jobs import JobStatus
from scrapecache.storage.blobs import BlobStore, delete_blobs
from scrapecache.storage.jobs import JobStore, now_ms

LOGGER = structlog.get_logger(__name__)

STUCK_JOB_TIMEOUT_MS = 5 * 60 * 1000
CLEANUP_BATCH_SIZE = 100


@dataclass(frozen=True)
class CleanupResult:
    deleted_count: int
    deleted_file_count: int

    def to_api(self) -> dict:
        return {"deletedCount": self.deleted_count, "deletedFileCount": self.deleted_file_count}


def timeout_message(timeout_ms: int) -> str:
    minutes = timeout_ms / 60000
    if minutes.is_integer():
        unit = "minute" if minutes == 1 else "minutes"
        return f"Scrape timed out after {int(minutes)} {unit}"
    return f"Scrape timed out after {timeout_ms // 1000} seconds"


async def cleanup_expired(
    store: JobStore,
    blobs: BlobStore,
    *,
    batch_size: int = CLEANUP_BATCH_SIZE,
    metrics: Optional[MetricsRegistry] = None,
    clock: Callable[[], int] = now_ms,
) -> CleanupResult:
    """Delete one batch of expired completed/failed jobs and their blobs.

    Pending and scraping jobs are never touched, whatever their expiry.
    """
    metrics = metrics or MetricsRegistry()
    now = clock()
    deleted_count = 0
    deleted_file_count = 0
    for job in store.expired_terminal(now, batch_size):
        if not job.status.is_terminal:
            continue
        deleted_file_count += await delete_blobs(blobs, job.file_ids(), metrics=metrics)
        if store.delete(job.id):
            deleted_count += 1
    metrics.incr("expired_deleted", deleted_count)
    LOGGER.info("sweep_expired", deleted=deleted_count, deleted_files=deleted_file_count)
    return CleanupResult(deleted_count=deleted_count, deleted_file_count=deleted_file_count)


def mark_stuck_jobs_failed(
    store: JobStore,
    *,
    timeout_ms: int = STUCK_JOB_TIMEOUT_MS,
    metrics: Optional[MetricsRegistry] = None,
    clock: Callable[[], int] = now_ms,
) -> int:
    """Fail jobs whose scraping began more than `timeout_ms` ago."""
    metrics = metrics or MetricsRegistry()
    cutoff = clock() - timeout_ms
    message = timeout_message(timeout_ms)
    marked = 0
    for job in store.stuck_scraping(cutoff):
        if job.status != JobStatus.SCRAPING:
            continue
        if store.fail(job.id, error=message):
            marked += 1
            LOGGER.warning("job_timed_out", job_id=job.id, scraping_at=job.scraping_at)
    metrics.incr("stuck_failed", marked)
    LOGGER.info("sweep_stuck", marked_failed=marked)
    return marked
