"""Deduplication and cache lookup for scrape requests."""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from scrapecache.errors import JobActiveError, ScrapeInProgressError, UrlValidationError
from scrapecache.normalize.url import canonical_key
from scrapecache.observability.metrics import MetricsRegistry
from scrapecache.orchestrator.jobs import JobStatus
from scrapecache.settings import Settings
from scrapecache.storage.blobs import BlobStore, delete_blobs
from scrapecache.storage.jobs import JobStore, now_ms
from scrapecache.storage.models import DEFAULT_FORMATS, ScrapeJob, ScrapeOptions

LOGGER = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ScrapeDecision:
    """Outcome of a scrape request: a reused cached job or a freshly created one."""

    job: ScrapeJob
    created: bool

    @property
    def job_id(self) -> str:
        return self.job.id


class CacheEngine:
    """Decides whether a request reuses a cached job or creates new work.

    The whole decision runs in one store transaction, so two concurrent
    requests for the same URL cannot both observe "no active job".
    """

    def __init__(
        self,
        store: JobStore,
        blobs: BlobStore,
        *,
        settings: Settings,
        metrics: Optional[MetricsRegistry] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._blobs = blobs
        self._settings = settings
        self._metrics = metrics or MetricsRegistry()
        self._clock = clock

    def key_for(self, url: str) -> Tuple[str, str]:
        """Validate and canonicalise a URL into `(normalized_url, url_hash)`."""
        return canonical_key(url, max_length=self._settings.max_url_length)

    def _try_key(self, url: str) -> Optional[Tuple[str, str]]:
        try:
            return self.key_for(url)
        except UrlValidationError:
            return None

    async def submit(self, url: str, options: ScrapeOptions) -> ScrapeDecision:
        """Reuse a cached job, reject a duplicate, or insert a new pending job."""
        normalized_url, url_hash = self.key_for(url)
        formats = list(options.formats)
        now = self._clock()
        evicted: List[str] = []

        with self._store.transaction():
            recent = self._store.recent_by_hash(url_hash, self._settings.lookback)

            if options.force:
                kept: List[ScrapeJob] = []
                for job in recent:
                    if job.status == JobStatus.COMPLETED:
                        if self._store.delete(job.id, statuses={JobStatus.COMPLETED}):
                            evicted.extend(job.file_ids())
                            self._metrics.incr("forced_evictions")
                        continue
                    kept.append(job)
                recent = kept

            for job in recent:
                if job.status.is_active:
                    self._metrics.incr("dedup_conflicts")
                    LOGGER.info("dedup_conflict", url_hash=url_hash, job_id=job.id)
                    raise ScrapeInProgressError(job.id)

            cached = None if options.force else self._first_hit(recent, formats, now)
            if cached is None:
                ttl_ms = options.ttl_ms or self._settings.default_ttl_ms
                job = ScrapeJob(
                    id=uuid.uuid4().hex,
                    url=url,
                    normalized_url=normalized_url,
                    url_hash=url_hash,
                    status=JobStatus.PENDING,
                    formats=formats,
                    extraction_schema=options.extraction_schema,
                    started_at=now,
                    # Placeholder until completion sets the real expiry.
                    expires_at=now + ttl_ms,
                    ttl_ms=ttl_ms,
                    request_options=options.model_dump(mode="json", exclude={"force"}),
                )
                self._store.insert(job)

        if evicted:
            await delete_blobs(self._blobs, evicted, metrics=self._metrics)

        if cached is not None:
            self._metrics.incr("cache_hits")
            LOGGER.info("cache_hit", url_hash=url_hash, job_id=cached.id)
            return ScrapeDecision(job=cached, created=False)

        self._metrics.incr("jobs_created")
        LOGGER.info("job_created", url_hash=url_hash, job_id=job.id, formats=formats)
        return ScrapeDecision(job=job, created=True)

    @staticmethod
    def _first_hit(jobs: Sequence[ScrapeJob], formats: List[str], now: int) -> Optional[ScrapeJob]:
        for job in jobs:
            if job.is_cache_hit(formats, now):
                return job
        return None

    def get_cached(self, url: str, formats: Optional[Sequence[str]] = None) -> Optional[ScrapeJob]:
        """Read-only cache probe; invalid URLs and misses both yield None."""
        key = self._try_key(url)
        if key is None:
            return None
        requested = list(formats or DEFAULT_FORMATS)
        recent = self._store.recent_by_hash(key[1], self._settings.lookback)
        return self._first_hit(recent, requested, self._clock())

    def get_by_url(self, url: str) -> Optional[ScrapeJob]:
        """Most recent job for the URL regardless of status."""
        key = self._try_key(url)
        if key is None:
            return None
        return self._store.latest_by_hash(key[1])

    def invalidate(self, url: str) -> Dict[str, object]:
        key = self._try_key(url)
        if key is None:
            return {"success": False, "invalidatedCount": 0}
        count = self._store.invalidate(key[1], self._clock())
        LOGGER.info("cache_invalidated", url_hash=key[1], count=count)
        return {"success": True, "invalidatedCount": count}

    async def delete(self, job_id: str) -> Dict[str, object]:
        """Delete a terminal job and its blobs; active jobs are refused."""
        job = self._store.get(job_id)
        if job is None:
            return {"success": False, "deletedFileCount": 0}
        if job.status.is_active:
            raise JobActiveError(job.id, str(job.status))

        deleted_files = await delete_blobs(self._blobs, job.file_ids(), metrics=self._metrics)
        removed = self._store.delete(job.id)
        LOGGER.info("job_deleted", job_id=job.id, removed=removed, deleted_files=deleted_files)
        return {"success": removed, "deletedFileCount": deleted_files}
