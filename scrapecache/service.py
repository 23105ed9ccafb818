"""Caller-facing surface of the scrape cache."""
from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import structlog

from scrapecache.errors import MissingApiKeyError
from scrapecache.observability.metrics import MetricsRegistry
from scrapecache.orchestrator.dedup import CacheEngine
from scrapecache.orchestrator.executor import ExecutionRequest
from scrapecache.orchestrator.jobs import JobStatus
from scrapecache.orchestrator.sweepers import CleanupResult, cleanup_expired, mark_stuck_jobs_failed
from scrapecache.settings import Settings
from scrapecache.storage.blobs import BlobStore
from scrapecache.storage.jobs import JobStore, now_ms
from scrapecache.storage.models import BLOB_FIELDS, ScrapeJob, ScrapeOptions

LOGGER = structlog.get_logger(__name__)

Dispatch = Callable[[ExecutionRequest], None]

_FILE_URL_KEYS = {
    "markdown_file_id": "markdownFileUrl",
    "html_file_id": "htmlFileUrl",
    "raw_html_file_id": "rawHtmlFileUrl",
    "summary_file_id": "summaryFileUrl",
    "links_file_id": "linksFileUrl",
    "images_file_id": "imagesFileUrl",
    "extracted_json_file_id": "extractedJsonFileUrl",
    "screenshot_file_id": "screenshotFileUrl",
}


class RateLimitAdvisor:
    """Counts requests per wall-clock minute and warns past the budget. Never blocks."""

    def __init__(self, requests_per_minute: int, *, metrics: MetricsRegistry, clock: Callable[[], int]) -> None:
        self._limit = requests_per_minute
        self._metrics = metrics
        self._clock = clock
        self._lock = threading.Lock()
        self._window = -1
        self._count = 0

    def observe(self) -> bool:
        """Record one request; returns False when the minute's budget is exceeded."""
        window = self._clock() // 60000
        with self._lock:
            if window != self._window:
                self._window = window
                self._count = 0
            self._count += 1
            count = self._count
        if self._limit > 0 and count > self._limit:
            self._metrics.incr("rate_limit_advisories")
            LOGGER.warning("rate_limit_advisory", requests=count, limit=self._limit)
            return False
        return True


class ScrapeService:
    """Submits scrapes, answers polls and exposes cache maintenance."""

    def __init__(
        self,
        *,
        store: JobStore,
        blobs: BlobStore,
        engine: CacheEngine,
        settings: Settings,
        dispatch: Dispatch,
        metrics: Optional[MetricsRegistry] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._blobs = blobs
        self._engine = engine
        self._settings = settings
        self._dispatch = dispatch
        self._metrics = metrics or MetricsRegistry()
        self._clock = clock
        self._advisor = RateLimitAdvisor(settings.requests_per_minute, metrics=self._metrics, clock=clock)

    @property
    def metrics(self) -> MetricsRegistry:
        return self._metrics

    def _require_api_key(self, api_key: Optional[str]) -> str:
        resolved = self._settings.resolve_api_key(api_key)
        if not resolved:
            raise MissingApiKeyError(
                f"API key not found. Set {self._settings.api_key_env} or pass an API key explicitly."
            )
        return resolved

    async def scrape(
        self,
        url: str,
        options: Union[ScrapeOptions, Mapping[str, Any], None] = None,
        *,
        api_key: Optional[str] = None,
    ) -> Dict[str, str]:
        """Return `{jobId}` for a cached or newly scheduled job.

        Raises `UrlValidationError`, `ScrapeInProgressError`, `MissingApiKeyError`
        or `pydantic.ValidationError` synchronously; provider failures surface
        later on the job record.
        """
        if not isinstance(options, ScrapeOptions):
            options = ScrapeOptions.model_validate(dict(options or {}))
        key = self._require_api_key(api_key)
        self._advisor.observe()

        decision = await self._engine.submit(url, options)
        if decision.created:
            self._dispatch(
                ExecutionRequest(
                    job_id=decision.job_id,
                    url=url,
                    api_key=key,
                    options=options,
                    ttl_ms=decision.job.ttl_ms or self._settings.default_ttl_ms,
                )
            )
        return {"jobId": decision.job_id}

    def get(self, job_id: str) -> Optional[ScrapeJob]:
        return self._store.get(job_id)

    def get_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = self._store.get(job_id)
        return job.status_view() if job else None

    def get_content(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Full record with a `<field>FileUrl` link for every offloaded field."""
        job = self._store.get(job_id)
        if job is None:
            return None
        return self.with_file_urls(job)

    def with_file_urls(self, job: ScrapeJob) -> Dict[str, Any]:
        payload = job.to_api()
        for field in BLOB_FIELDS:
            key = getattr(job, field)
            if not key:
                continue
            link = self._blobs.url(key)
            if link:
                payload[_FILE_URL_KEYS[field]] = link
        return payload

    def get_cached(self, url: str, formats: Optional[List[str]] = None) -> Optional[ScrapeJob]:
        return self._engine.get_cached(url, formats)

    def get_by_url(self, url: str) -> Optional[ScrapeJob]:
        return self._engine.get_by_url(url)

    def list(
        self,
        status: Optional[Union[JobStatus, str]] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Newest-first page of jobs; `limit` is clamped to the configured maximum."""
        limit = limit or self._settings.default_list_limit
        limit = max(1, min(limit, self._settings.max_list_limit))
        return self._store.list_page(status=status, limit=limit, cursor=cursor).to_api()

    def list_by_status(self, status: Union[JobStatus, str], limit: Optional[int] = None) -> List[ScrapeJob]:
        limit = min(limit or self._settings.default_list_limit, self._settings.max_list_limit)
        return self._store.list_by_status(status, limit)

    def invalidate(self, url: str) -> Dict[str, Any]:
        return self._engine.invalidate(url)

    async def delete(self, job_id: str) -> Dict[str, Any]:
        return await self._engine.delete(job_id)

    async def cleanup_expired(self) -> CleanupResult:
        return await cleanup_expired(
            self._store,
            self._blobs,
            batch_size=self._settings.cleanup_batch_size,
            metrics=self._metrics,
            clock=self._clock,
        )

    async def mark_stuck_jobs_failed(self) -> int:
        return mark_stuck_jobs_failed(
            self._store,
            timeout_ms=self._settings.stuck_job_timeout_ms,
            metrics=self._metrics,
            clock=self._clock,
        )

    def recover_pending(self, api_key: Optional[str] = None) -> int:
        """Re-dispatch every pending job from its persisted execution options."""
        key = self._require_api_key(api_key)
        recovered = 0
        for job in self._store.list_by_status(JobStatus.PENDING):
            options = ScrapeOptions.model_validate(job.request_options or {"formats": job.formats})
            self._dispatch(
                ExecutionRequest(
                    job_id=job.id,
                    url=job.url,
                    api_key=key,
                    options=options,
                    ttl_ms=job.ttl_ms or self._settings.default_ttl_ms,
                )
            )
            recovered += 1
        if recovered:
            LOGGER.info("pending_jobs_recovered", count=recovered)
        return recovered
