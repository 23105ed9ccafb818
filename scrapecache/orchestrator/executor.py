"""Background execution of a single scrape job."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog

from scrapecache.errors import ProviderError
from scrapecache.fetch.provider import FirecrawlClient
from scrapecache.observability.metrics import MetricsRegistry
from scrapecache.observability.tracing import clear_context, set_context
from scrapecache.orchestrator.jobs import JobStatus
from scrapecache.storage.blobs import BlobStore, delete_blobs
from scrapecache.storage.jobs import JobStore, now_ms
from scrapecache.storage.models import ScrapeMetadata, ScrapeOptions
from scrapecache.storage.offload import OffloadPolicy

LOGGER = structlog.get_logger(__name__)

# Provider text fields and the record field each one lands in.
_TEXT_FIELDS = {
    "markdown": "markdown",
    "html": "html",
    "rawHtml": "raw_html",
    "summary": "summary",
}

_METADATA_KEYS = {
    "title": str,
    "description": str,
    "language": str,
    "sourceURL": str,
    "statusCode": int,
    "ogImage": str,
    "ogTitle": str,
    "ogDescription": str,
    "ogSiteName": str,
    "contentType": str,
    "cacheControl": str,
}


@dataclass(frozen=True)
class ExecutionRequest:
    """Everything the executor needs to run one job. The credential is never persisted."""

    job_id: str
    url: str
    api_key: str
    options: ScrapeOptions
    ttl_ms: int


def image_urls(images: List[Any]) -> List[str]:
    """Provider images may be plain URLs or objects carrying a `url`."""
    urls: List[str] = []
    for image in images:
        if isinstance(image, str):
            urls.append(image)
        elif isinstance(image, Mapping) and image.get("url"):
            urls.append(str(image["url"]))
    return urls


def extract_metadata(raw: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    """Keep only the known, truthy metadata fields."""
    picked = {
        key: raw[key]
        for key, kind in _METADATA_KEYS.items()
        if raw.get(key) and isinstance(raw[key], kind) and not isinstance(raw[key], bool)
    }
    if not picked:
        return None
    return ScrapeMetadata.model_validate(picked).model_dump(mode="json", exclude_none=True)


class JobExecutor:
    """Moves a job through scraping to its terminal state.

    Exactly one provider call is made per job. Every failure, expected or
    not, ends up on the job record; nothing is raised back to the caller.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        blobs: BlobStore,
        provider: FirecrawlClient,
        offload: OffloadPolicy,
        metrics: Optional[MetricsRegistry] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._blobs = blobs
        self._provider = provider
        self._offload = offload
        self._metrics = metrics or MetricsRegistry()
        self._clock = clock

    async def run(self, request: ExecutionRequest) -> Optional[JobStatus]:
        """Execute the job; returns the terminal status this run produced, if any."""
        set_context(job_id=request.job_id)
        try:
            if not self._store.mark_scraping(request.job_id, self._clock()):
                LOGGER.warning("job_not_pending", job_id=request.job_id)
                return None

            content: Dict[str, Any] = {}
            try:
                data = await self._provider.scrape(request.url, request.options, api_key=request.api_key)
                await self._collect(data, request.options, content)
            except ProviderError as exc:
                self._metrics.incr("provider_errors")
                await self._discard_blobs(content)
                return self._fail(request.job_id, exc.message, exc.code)
            except Exception as exc:
                LOGGER.exception("job_execution_error", job_id=request.job_id)
                await self._discard_blobs(content)
                return self._fail(request.job_id, str(exc) or "Unknown error occurred", None)

            if not self._store.complete(request.job_id, content=content, ttl_ms=request.ttl_ms, now=self._clock()):
                # Failed by the stuck-job sweep (or deleted) while we were working.
                self._metrics.incr("late_transitions")
                LOGGER.warning("late_completion_ignored", job_id=request.job_id)
                await self._discard_blobs(content)
                return None
            self._metrics.incr("jobs_completed")
            LOGGER.info("job_completed", job_id=request.job_id, fields=sorted(content))
            return JobStatus.COMPLETED
        finally:
            clear_context()

    def _fail(self, job_id: str, message: str, code: Any) -> Optional[JobStatus]:
        if not self._store.fail(job_id, error=message, error_code=code):
            self._metrics.incr("late_transitions")
            LOGGER.warning("late_failure_ignored", job_id=job_id, error=message)
            return None
        self._metrics.incr("jobs_failed")
        LOGGER.info("job_failed", job_id=job_id, error=message, error_code=code)
        return JobStatus.FAILED

    async def _collect(self, data: Mapping[str, Any], options: ScrapeOptions, content: Dict[str, Any]) -> None:
        for source, field in _TEXT_FIELDS.items():
            if data.get(source):
                content.update(await self._offload.place(field, data[source]))

        if data.get("links"):
            content.update(await self._offload.place("links", list(data["links"])))

        if data.get("images"):
            content.update(await self._offload.place("images", image_urls(data["images"])))

        if data.get("screenshot"):
            content["screenshot_url"] = data["screenshot"]
            if options.store_screenshot:
                file_id = await self._persist_screenshot(data["screenshot"])
                if file_id:
                    content["screenshot_file_id"] = file_id

        if data.get("extract"):
            content.update(await self._offload.place("extracted_json", data["extract"]))

        if isinstance(data.get("metadata"), Mapping):
            metadata = extract_metadata(data["metadata"])
            if metadata:
                content["metadata"] = metadata

    async def _persist_screenshot(self, url: str) -> Optional[str]:
        """Copy the provider's screenshot into the blob store; failures leave only the URL."""
        try:
            downloaded = await self._provider.download(url)
            if downloaded is None:
                return None
            payload, content_type = downloaded
            file_id = await self._blobs.put(payload, content_type=content_type)
        except Exception as exc:
            LOGGER.warning("screenshot_store_failed", url=url, error=str(exc))
            return None
        self._metrics.incr("screenshots_stored")
        return file_id

    async def _discard_blobs(self, content: Mapping[str, Any]) -> None:
        keys = [value for key, value in content.items() if key.endswith("_file_id") and value]
        if keys:
            await delete_blobs(self._blobs, keys, metrics=self._metrics)
