"""HTTP client for the remote scraping provider (Firecrawl-compatible API)."""
from __future__ import annotations

import time
from typing import Any, Dict, Optional, Tuple

import httpx
import orjson
import structlog

from scrapecache.errors import ProviderError
from scrapecache.observability.metrics import MetricsRegistry
from scrapecache.observability.tracing import log_provider_result, span
from scrapecache.storage.models import ScrapeOptions

LOGGER = structlog.get_logger(__name__)


def build_request_body(url: str, options: ScrapeOptions) -> Dict[str, Any]:
    """Translate scrape options into the provider's request body."""
    body: Dict[str, Any] = {
        "url": url,
        "formats": list(options.formats),
        "onlyMainContent": True if options.only_main_content is None else options.only_main_content,
    }
    if options.extraction_schema:
        body["extract"] = {"schema": options.extraction_schema}
    if options.include_tags:
        body["includeTags"] = list(options.include_tags)
    if options.exclude_tags:
        body["excludeTags"] = list(options.exclude_tags)
    if options.wait_for:
        body["waitFor"] = options.wait_for
    if options.mobile is not None:
        body["mobile"] = options.mobile
    body["proxy"] = options.proxy or "basic"
    return body


def _error_from_response(response: httpx.Response) -> ProviderError:
    body = response.text
    message = f"Firecrawl API error: {response.status_code}"
    code: Any = response.status_code
    try:
        payload = orjson.loads(body)
    except orjson.JSONDecodeError:
        if body:
            message = body
    else:
        if isinstance(payload, dict):
            if payload.get("error"):
                message = str(payload["error"])
            if payload.get("code"):
                code = payload["code"]
        elif body:
            message = body
    return ProviderError(message, code)


class FirecrawlClient:
    """Performs a single scrape call per job and classifies the response."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        api_base: str,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._client = client
        self._api_base = api_base.rstrip("/")
        self._metrics = metrics or MetricsRegistry()

    async def scrape(self, url: str, options: ScrapeOptions, *, api_key: str) -> Dict[str, Any]:
        """Return the provider's `data` object or raise `ProviderError`."""
        body = build_request_body(url, options)
        with span(name="provider_scrape", url=url):
            start = time.perf_counter()
            response = await self._client.post(
                f"{self._api_base}/scrape",
                content=orjson.dumps(body),
                headers={
                    "Authorization": f"Bearer {api_key}",
                    "Content-Type": "application/json",
                },
            )
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        log_provider_result(
            url=url,
            status=response.status_code,
            bytes_read=len(response.content or b""),
            elapsed_ms=elapsed_ms,
        )
        self._metrics.incr(f"provider_{response.status_code // 100}xx")

        if not response.is_success:
            raise _error_from_response(response)

        payload = orjson.loads(response.content)
        if not payload.get("success"):
            raise ProviderError(payload.get("error") or "Firecrawl scrape failed", payload.get("code"))
        return payload.get("data") or {}

    async def download(self, url: str) -> Optional[Tuple[bytes, str]]:
        """Fetch a provider-hosted asset, returning `(bytes, content_type)` or None on a non-2xx reply."""
        response = await self._client.get(url)
        if not response.is_success:
            LOGGER.warning("asset_download_rejected", url=url, status=response.status_code)
            return None
        content_type = response.headers.get("Content-Type", "application/octet-stream")
        return response.content, content_type
