import asyncio

import pytest
from pydantic import ValidationError

from scrapecache.errors import BlobNotFoundError
from scrapecache.observability.metrics import MetricsRegistry
from scrapecache.storage.blobs import delete_blobs
from scrapecache.storage.models import ScrapeOptions
from scrapecache.storage.offload import OffloadPolicy


def test_options_formats_default_and_dedupe():
    assert ScrapeOptions().formats == ["markdown"]
    assert ScrapeOptions(formats=[]).formats == ["markdown"]
    assert ScrapeOptions(formats=["html", "markdown", "html"]).formats == ["html", "markdown"]
    with pytest.raises(ValidationError):
        ScrapeOptions(formats=["pdf"])
    with pytest.raises(ValidationError):
        ScrapeOptions(proxy="residential")


def test_job_cannot_hold_field_inline_and_as_blob(make_job):
    with pytest.raises(ValidationError):
        make_job(markdown="# inline", markdown_file_id="abc.md")


def test_job_public_shape_hides_execution_options(make_job):
    job = make_job(ttl_ms=5, request_options={"formats": ["markdown"]}, markdown="# A")
    api = job.to_api()
    assert "ttlMs" not in api and "requestOptions" not in api
    assert api["normalizedUrl"] == "https://example.com/page"
    assert api["markdown"] == "# A"
    assert job.file_ids() == []


def test_offload_threshold_is_strict(blobs):
    async def _run():
        metrics = MetricsRegistry()
        policy = OffloadPolicy(blobs, threshold_bytes=5, metrics=metrics)
        assert await policy.place("markdown", "abcd") == {"markdown": "abcd"}
        placed = await policy.place("markdown", "abcde")
        assert list(placed) == ["markdown_file_id"]
        assert placed["markdown_file_id"].endswith(".md")
        assert await blobs.get(placed["markdown_file_id"]) == b"abcde"

        # Byte length, not character count, decides.
        assert list(await policy.place("summary", "ééé")) == ["summary_file_id"]
        assert await policy.place("links", []) == {"links": []}
        assert metrics.get("blobs_offloaded") == 2

        with pytest.raises(ValueError):
            await policy.place("status", "x")

    asyncio.run(_run())


def test_blob_store_roundtrip_and_missing_keys(blobs):
    async def _run():
        key = await blobs.put(b"{}", content_type="application/json; charset=utf-8")
        assert key.endswith(".json")
        assert blobs.exists(key)
        assert blobs.url(key).startswith("file://")
        await blobs.delete(key)
        assert blobs.url(key) is None
        with pytest.raises(BlobNotFoundError):
            await blobs.delete(key)
        with pytest.raises(BlobNotFoundError):
            await blobs.get("../escape")

        metrics = MetricsRegistry()
        other = await blobs.put(b"x", content_type="text/plain")
        assert await delete_blobs(blobs, [other, key], metrics=metrics) == 1
        assert metrics.get("blob_delete_failures") == 1
        assert metrics.get("blobs_deleted") == 1

    asyncio.run(_run())
