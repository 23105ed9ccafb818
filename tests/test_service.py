import asyncio

import pytest
from pydantic import ValidationError

from scrapecache.errors import MissingApiKeyError
from scrapecache.observability.metrics import MetricsRegistry
from scrapecache.orchestrator.dedup import CacheEngine
from scrapecache.orchestrator.jobs import JobStatus
from scrapecache.service import RateLimitAdvisor, ScrapeService
from scrapecache.settings import Settings

URL = "https://example.com/docs"


@pytest.fixture()
def dispatched():
    return []


@pytest.fixture()
def service(store, blobs, settings, clock, dispatched, monkeypatch):
    monkeypatch.delenv("FIRECRAWL_API_KEY", raising=False)
    engine = CacheEngine(store, blobs, settings=settings, clock=clock)
    return ScrapeService(
        store=store,
        blobs=blobs,
        engine=engine,
        settings=settings,
        dispatch=dispatched.append,
        clock=clock,
    )


def test_scrape_requires_api_key(service, store):
    with pytest.raises(MissingApiKeyError) as excinfo:
        asyncio.run(service.scrape(URL))
    assert "API key not found" in str(excinfo.value)
    assert service.list()["scrapes"] == []


def test_scrape_dispatches_new_jobs_only(service, store, clock, dispatched, monkeypatch):
    monkeypatch.setenv("FIRECRAWL_API_KEY", "fc-env")

    async def _run():
        result = await service.scrape(URL, {"formats": ["markdown"], "ttlMs": 120_000})
        assert len(dispatched) == 1
        request = dispatched[0]
        assert request.job_id == result["jobId"]
        assert request.api_key == "fc-env"
        assert request.ttl_ms == 120_000

        store.mark_scraping(request.job_id, clock())
        store.complete(request.job_id, content={"markdown": "# Docs"}, ttl_ms=request.ttl_ms, now=clock())

        again = await service.scrape(URL, api_key="fc-explicit")
        assert again == result
        assert len(dispatched) == 1

    asyncio.run(_run())


def test_scrape_rejects_invalid_options(service):
    with pytest.raises(ValidationError):
        asyncio.run(service.scrape(URL, {"formats": ["pdf"]}, api_key="k"))
    with pytest.raises(ValidationError):
        asyncio.run(service.scrape(URL, {"extractionSchema": {"type": 5}}, api_key="k"))
    with pytest.raises(ValidationError):
        asyncio.run(service.scrape(URL, {"ttlMs": 0}, api_key="k"))
    with pytest.raises(ValidationError):
        asyncio.run(service.scrape(URL, {"bogus": True}, api_key="k"))


def test_status_and_content_views(service, store, blobs, make_job):
    key = asyncio.run(blobs.put(b"<html>big</html>", content_type="text/html"))
    job = make_job(URL, markdown="# Docs", html_file_id=key, metadata={"title": "Docs"})
    store.insert(job)

    status = service.get_status(job.id)
    assert status == {"status": "completed", "startedAt": job.started_at, "expiresAt": job.expires_at}

    content = service.get_content(job.id)
    assert content["markdown"] == "# Docs"
    assert content["htmlFileId"] == key
    assert content["htmlFileUrl"].startswith("file://")
    assert content["metadata"] == {"title": "Docs"}
    assert "html" not in content

    assert service.get_status("missing") is None
    assert service.get_content("missing") is None


def test_list_clamps_limit_and_pages(service, store, make_job):
    for index in range(3):
        store.insert(make_job(f"https://example.com/{index}"))

    page = service.list(limit=2)
    assert len(page["scrapes"]) == 2
    assert page["hasMore"] is True
    rest = service.list(limit=500, cursor=page["nextCursor"])
    assert len(rest["scrapes"]) == 1
    assert rest == {"scrapes": rest["scrapes"], "nextCursor": None, "hasMore": False}
    assert [job.status for job in service.list_by_status("completed")] == [JobStatus.COMPLETED] * 3


def test_recover_pending_redispatches_persisted_options(store, blobs, settings, clock, monkeypatch):
    monkeypatch.setenv("FIRECRAWL_API_KEY", "fc-env")
    engine = CacheEngine(store, blobs, settings=settings, clock=clock)
    first_run = []
    service = ScrapeService(store=store, blobs=blobs, engine=engine, settings=settings, dispatch=first_run.append, clock=clock)
    job_id = asyncio.run(service.scrape(URL, {"formats": ["html"], "mobile": True}))["jobId"]

    # A new process sees only what the store kept.
    recovered = []
    restarted = ScrapeService(store=store, blobs=blobs, engine=engine, settings=settings, dispatch=recovered.append, clock=clock)
    assert restarted.recover_pending() == 1
    request = recovered[0]
    assert request.job_id == job_id
    assert request.options.formats == ["html"]
    assert request.options.mobile is True
    assert request.ttl_ms == settings.default_ttl_ms


def test_rate_limit_advisor_warns_without_blocking(clock):
    metrics = MetricsRegistry()
    advisor = RateLimitAdvisor(2, metrics=metrics, clock=clock)
    assert advisor.observe()
    assert advisor.observe()
    assert not advisor.observe()
    assert metrics.get("rate_limit_advisories") == 1
    clock.advance(60_000)
    assert advisor.observe()


def test_settings_defaults_and_key_resolution(tmp_path, monkeypatch):
    settings = Settings.from_mapping({"app": {"data_root": str(tmp_path)}, "provider": {"api_key_env": "MY_KEY"}})
    assert settings.database_path == tmp_path / "scrapes.db"
    assert settings.default_ttl_ms == 30 * 24 * 60 * 60 * 1000
    assert settings.file_storage_threshold_bytes == 1024 * 1024
    monkeypatch.delenv("MY_KEY", raising=False)
    assert settings.resolve_api_key() is None
    monkeypatch.setenv("MY_KEY", "from-env")
    assert settings.resolve_api_key() == "from-env"
    assert settings.resolve_api_key("explicit") == "explicit"
