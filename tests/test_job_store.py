import pytest

from scrapecache.errors import InvalidCursorError, ScrapeInProgressError
from scrapecache.orchestrator.jobs import JobStatus, allowed_sources, can_transition


def test_transition_table():
    assert can_transition("pending", "scraping")
    assert can_transition(JobStatus.SCRAPING, JobStatus.FAILED)
    assert not can_transition("scraping", "pending")
    assert not can_transition("completed", "failed")
    assert not can_transition("failed", "completed")
    assert allowed_sources("completed") == {JobStatus.PENDING, JobStatus.SCRAPING}
    assert allowed_sources("scraping") == {JobStatus.PENDING}


def test_insert_and_roundtrip(store, make_job):
    job = make_job(
        links=["https://example.com/a"],
        metadata={"title": "Hello", "sourceURL": "https://example.com/page", "statusCode": 200},
        error_code=None,
        ttl_ms=1000,
        request_options={"formats": ["markdown"]},
    )
    store.insert(job)
    loaded = store.get(job.id)
    assert loaded is not None
    assert loaded.links == ["https://example.com/a"]
    assert loaded.metadata.title == "Hello"
    assert loaded.metadata.source_url == "https://example.com/page"
    assert loaded.ttl_ms == 1000
    assert loaded.request_options == {"formats": ["markdown"]}
    assert store.get("missing") is None


def test_one_active_job_per_hash(store, make_job):
    first = make_job("https://example.com/x", status=JobStatus.PENDING)
    store.insert(first)
    with pytest.raises(ScrapeInProgressError) as excinfo:
        store.insert(make_job("https://EXAMPLE.com/x/", status=JobStatus.SCRAPING))
    assert excinfo.value.job_id == first.id
    assert f"Job ID: {first.id}" in str(excinfo.value)

    # Terminal jobs for the same hash are unrestricted.
    store.insert(make_job("https://example.com/x", status=JobStatus.COMPLETED))
    store.insert(make_job("https://example.com/x", status=JobStatus.FAILED))
    assert store.active_for_hash(first.url_hash).id == first.id


def test_guarded_transitions(store, make_job, clock):
    job = make_job(status=JobStatus.PENDING)
    store.insert(job)

    assert store.mark_scraping(job.id, clock())
    assert not store.mark_scraping(job.id, clock())

    clock.advance(500)
    assert store.complete(job.id, content={"markdown": "# Hi"}, ttl_ms=1000, now=clock())
    done = store.get(job.id)
    assert done.status == JobStatus.COMPLETED
    assert done.scraped_at == clock()
    assert done.expires_at == clock() + 1000
    assert done.markdown == "# Hi"

    # Terminal states absorb late transitions.
    assert not store.fail(job.id, error="late")
    assert not store.complete(job.id, content={"markdown": "other"}, ttl_ms=1000, now=clock())
    assert store.get(job.id).markdown == "# Hi"
    assert store.get(job.id).error is None


def test_fail_records_error_code(store, make_job):
    job = make_job(status=JobStatus.SCRAPING)
    store.insert(job)
    assert store.fail(job.id, error="Payment required", error_code="INSUFFICIENT_CREDITS")
    failed = store.get(job.id)
    assert failed.status == JobStatus.FAILED
    assert failed.error_code == "INSUFFICIENT_CREDITS"
    assert not store.fail("missing", error="x")


def test_complete_rejects_unknown_fields(store, make_job):
    job = make_job(status=JobStatus.SCRAPING)
    store.insert(job)
    with pytest.raises(ValueError):
        store.complete(job.id, content={"status": "completed"}, ttl_ms=1, now=1)


def test_delete_refuses_active_jobs(store, make_job):
    pending = make_job("https://example.com/p", status=JobStatus.PENDING)
    done = make_job("https://example.com/d", status=JobStatus.COMPLETED)
    store.insert(pending)
    store.insert(done)
    assert not store.delete(pending.id)
    assert store.delete(done.id)
    assert store.get(done.id) is None
    assert store.get(pending.id) is not None


def test_list_page_is_newest_first_with_cursor(store, make_job):
    ids = []
    for index in range(3):
        job = make_job(f"https://example.com/{index}")
        store.insert(job)
        ids.append(job.id)
    store.insert(make_job("https://example.com/failed", status=JobStatus.FAILED))

    first = store.list_page(status="completed", limit=2, cursor=None)
    assert [job.id for job in first.scrapes] == [ids[2], ids[1]]
    assert first.has_more
    assert first.next_cursor

    second = store.list_page(status=JobStatus.COMPLETED, limit=2, cursor=first.next_cursor)
    assert [job.id for job in second.scrapes] == [ids[0]]
    assert not second.has_more
    assert second.next_cursor is None

    everything = store.list_page(status=None, limit=10, cursor=None)
    assert len(everything.scrapes) == 4

    with pytest.raises(InvalidCursorError):
        store.list_page(status=None, limit=10, cursor="not-a-cursor")


def test_invalidate_and_counts(store, make_job, clock):
    job = make_job()
    store.insert(job)
    assert store.invalidate(job.url_hash, clock()) == 1
    assert store.get(job.id).expires_at == clock()
    assert store.invalidate(job.url_hash, clock()) == 0
    assert store.count_by_status() == {"pending": 0, "scraping": 0, "completed": 1, "failed": 0}
