import asyncio

import httpx

from scrapecache.orchestrator.dedup import CacheEngine
from scrapecache.orchestrator.executor import ExecutionRequest
from scrapecache.orchestrator.jobs import JobStatus
from scrapecache.orchestrator.queue import JobQueue
from scrapecache.orchestrator.schedule_loop import run_trigger
from scrapecache.runtime import open_runtime
from scrapecache.storage.jobs import JobStore
from scrapecache.storage.models import ScrapeOptions

LATE_URL = "https://example.com/late"


async def _no_sleep(seconds):
    return None


def test_running_worker_picks_up_jobs_inserted_later(settings, monkeypatch):
    monkeypatch.setenv("FIRECRAWL_API_KEY", "fc-test")
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(200, json={"success": True, "data": {"markdown": "# Late"}})

    async def _run():
        async with open_runtime(settings, transport=httpx.MockTransport(handler)) as runtime:
            assert runtime.service.recover_pending() == 0
            runtime.start_workers(2)

            # Another process inserts a pending job once the workers are up.
            other = JobStore(settings.database_path)
            try:
                decision = await CacheEngine(other, runtime.blobs, settings=settings).submit(LATE_URL, ScrapeOptions())
            finally:
                other.close()

            triggers = {trigger.name: trigger for trigger in runtime.sweep_triggers()}
            assert sorted(triggers) == ["cleanup_expired", "mark_stuck_jobs_failed", "recover_pending"]
            # Two ticks before any worker runs: the job is still queued, so it is not queued again.
            assert await run_trigger(triggers["recover_pending"], ticks=2, sleep=_no_sleep) == 2
            await runtime.queue.join(timeout=5)
            return runtime.store.get(decision.job_id)

    job = asyncio.run(_run())

    assert job.status == JobStatus.COMPLETED
    assert job.markdown == "# Late"
    assert len(calls) == 1


def test_queue_skips_job_ids_already_waiting():
    queue = JobQueue()
    request = ExecutionRequest(job_id="job1", url=LATE_URL, api_key="fc-test", options=ScrapeOptions(), ttl_ms=1000)
    queue.enqueue(request)
    queue.enqueue(request)
    assert queue.qsize() == 1
