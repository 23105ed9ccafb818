"""Wires the store, blob store, provider client and worker pool together."""
from __future__ import annotations

import contextlib
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional

import httpx
import structlog

from scrapecache.fetch.provider import FirecrawlClient
from scrapecache.fetch.session import create_provider_session
from scrapecache.observability.metrics import MetricsRegistry
from scrapecache.orchestrator.dedup import CacheEngine
from scrapecache.orchestrator.executor import JobExecutor
from scrapecache.orchestrator.queue import JobQueue
from scrapecache.orchestrator.schedule_loop import SweepTrigger
from scrapecache.service import ScrapeService
from scrapecache.settings import Settings
from scrapecache.storage.blobs import BlobStore
from scrapecache.storage.jobs import JobStore, now_ms
from scrapecache.storage.layout import DataLayout
from scrapecache.storage.offload import OffloadPolicy

LOGGER = structlog.get_logger(__name__)


@dataclass
class Runtime:
    settings: Settings
    layout: DataLayout
    store: JobStore
    blobs: BlobStore
    executor: JobExecutor
    queue: JobQueue
    service: ScrapeService
    metrics: MetricsRegistry

    def sweep_triggers(self, api_key: Optional[str] = None) -> List[SweepTrigger]:
        """Daily expiry sweep, the stuck-job sweep and the pending-job re-scan.

        The re-scan picks up jobs other processes inserted after this worker
        started; `api_key` is the key those jobs run with.
        """

        async def recover_pending() -> int:
            return self.service.recover_pending(api_key)

        return [
            SweepTrigger(name="cleanup_expired", cron=self.settings.cleanup_cron, action=self.service.cleanup_expired),
            SweepTrigger(
                name="mark_stuck_jobs_failed",
                cron=self.settings.stuck_cron,
                action=self.service.mark_stuck_jobs_failed,
            ),
            SweepTrigger(name="recover_pending", cron=self.settings.recover_cron, action=recover_pending),
        ]

    def start_workers(self, concurrency: Optional[int] = None) -> None:
        self.queue.start(self.executor, concurrency=concurrency or self.settings.worker_concurrency)


@contextlib.asynccontextmanager
async def open_runtime(
    settings: Settings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], int] = now_ms,
    metrics: Optional[MetricsRegistry] = None,
) -> AsyncIterator[Runtime]:
    """Yield a fully wired runtime; workers are stopped and the store closed on exit."""
    metrics = metrics or MetricsRegistry()
    layout = DataLayout.from_settings(settings)
    store = JobStore(layout.database)
    blobs = BlobStore(layout.blobs)
    queue = JobQueue()
    try:
        async with create_provider_session(
            user_agent=settings.user_agent,
            timeout=settings.provider_timeout_seconds,
            max_connections=settings.max_connections,
            transport=transport,
        ) as session:
            provider = FirecrawlClient(session, api_base=settings.api_base, metrics=metrics)
            offload = OffloadPolicy(blobs, threshold_bytes=settings.file_storage_threshold_bytes, metrics=metrics)
            executor = JobExecutor(
                store=store,
                blobs=blobs,
                provider=provider,
                offload=offload,
                metrics=metrics,
                clock=clock,
            )
            engine = CacheEngine(store, blobs, settings=settings, metrics=metrics, clock=clock)
            service = ScrapeService(
                store=store,
                blobs=blobs,
                engine=engine,
                settings=settings,
                dispatch=queue.enqueue,
                metrics=metrics,
                clock=clock,
            )
            runtime = Runtime(
                settings=settings,
                layout=layout,
                store=store,
                blobs=blobs,
                executor=executor,
                queue=queue,
                service=service,
                metrics=metrics,
            )
            try:
                yield runtime
            finally:
                await queue.stop()
    finally:
        store.close()
        LOGGER.debug("runtime_closed", database=str(layout.database))
