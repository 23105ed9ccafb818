"""Process-local counters for cache, job and provider events."""
from __future__ import annotations

import contextlib
import time
from collections import Counter
from pathlib import Path
from typing import Dict, Iterable, Iterator

import orjson
import structlog

LOGGER = structlog.get_logger(__name__)

# Every counter the engine emits, reported as zero until first incremented.
COUNTERS = (
    # dedup and cache
    "jobs_created",
    "cache_hits",
    "dedup_conflicts",
    "forced_evictions",
    # job lifecycle
    "jobs_completed",
    "jobs_failed",
    "late_transitions",
    "expired_deleted",
    "stuck_failed",
    # provider
    "provider_2xx",
    "provider_4xx",
    "provider_5xx",
    "provider_errors",
    "rate_limit_advisories",
    # blobs
    "blobs_offloaded",
    "blobs_deleted",
    "blob_delete_failures",
    "screenshots_stored",
    # worker
    "worker_duration_ms",
)


class MetricsRegistry:
    """Counters shared by the engine, the executor and the sweeps."""

    def __init__(self, counters: Iterable[str] = COUNTERS) -> None:
        self._counters: Counter[str] = Counter({name: 0 for name in counters})

    def incr(self, name: str, value: int = 1) -> None:
        self._counters[name] += value

    def get(self, name: str) -> int:
        return self._counters[name]

    def snapshot(self) -> Dict[str, int]:
        return dict(self._counters)

    def export(self, path: Path, *, exported_at: int) -> Path:
        """Write the counters as JSON; `exported_at` is epoch milliseconds."""
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"exportedAt": exported_at, "counters": self.snapshot()}
        path.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS))
        LOGGER.info("metrics_exported", path=str(path))
        return path


@contextlib.contextmanager
def record_duration(registry: MetricsRegistry, counter: str) -> Iterator[None]:
    """Add the block's wall time, in milliseconds, to `counter`."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        registry.incr(counter, elapsed_ms)
        LOGGER.info("duration_recorded", counter=counter, duration_ms=elapsed_ms)
