"""Administrative status helpers."""
from __future__ import annotations

from collections import Counter
from typing import Dict, Union

from scrapecache.storage.blobs import BlobStore
from scrapecache.storage.jobs import JobStore


def summarise_store(store: JobStore, blobs: BlobStore) -> Dict[str, object]:
    """Job counts per status together with blob store usage."""
    counts = store.count_by_status()
    return {
        "jobs": counts,
        "total": sum(counts.values()),
        "blobs": blobs.usage(),
    }


def failure_histogram(store: JobStore, *, since: int) -> Dict[str, int]:
    """Count failed jobs started at or after `since` by error code."""
    counter: Counter[str] = Counter()
    for job in store.failures_since(since):
        code: Union[int, str, None] = job.error_code
        counter[str(code) if code is not None else "unknown"] += 1
    return dict(counter.most_common())
