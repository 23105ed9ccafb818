"""Tracing helpers for job execution."""
from __future__ import annotations

import contextlib
import time
from typing import Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars

_LOGGER = structlog.get_logger("scrapecache.trace")


def set_context(*, job_id: str, url_hash: Optional[str] = None) -> None:
    bind_contextvars(job_id=job_id, url_hash=url_hash)
    _LOGGER.debug("trace_context", job_id=job_id, url_hash=url_hash)


def clear_context() -> None:
    clear_contextvars()


@contextlib.contextmanager
def span(*, name: str, url: Optional[str] = None) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        _LOGGER.info("trace_span", span=name, url=url, elapsed_ms=elapsed_ms)


def log_provider_result(*, url: str, status: int, bytes_read: int, elapsed_ms: int) -> None:
    _LOGGER.info(
        "provider_result",
        url=url,
        status=status,
        bytes=bytes_read,
        elapsed_ms=elapsed_ms,
    )
