"""SQLite-backed persistence for scrape jobs.

Every mutation runs inside a `BEGIN IMMEDIATE` transaction, which takes the
database write lock up front. Concurrent writers, including other processes
sharing the file, are therefore linearised. A partial unique index on
`url_hash` for pending/scraping rows backs the one-active-job-per-URL rule
at the schema level.
"""
from __future__ import annotations

import contextlib
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

import orjson
import structlog

from scrapecache.errors import InvalidCursorError, ScrapeInProgressError
from scrapecache.orchestrator.jobs import ACTIVE_STATUSES, TERMINAL_STATUSES, JobStatus, allowed_sources
from scrapecache.storage.models import BLOB_FIELDS, CONTENT_FIELDS, JobPage, ScrapeJob

LOGGER = structlog.get_logger(__name__)

JSON_COLUMNS = frozenset(
    {
        "formats",
        "links",
        "images",
        "extracted_json",
        "extraction_schema",
        "metadata",
        "error_code",
        "request_options",
    }
)

COLUMNS = (
    "id",
    "url",
    "normalized_url",
    "url_hash",
    "status",
    "formats",
    *CONTENT_FIELDS,
    *(f"{name}_file_id" for name in CONTENT_FIELDS),
    "screenshot_url",
    "screenshot_file_id",
    "extraction_schema",
    "metadata",
    "error",
    "error_code",
    "started_at",
    "scraping_at",
    "scraped_at",
    "expires_at",
    "ttl_ms",
    "request_options",
)

# Fields the executor may write when completing a job.
COMPLETION_FIELDS = frozenset(CONTENT_FIELDS) | frozenset(BLOB_FIELDS) | {"screenshot_url", "metadata"}

_SCHEMA = """
CREATE TABLE IF NOT EXISTS scrapes (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    url TEXT NOT NULL,
    normalized_url TEXT NOT NULL,
    url_hash TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('pending', 'scraping', 'completed', 'failed')),
    formats TEXT NOT NULL,
    markdown TEXT,
    html TEXT,
    raw_html TEXT,
    summary TEXT,
    links TEXT,
    images TEXT,
    extracted_json TEXT,
    markdown_file_id TEXT,
    html_file_id TEXT,
    raw_html_file_id TEXT,
    summary_file_id TEXT,
    links_file_id TEXT,
    images_file_id TEXT,
    extracted_json_file_id TEXT,
    screenshot_url TEXT,
    screenshot_file_id TEXT,
    extraction_schema TEXT,
    metadata TEXT,
    error TEXT,
    error_code TEXT,
    started_at INTEGER NOT NULL,
    scraping_at INTEGER,
    scraped_at INTEGER,
    expires_at INTEGER NOT NULL,
    ttl_ms INTEGER,
    request_options TEXT
);
CREATE INDEX IF NOT EXISTS by_url_hash ON scrapes (url_hash, seq);
CREATE INDEX IF NOT EXISTS by_status ON scrapes (status, seq);
CREATE INDEX IF NOT EXISTS by_expires ON scrapes (expires_at);
CREATE INDEX IF NOT EXISTS by_status_scraping ON scrapes (status, scraping_at);
CREATE UNIQUE INDEX IF NOT EXISTS one_active_per_url ON scrapes (url_hash)
    WHERE status IN ('pending', 'scraping');
"""


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def _placeholders(values: Iterable[Any]) -> str:
    return ", ".join("?" for _ in values)


def _status_values(statuses: Iterable[JobStatus]) -> List[str]:
    return sorted(str(status) for status in statuses)


class JobStore:
    """Transactional store for `ScrapeJob` records."""

    def __init__(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._path = path
        self._conn = sqlite3.connect(str(path), isolation_level=None, check_same_thread=False, timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)

    @property
    def path(self) -> Path:
        return self._path

    def close(self) -> None:
        self._conn.close()

    @contextlib.contextmanager
    def transaction(self) -> Iterator["JobStore"]:
        """Run the enclosed operations atomically; nested calls join the outer transaction."""
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return
            self._conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")
            finally:
                self._depth = 0

    # -- serialisation -------------------------------------------------

    @staticmethod
    def _to_row(job: ScrapeJob) -> Dict[str, Any]:
        payload = job.model_dump(mode="json")
        payload["request_options"] = job.request_options
        payload["ttl_ms"] = job.ttl_ms
        row: Dict[str, Any] = {}
        for column in COLUMNS:
            value = payload.get(column)
            if column in JSON_COLUMNS and value is not None:
                value = orjson.dumps(value).decode()
            row[column] = value
        return row

    @staticmethod
    def _from_row(row: sqlite3.Row) -> ScrapeJob:
        data: Dict[str, Any] = {}
        for column in COLUMNS:
            value = row[column]
            if column in JSON_COLUMNS and value is not None:
                value = orjson.loads(value)
            data[column] = value
        return ScrapeJob.model_validate(data)

    def _select(self, where: str, params: Iterable[Any], *, order: str = "seq DESC", limit: Optional[int] = None) -> List[ScrapeJob]:
        sql = f"SELECT * FROM scrapes WHERE {where} ORDER BY {order}"
        params = list(params)
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._from_row(row) for row in rows]

    # -- reads ---------------------------------------------------------

    def get(self, job_id: str) -> Optional[ScrapeJob]:
        found = self._select("id = ?", [job_id], limit=1)
        return found[0] if found else None

    def recent_by_hash(self, url_hash: str, limit: int) -> List[ScrapeJob]:
        """Newest-first jobs sharing the hash, bounded by `limit`."""
        return self._select("url_hash = ?", [url_hash], limit=limit)

    def latest_by_hash(self, url_hash: str) -> Optional[ScrapeJob]:
        found = self.recent_by_hash(url_hash, 1)
        return found[0] if found else None

    def active_for_hash(self, url_hash: str) -> Optional[ScrapeJob]:
        statuses = _status_values(ACTIVE_STATUSES)
        found = self._select(
            f"url_hash = ? AND status IN ({_placeholders(statuses)})",
            [url_hash, *statuses],
            limit=1,
        )
        return found[0] if found else None

    def list_by_status(self, status: JobStatus | str, limit: Optional[int] = None) -> List[ScrapeJob]:
        return self._select("status = ?", [str(JobStatus(status))], limit=limit)

    def list_page(self, *, status: Optional[JobStatus | str], limit: int, cursor: Optional[str]) -> JobPage:
        """Return one newest-first page; the cursor is the last row's sequence number."""
        clauses: List[str] = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(str(JobStatus(status)))
        if cursor:
            try:
                params.append(int(cursor))
            except ValueError:
                raise InvalidCursorError(cursor) from None
            clauses.append("seq < ?")
        where = " AND ".join(clauses) or "1 = 1"
        sql = f"SELECT * FROM scrapes WHERE {where} ORDER BY seq DESC LIMIT ?"
        with self._lock:
            rows = self._conn.execute(sql, [*params, limit + 1]).fetchall()
        has_more = len(rows) > limit
        rows = rows[:limit]
        next_cursor = str(rows[-1]["seq"]) if has_more and rows else None
        return JobPage(scrapes=[self._from_row(row) for row in rows], next_cursor=next_cursor, has_more=has_more)

    def expired_terminal(self, now: int, limit: int) -> List[ScrapeJob]:
        statuses = _status_values(TERMINAL_STATUSES)
        return self._select(
            f"expires_at < ? AND status IN ({_placeholders(statuses)})",
            [now, *statuses],
            order="expires_at ASC",
            limit=limit,
        )

    def stuck_scraping(self, cutoff: int) -> List[ScrapeJob]:
        return self._select(
            "status = ? AND scraping_at < ?",
            [str(JobStatus.SCRAPING), cutoff],
            order="scraping_at ASC",
        )

    def count_by_status(self) -> Dict[str, int]:
        with self._lock:
            rows = self._conn.execute("SELECT status, COUNT(*) AS n FROM scrapes GROUP BY status").fetchall()
        counts = {str(status): 0 for status in JobStatus}
        counts.update({row["status"]: row["n"] for row in rows})
        return counts

    def failures_since(self, since: int) -> List[ScrapeJob]:
        return self._select("status = ? AND started_at >= ?", [str(JobStatus.FAILED), since])

    # -- writes --------------------------------------------------------

    def insert(self, job: ScrapeJob) -> ScrapeJob:
        row = self._to_row(job)
        sql = f"INSERT INTO scrapes ({', '.join(row)}) VALUES ({_placeholders(row)})"
        with self.transaction():
            try:
                self._conn.execute(sql, list(row.values()))
            except sqlite3.IntegrityError:
                active = self.active_for_hash(job.url_hash)
                if active is None:
                    raise
                raise ScrapeInProgressError(active.id) from None
        LOGGER.debug("job_inserted", job_id=job.id, url_hash=job.url_hash)
        return job

    def _transition(self, job_id: str, target: JobStatus, fields: Mapping[str, Any]) -> bool:
        sources = _status_values(allowed_sources(target))
        assignments = {"status": str(target), **fields}
        values = []
        for column, value in assignments.items():
            if column in JSON_COLUMNS and value is not None:
                value = orjson.dumps(value).decode()
            values.append(value)
        sql = (
            f"UPDATE scrapes SET {', '.join(f'{column} = ?' for column in assignments)} "
            f"WHERE id = ? AND status IN ({_placeholders(sources)})"
        )
        with self.transaction():
            cursor = self._conn.execute(sql, [*values, job_id, *sources])
        return cursor.rowcount == 1

    def mark_scraping(self, job_id: str, now: int) -> bool:
        """Move a pending job to scraping, recording when work began."""
        return self._transition(job_id, JobStatus.SCRAPING, {"scraping_at": now})

    def complete(self, job_id: str, *, content: Mapping[str, Any], ttl_ms: int, now: int) -> bool:
        """Complete an active job; returns False when it was already terminal or gone."""
        unknown = set(content) - COMPLETION_FIELDS
        if unknown:
            raise ValueError(f"Unknown content fields: {sorted(unknown)}")
        fields = {**content, "scraped_at": now, "expires_at": now + ttl_ms}
        return self._transition(job_id, JobStatus.COMPLETED, fields)

    def fail(self, job_id: str, *, error: str, error_code: Any = None) -> bool:
        """Fail an active job; returns False when it was already terminal or gone."""
        return self._transition(job_id, JobStatus.FAILED, {"error": error, "error_code": error_code})

    def invalidate(self, url_hash: str, now: int) -> int:
        """Expire every still-valid completed job for the hash without deleting it."""
        with self.transaction():
            cursor = self._conn.execute(
                "UPDATE scrapes SET expires_at = ? WHERE url_hash = ? AND status = ? AND expires_at > ?",
                [now, url_hash, str(JobStatus.COMPLETED), now],
            )
        return cursor.rowcount

    def delete(self, job_id: str, *, statuses: Iterable[JobStatus] = TERMINAL_STATUSES) -> bool:
        """Delete a job only while it is in one of `statuses`."""
        values = _status_values(statuses)
        with self.transaction():
            cursor = self._conn.execute(
                f"DELETE FROM scrapes WHERE id = ? AND status IN ({_placeholders(values)})",
                [job_id, *values],
            )
        return cursor.rowcount == 1
