"""Exception types raised by the scrape cache."""
from __future__ import annotations

from typing import Optional, Union

ErrorCode = Union[int, str]


class ScrapeCacheError(Exception):
    """Base class for all scrape cache errors."""


class UrlValidationError(ScrapeCacheError, ValueError):
    """Raised when a URL fails sanity or SSRF screening."""

    def __init__(self, reason: str, message: str, *, hostname: Optional[str] = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.hostname = hostname


class ScrapeInProgressError(ScrapeCacheError):
    """An active job already exists for the normalized URL."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Scrape already in progress for this URL. Job ID: {job_id}")
        self.job_id = job_id


class JobActiveError(ScrapeCacheError):
    """Raised when deleting a job that is still pending or scraping."""

    def __init__(self, job_id: str, status: str) -> None:
        super().__init__(
            f'Cannot delete scrape with status "{status}". Wait for scrape to complete or fail.'
        )
        self.job_id = job_id
        self.status = status


class MissingApiKeyError(ScrapeCacheError):
    """No provider credential was supplied or configured."""


class ProviderError(ScrapeCacheError):
    """The remote provider reported a failure for a scrape."""

    def __init__(self, message: str, code: Optional[ErrorCode] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class BlobNotFoundError(ScrapeCacheError, KeyError):
    """The requested blob key does not exist in the blob store."""

    def __str__(self) -> str:
        return f"Blob not found: {self.args[0]}"


class InvalidCursorError(ScrapeCacheError, ValueError):
    """A list cursor that this store did not hand out."""

    def __init__(self, cursor: str) -> None:
        super().__init__(f"Invalid cursor: {cursor!r}")
        self.cursor = cursor
