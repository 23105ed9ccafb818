"""Pydantic models for scrape jobs and the options that create them."""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Tuple, Union

import jsonschema
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from scrapecache.orchestrator.jobs import JobStatus

ScrapeFormat = Literal["markdown", "html", "rawHtml", "links", "images", "summary", "screenshot"]
ProxyOption = Literal["basic", "stealth", "auto"]

DEFAULT_FORMATS: Tuple[str, ...] = ("markdown",)

# Content fields that are stored either inline or as a blob reference.
CONTENT_FIELDS: Tuple[str, ...] = (
    "markdown",
    "html",
    "raw_html",
    "summary",
    "links",
    "images",
    "extracted_json",
)
BLOB_FIELDS: Tuple[str, ...] = tuple(f"{name}_file_id" for name in CONTENT_FIELDS) + (
    "screenshot_file_id",
)

_CAMEL = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ScrapeOptions(BaseModel):
    """Caller-supplied options for a scrape request."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    formats: List[ScrapeFormat] = Field(default_factory=lambda: list(DEFAULT_FORMATS))
    ttl_ms: Optional[int] = Field(default=None, gt=0)
    force: bool = False
    only_main_content: Optional[bool] = None
    include_tags: Optional[List[str]] = None
    exclude_tags: Optional[List[str]] = None
    wait_for: Optional[int] = Field(default=None, ge=0)
    mobile: Optional[bool] = None
    proxy: Optional[ProxyOption] = None
    store_screenshot: bool = False
    extraction_schema: Optional[Dict[str, Any]] = None

    @field_validator("formats")
    @classmethod
    def _dedupe_formats(cls, value: List[str]) -> List[str]:
        if not value:
            return list(DEFAULT_FORMATS)
        return list(dict.fromkeys(value))

    @field_validator("extraction_schema")
    @classmethod
    def _check_schema(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if value is None:
            return value
        try:
            jsonschema.Draft202012Validator.check_schema(value)
        except jsonschema.SchemaError as exc:
            raise ValueError(f"invalid extraction schema: {exc.message}") from exc
        return value


class ScrapeMetadata(BaseModel):
    """Page metadata returned by the provider."""

    model_config = _CAMEL

    title: Optional[str] = None
    description: Optional[str] = None
    language: Optional[str] = None
    source_url: Optional[str] = Field(default=None, alias="sourceURL")
    status_code: Optional[int] = None
    og_image: Optional[str] = None
    og_title: Optional[str] = None
    og_description: Optional[str] = None
    og_site_name: Optional[str] = None
    content_type: Optional[str] = None
    cache_control: Optional[str] = None


class ScrapeJob(BaseModel):
    """One fetch attempt for a URL together with its cached content."""

    model_config = _CAMEL

    id: str
    url: str
    normalized_url: str
    url_hash: str
    status: JobStatus
    formats: List[str]

    markdown: Optional[str] = None
    markdown_file_id: Optional[str] = None
    html: Optional[str] = None
    html_file_id: Optional[str] = None
    raw_html: Optional[str] = None
    raw_html_file_id: Optional[str] = None
    summary: Optional[str] = None
    summary_file_id: Optional[str] = None
    links: Optional[List[str]] = None
    links_file_id: Optional[str] = None
    images: Optional[List[str]] = None
    images_file_id: Optional[str] = None
    screenshot_url: Optional[str] = None
    screenshot_file_id: Optional[str] = None
    extracted_json: Optional[Any] = None
    extracted_json_file_id: Optional[str] = None
    extraction_schema: Optional[Dict[str, Any]] = None

    metadata: Optional[ScrapeMetadata] = None
    error: Optional[str] = None
    error_code: Optional[Union[int, str]] = None

    started_at: int
    scraping_at: Optional[int] = None
    scraped_at: Optional[int] = None
    expires_at: int

    # Execution options persisted for crash recovery; never part of the public shape.
    request_options: Optional[Dict[str, Any]] = Field(default=None, exclude=True)
    ttl_ms: Optional[int] = Field(default=None, exclude=True)

    @model_validator(mode="after")
    def _inline_or_blob(self) -> "ScrapeJob":
        for name in CONTENT_FIELDS:
            if getattr(self, name) is not None and getattr(self, f"{name}_file_id") is not None:
                raise ValueError(f"{name} cannot be stored both inline and as a blob")
        return self

    def file_ids(self) -> List[str]:
        """Blob keys referenced by this job."""
        return [key for key in (getattr(self, name) for name in BLOB_FIELDS) if key]

    def satisfies(self, requested: List[str]) -> bool:
        """True when the stored formats are a superset of `requested`."""
        return set(requested).issubset(self.formats)

    def is_cache_hit(self, requested: List[str], now: int) -> bool:
        return (
            self.status == JobStatus.COMPLETED
            and self.expires_at > now
            and self.satisfies(requested)
        )

    def status_view(self) -> Dict[str, Any]:
        return self.model_dump(
            by_alias=True,
            exclude_none=True,
            mode="json",
            include={"status", "error", "error_code", "started_at", "scraping_at", "scraped_at", "expires_at"},
        )

    def to_api(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class JobPage(BaseModel):
    """A page of jobs returned by `list`."""

    model_config = _CAMEL

    scrapes: List[ScrapeJob]
    next_cursor: Optional[str] = None
    has_more: bool = False

    def to_api(self) -> Dict[str, Any]:
        return {
            "scrapes": [job.to_api() for job in self.scrapes],
            "nextCursor": self.next_cursor,
            "hasMore": self.has_more,
        }
