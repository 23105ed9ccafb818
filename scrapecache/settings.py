"""Typed view over the TOML settings mapping."""
from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

DAY_MS = 24 * 60 * 60 * 1000
MINUTE_MS = 60 * 1000


def load_settings(path: Path) -> Dict[str, Any]:
    """Read the TOML configuration file; a missing file yields an empty mapping."""
    if not path.exists():
        return {}
    with path.open("rb") as handle:
        return tomllib.load(handle)


def _section(settings: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    return settings.get(name, {}) or {}


@dataclass(frozen=True)
class Settings:
    data_root: Path
    database_path: Path
    blob_dir: Path
    metrics_dir: Path

    default_ttl_ms: int = 30 * DAY_MS
    file_storage_threshold_bytes: int = 1024 * 1024
    lookback: int = 10
    cleanup_batch_size: int = 100
    stuck_job_timeout_ms: int = 5 * MINUTE_MS
    max_list_limit: int = 100
    default_list_limit: int = 50
    max_url_length: int = 2000

    api_base: str = "https://api.firecrawl.dev/v2"
    api_key_env: str = "FIRECRAWL_API_KEY"
    api_key: Optional[str] = None
    provider_timeout_seconds: float = 300.0
    max_connections: int = 10
    user_agent: str = "scrapecache/0.1"

    requests_per_minute: int = 100

    cleanup_cron: str = "0 3 * * *"
    stuck_cron: str = "*/5 * * * *"
    recover_cron: str = "* * * * *"
    worker_concurrency: int = 4

    @classmethod
    def from_mapping(cls, settings: Mapping[str, Any]) -> "Settings":
        app = _section(settings, "app")
        cache = _section(settings, "cache")
        provider = _section(settings, "provider")
        rate_limit = _section(settings, "rate_limit")
        scheduler = _section(settings, "scheduler")

        data_root = Path(app.get("data_root", "data"))
        return cls(
            data_root=data_root,
            database_path=Path(app.get("database_path", data_root / "scrapes.db")),
            blob_dir=Path(app.get("blob_dir", data_root / "blobs")),
            metrics_dir=Path(app.get("metrics_dir", data_root / "metrics")),
            default_ttl_ms=int(cache.get("default_ttl_ms", cls.default_ttl_ms)),
            file_storage_threshold_bytes=int(
                cache.get("file_storage_threshold_bytes", cls.file_storage_threshold_bytes)
            ),
            lookback=int(cache.get("lookback", cls.lookback)),
            cleanup_batch_size=int(cache.get("cleanup_batch_size", cls.cleanup_batch_size)),
            stuck_job_timeout_ms=int(cache.get("stuck_job_timeout_ms", cls.stuck_job_timeout_ms)),
            max_list_limit=int(cache.get("max_list_limit", cls.max_list_limit)),
            default_list_limit=int(cache.get("default_list_limit", cls.default_list_limit)),
            max_url_length=int(cache.get("max_url_length", cls.max_url_length)),
            api_base=str(provider.get("api_base", cls.api_base)).rstrip("/"),
            api_key_env=str(provider.get("api_key_env", cls.api_key_env)),
            api_key=provider.get("api_key"),
            provider_timeout_seconds=float(provider.get("timeout_seconds", cls.provider_timeout_seconds)),
            max_connections=int(provider.get("max_connections", cls.max_connections)),
            user_agent=str(provider.get("user_agent", cls.user_agent)),
            requests_per_minute=int(rate_limit.get("requests_per_minute", cls.requests_per_minute)),
            cleanup_cron=str(scheduler.get("cleanup_cron", cls.cleanup_cron)),
            stuck_cron=str(scheduler.get("stuck_cron", cls.stuck_cron)),
            recover_cron=str(scheduler.get("recover_cron", cls.recover_cron)),
            worker_concurrency=int(scheduler.get("worker_concurrency", cls.worker_concurrency)),
        )

    def resolve_api_key(self, explicit: Optional[str] = None) -> Optional[str]:
        """Explicit key, then configured key, then the environment."""
        return explicit or self.api_key or os.environ.get(self.api_key_env) or None
