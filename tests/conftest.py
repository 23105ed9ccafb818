from pathlib import Path

import pytest

from scrapecache.normalize.url import canonical_key
from scrapecache.observability.log import configure_logging
from scrapecache.orchestrator.jobs import JobStatus
from scrapecache.settings import Settings
from scrapecache.storage.blobs import BlobStore
from scrapecache.storage.jobs import JobStore
from scrapecache.storage.models import ScrapeJob

ROOT = Path(__file__).resolve().parent.parent
DAY_MS = 24 * 60 * 60 * 1000


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture(scope="session", autouse=True)
def _logging():
    # Logs go to stderr so CLI tests can parse stdout as JSON.
    configure_logging(ROOT / "config" / "logging.yaml")


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def settings_mapping(tmp_path):
    return {
        "app": {"data_root": str(tmp_path / "data")},
        "provider": {"api_base": "https://api.firecrawl.test/v2"},
    }


@pytest.fixture()
def settings(settings_mapping):
    return Settings.from_mapping(settings_mapping)


@pytest.fixture()
def store(settings):
    job_store = JobStore(settings.database_path)
    yield job_store
    job_store.close()


@pytest.fixture()
def blobs(settings):
    return BlobStore(settings.blob_dir)


@pytest.fixture()
def make_job(clock):
    counter = {"n": 0}

    def _make(url="https://example.com/page", *, status=JobStatus.COMPLETED, formats=("markdown",), **fields):
        counter["n"] += 1
        normalized, url_hash = canonical_key(url)
        values = {
            "id": f"job{counter['n']}",
            "url": url,
            "normalized_url": normalized,
            "url_hash": url_hash,
            "status": status,
            "formats": list(formats),
            "started_at": clock(),
            "expires_at": clock() + DAY_MS,
        }
        values.update(fields)
        return ScrapeJob(**values)

    return _make
