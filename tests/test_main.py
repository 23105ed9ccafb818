import asyncio
import json

import httpx
import pytest

from scrapecache import main as app_main


def _provider(calls):
    def handler(request):
        calls.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={"success": True, "data": {"markdown": "# Example", "metadata": {"title": "Example"}}},
        )

    return httpx.MockTransport(handler)


def _run(argv, settings, transport=None):
    args = app_main.build_arg_parser().parse_args(argv)
    return asyncio.run(app_main.run_command(args, settings, transport=transport))


@pytest.fixture(autouse=True)
def api_key(monkeypatch):
    monkeypatch.setenv("FIRECRAWL_API_KEY", "fc-test")


def test_scrape_waits_for_completion(settings_mapping, capsys):
    calls = []
    _run(["scrape", "https://example.com/a", "--format", "markdown", "--ttl-ms", "60000"], settings_mapping, _provider(calls))
    result = json.loads(capsys.readouterr().out)
    assert result["status"] == "completed"
    assert len(calls) == 1
    assert calls[0]["url"] == "https://example.com/a"

    _run(["content", result["jobId"]], settings_mapping)
    content = json.loads(capsys.readouterr().out)
    assert content["markdown"] == "# Example"
    assert content["metadata"] == {"title": "Example"}

    _run(["cached", "https://EXAMPLE.com/a/?utm_source=x"], settings_mapping)
    assert json.loads(capsys.readouterr().out)["id"] == result["jobId"]

    # Served from cache: no second provider call.
    _run(["scrape", "https://example.com/a"], settings_mapping, _provider(calls))
    assert json.loads(capsys.readouterr().out)["jobId"] == result["jobId"]
    assert len(calls) == 1


def test_no_wait_then_worker_recovers_pending(settings_mapping, capsys, tmp_path):
    _run(["scrape", "https://example.com/b", "--no-wait"], settings_mapping)
    job_id = json.loads(capsys.readouterr().out)["jobId"]

    _run(["list", "--status", "pending"], settings_mapping)
    listing = json.loads(capsys.readouterr().out)
    assert [job["id"] for job in listing["scrapes"]] == [job_id]

    calls = []
    _run(["worker", "--ticks", "0", "--concurrency", "2"], settings_mapping, _provider(calls))
    report = json.loads(capsys.readouterr().out)
    assert report["recovered"] == 1
    assert report["triggers"] == [0, 0, 0]
    assert report["metrics"]["jobs_completed"] == 1
    exports = list((tmp_path / "data" / "metrics").glob("worker_*.json"))
    assert len(exports) == 1
    exported = json.loads(exports[0].read_text(encoding="utf-8"))
    assert exported["counters"]["jobs_completed"] == 1
    assert exports[0].name == f"worker_{exported['exportedAt']}.json"

    _run(["status", job_id], settings_mapping)
    assert json.loads(capsys.readouterr().out)["status"] == "completed"


def test_conflict_and_delete_errors(settings_mapping, capsys):
    _run(["scrape", "https://example.com/c", "--no-wait"], settings_mapping)
    job_id = json.loads(capsys.readouterr().out)["jobId"]

    assert _run(["scrape", "https://example.com/c", "--no-wait"], settings_mapping) == 1
    conflict = json.loads(capsys.readouterr().out)
    assert conflict["jobId"] == job_id
    assert "already in progress" in conflict["error"]

    assert _run(["delete", job_id], settings_mapping) == 1
    assert 'status "pending"' in json.loads(capsys.readouterr().out)["error"]

    _run(["by-url", "https://example.com/c"], settings_mapping)
    assert json.loads(capsys.readouterr().out)["status"] == "pending"


def test_validation_errors_exit_nonzero(settings_mapping, capsys):
    assert _run(["scrape", "http://localhost:3000/x"], settings_mapping) == 1
    assert "Private/local" in json.loads(capsys.readouterr().out)["error"]

    assert _run(["status", "missing"], settings_mapping) == 1
    assert json.loads(capsys.readouterr().out)["error"] == "Scrape not found"


def test_bad_cursor_and_schema_file_exit_nonzero(settings_mapping, capsys, tmp_path):
    assert _run(["list", "--cursor", "abc"], settings_mapping) == 1
    assert json.loads(capsys.readouterr().out) == {"error": "Invalid cursor: 'abc'"}

    missing = tmp_path / "missing.json"
    assert _run(["scrape", "https://example.com/e", "--extraction-schema", str(missing)], settings_mapping) == 1
    assert json.loads(capsys.readouterr().out)["error"].startswith("Cannot read extraction schema")

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    assert _run(["scrape", "https://example.com/e", "--extraction-schema", str(broken)], settings_mapping) == 1
    assert json.loads(capsys.readouterr().out)["error"].startswith("Cannot read extraction schema")

    # Nothing was submitted.
    _run(["by-url", "https://example.com/e"], settings_mapping)
    assert json.loads(capsys.readouterr().out) is None


def test_invalidate_and_sweeps(settings_mapping, capsys):
    _run(["scrape", "https://example.com/d"], settings_mapping, _provider([]))
    capsys.readouterr()

    _run(["sweep", "stuck"], settings_mapping)
    assert json.loads(capsys.readouterr().out) == {"markedFailed": 0}

    _run(["sweep", "expired"], settings_mapping)
    assert json.loads(capsys.readouterr().out) == {"deletedCount": 0, "deletedFileCount": 0}

    _run(["invalidate", "https://example.com/d"], settings_mapping)
    assert json.loads(capsys.readouterr().out) == {"success": True, "invalidatedCount": 1}

    _run(["cached", "https://example.com/d"], settings_mapping)
    assert json.loads(capsys.readouterr().out) is None
