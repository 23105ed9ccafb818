"""Command-line entrypoints for the scrape cache."""
from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import httpx
from dotenv import load_dotenv
from pydantic import ValidationError

try:
    import uvloop
except ImportError:  # pragma: no cover - uvloop optional on some platforms
    uvloop = None

from scrapecache.errors import (
    InvalidCursorError,
    JobActiveError,
    MissingApiKeyError,
    ScrapeInProgressError,
    UrlValidationError,
)
from scrapecache.observability.log import configure_logging
from scrapecache.observability.metrics import record_duration
from scrapecache.orchestrator.schedule_loop import run_schedule_loop
from scrapecache.runtime import Runtime, open_runtime
from scrapecache.settings import Settings, load_settings
from scrapecache.storage.jobs import now_ms
from scrapecache.storage.models import ScrapeOptions

DEFAULT_CONFIG = Path("config/settings.toml")
FORMAT_CHOICES = ["markdown", "html", "rawHtml", "links", "images", "summary", "screenshot"]


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="scrapecache", description="Deduplicating cache for remote page scrapes")
    parser.add_argument("--config", default=str(DEFAULT_CONFIG), help="Path to settings TOML")
    sub = parser.add_subparsers(dest="command", required=True)

    scrape = sub.add_parser("scrape", help="Submit a URL for scraping (or reuse the cached result)")
    scrape.add_argument("url")
    scrape.add_argument("--format", dest="formats", action="append", choices=FORMAT_CHOICES, help="Requested format; repeatable")
    scrape.add_argument("--ttl-ms", type=int, help="Cache lifetime in milliseconds")
    scrape.add_argument("--force", action="store_true", help="Bypass and evict the cached result")
    scrape.add_argument("--no-main-content", action="store_true", help="Keep navigation, headers and footers")
    scrape.add_argument("--include-tag", dest="include_tags", action="append")
    scrape.add_argument("--exclude-tag", dest="exclude_tags", action="append")
    scrape.add_argument("--wait-for", type=int, help="Milliseconds the provider waits before capture")
    scrape.add_argument("--mobile", action="store_true")
    scrape.add_argument("--proxy", choices=["basic", "stealth", "auto"])
    scrape.add_argument("--store-screenshot", action="store_true", help="Copy the screenshot into the blob store")
    scrape.add_argument("--extraction-schema", help="Path to a JSON Schema file for structured extraction")
    scrape.add_argument("--api-key", help="Provider credential (defaults to the configured environment variable)")
    scrape.add_argument("--no-wait", action="store_true", help="Return the job id without running the job here")

    status = sub.add_parser("status", help="Show a job's lifecycle status")
    status.add_argument("job_id")

    content = sub.add_parser("content", help="Show a job's full record")
    content.add_argument("job_id")

    cached = sub.add_parser("cached", help="Look up a valid cached result")
    cached.add_argument("url")
    cached.add_argument("--format", dest="formats", action="append", choices=FORMAT_CHOICES)

    by_url = sub.add_parser("by-url", help="Most recent job for a URL regardless of status")
    by_url.add_argument("url")

    listing = sub.add_parser("list", help="List jobs, newest first")
    listing.add_argument("--status", choices=["pending", "scraping", "completed", "failed"])
    listing.add_argument("--limit", type=int)
    listing.add_argument("--cursor")

    invalidate = sub.add_parser("invalidate", help="Expire cached results for a URL")
    invalidate.add_argument("url")

    delete = sub.add_parser("delete", help="Delete a finished job and its stored files")
    delete.add_argument("job_id")

    sweep = sub.add_parser("sweep", help="Run a maintenance sweep once")
    sweep.add_argument("kind", choices=["expired", "stuck"])

    worker = sub.add_parser("worker", help="Recover pending jobs, execute queued work and run the sweep triggers")
    worker.add_argument("--ticks", type=int, help="Number of trigger firings before exiting")
    worker.add_argument("--concurrency", type=int, help="Concurrent job executions")
    worker.add_argument("--api-key", help="Provider credential used for recovered jobs")

    return parser


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2))


def _options_from_args(args: argparse.Namespace) -> ScrapeOptions:
    values: Dict[str, Any] = {"force": args.force, "store_screenshot": args.store_screenshot}
    if args.formats:
        values["formats"] = args.formats
    if args.ttl_ms is not None:
        values["ttl_ms"] = args.ttl_ms
    if args.no_main_content:
        values["only_main_content"] = False
    if args.include_tags:
        values["include_tags"] = args.include_tags
    if args.exclude_tags:
        values["exclude_tags"] = args.exclude_tags
    if args.wait_for is not None:
        values["wait_for"] = args.wait_for
    if args.mobile:
        values["mobile"] = True
    if args.proxy:
        values["proxy"] = args.proxy
    if args.extraction_schema:
        values["extraction_schema"] = json.loads(Path(args.extraction_schema).read_text(encoding="utf-8"))
    return ScrapeOptions.model_validate(values)


async def _scrape(runtime: Runtime, args: argparse.Namespace) -> int:
    try:
        options = _options_from_args(args)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        _emit({"error": f"Cannot read extraction schema {args.extraction_schema}: {exc}"})
        return 1
    except ValidationError as exc:
        _emit({"error": "Invalid scrape options", "details": exc.errors(include_url=False, include_context=False)})
        return 1

    try:
        result = await runtime.service.scrape(args.url, options, api_key=args.api_key)
    except ScrapeInProgressError as exc:
        _emit({"error": str(exc), "jobId": exc.job_id})
        return 1
    except (UrlValidationError, MissingApiKeyError) as exc:
        _emit({"error": str(exc)})
        return 1

    if args.no_wait:
        _emit(result)
        return 0
    runtime.start_workers(1)
    await runtime.queue.join()
    _emit({**result, **(runtime.service.get_status(result["jobId"]) or {})})
    return 0


async def _worker(runtime: Runtime, args: argparse.Namespace) -> int:
    with record_duration(runtime.metrics, "worker_duration_ms"):
        try:
            recovered = runtime.service.recover_pending(args.api_key)
        except MissingApiKeyError as exc:
            _emit({"error": str(exc)})
            return 1
        runtime.start_workers(args.concurrency)
        fired = await run_schedule_loop(runtime.sweep_triggers(args.api_key), ticks=args.ticks)
        await runtime.queue.join()
    exported_at = now_ms()
    runtime.metrics.export(runtime.layout.metrics_export(exported_at), exported_at=exported_at)
    _emit({"recovered": recovered, "triggers": fired, "metrics": runtime.metrics.snapshot()})
    return 0


def _found(payload: Optional[Dict[str, Any]], job_id: str) -> int:
    if payload is None:
        _emit({"error": "Scrape not found", "jobId": job_id})
        return 1
    _emit(payload)
    return 0


async def run_command(
    args: argparse.Namespace,
    settings: Mapping[str, Any],
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> int:
    """Execute one CLI command against a freshly opened runtime; returns the exit code."""
    async with open_runtime(Settings.from_mapping(settings), transport=transport) as runtime:
        service = runtime.service

        if args.command == "scrape":
            return await _scrape(runtime, args)

        if args.command == "worker":
            return await _worker(runtime, args)

        if args.command == "status":
            return _found(service.get_status(args.job_id), args.job_id)

        if args.command == "content":
            return _found(service.get_content(args.job_id), args.job_id)

        if args.command == "cached":
            job = service.get_cached(args.url, args.formats)
            _emit(service.with_file_urls(job) if job else None)
            return 0

        if args.command == "by-url":
            job = service.get_by_url(args.url)
            _emit(service.with_file_urls(job) if job else None)
            return 0

        if args.command == "list":
            try:
                _emit(service.list(args.status, args.limit, args.cursor))
            except InvalidCursorError as exc:
                _emit({"error": str(exc)})
                return 1
            return 0

        if args.command == "invalidate":
            _emit(service.invalidate(args.url))
            return 0

        if args.command == "delete":
            try:
                _emit(await service.delete(args.job_id))
            except JobActiveError as exc:
                _emit({"success": False, "error": str(exc)})
                return 1
            return 0

        if args.command == "sweep":
            if args.kind == "expired":
                _emit((await service.cleanup_expired()).to_api())
            else:
                _emit({"markedFailed": await service.mark_stuck_jobs_failed()})
            return 0

    return 2


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    settings = load_settings(Path(args.config))
    configure_logging(Path("config/logging.yaml"))

    if uvloop is not None:
        uvloop.install()

    exit_code = asyncio.run(run_command(args, settings))
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
