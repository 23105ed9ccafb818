"""Administrative CLI utilities."""
from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import List, Optional

from scrapecache.admin.status import failure_histogram, summarise_store
from scrapecache.observability.log import configure_logging
from scrapecache.settings import Settings, load_settings
from scrapecache.storage.blobs import BlobStore
from scrapecache.storage.jobs import JobStore, now_ms

DAY_MS = 24 * 60 * 60 * 1000


def _open(args: argparse.Namespace) -> tuple[JobStore, BlobStore]:
    settings = Settings.from_mapping(load_settings(Path(args.config)))
    database = Path(args.database) if args.database else settings.database_path
    blob_dir = Path(args.blobs) if args.blobs else settings.blob_dir
    return JobStore(database), BlobStore(blob_dir)


def cmd_status(args: argparse.Namespace) -> None:
    store, blobs = _open(args)
    try:
        print(json.dumps(summarise_store(store, blobs), indent=2))
    finally:
        store.close()


def cmd_failures(args: argparse.Namespace) -> None:
    store, _ = _open(args)
    try:
        since = now_ms() - args.last * DAY_MS
        print(json.dumps(failure_histogram(store, since=since), indent=2))
    finally:
        store.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="scrapecache-admin", description="Administration commands")
    parser.add_argument("--config", default="config/settings.toml")
    parser.add_argument("--database", help="Override the job database path")
    parser.add_argument("--blobs", help="Override the blob directory")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show job counts per status and blob usage")

    failures = sub.add_parser("inspect-failures", help="Summarise failed jobs by error code")
    failures.add_argument("--last", type=int, default=7, help="Lookback window in days")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    configure_logging(Path("config/logging.yaml"))
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "status":
        cmd_status(args)
        return
    if args.command == "inspect-failures":
        cmd_failures(args)
        return


if __name__ == "__main__":
    main()
