#!/usr/bin/env python3
"""List, purge or clear the locations held by the remote store.

Usage
-----
    python scripts/dump_locations.py                 # print every location
    python scripts/dump_locations.py --json          # machine-readable output
    python scripts/dump_locations.py --purge-hours 24
    python scripts/dump_locations.py --clear
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

# Allow running from the repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from gpslogger import GpsLoggerConfig, GpsLoggerError, RemoteLocationStore  # noqa: E402
from gpslogger.presentation import format_coordinate  # noqa: E402


async def _main(args: argparse.Namespace) -> int:
    config = GpsLoggerConfig.from_env()
    async with RemoteLocationStore(config) as store:
        if args.clear:
            print(f"deleted {await store.delete_all()} locations")
            return 0
        if args.purge_hours is not None:
            cutoff = datetime.now(UTC) - timedelta(hours=args.purge_hours)
            print(f"deleted {await store.delete_older_than(cutoff)} locations older than {cutoff.isoformat()}")
            return 0

        records = await store.list_all()
        if args.json:
            print(json.dumps([record.to_document() for record in records], indent=2))
        else:
            for record in records:
                print(f"{record.id}  {format_coordinate(record):<28} {record.created_at.isoformat()}")
            print(f"{len(records)} locations")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--json", action="store_true", help="Print the documents as JSON")
    group.add_argument("--purge-hours", type=float, default=None, help="Delete locations older than N hours")
    group.add_argument("--clear", action="store_true", help="Delete every location")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable DEBUG logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    try:
        return asyncio.run(_main(args))
    except GpsLoggerError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
