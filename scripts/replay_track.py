#!/usr/bin/env python3
"""Replay a recorded track through the sync engine.

Reads fixes from a JSON-lines file (``{"latitude": .., "longitude": ..,
"timestamp": ..}`` per line) or a CSV file (``latitude,longitude[,timestamp]``),
feeds them to the engine as a live location source would, and prints the
resulting list rows.

Usage
-----
Configure the store through ``GPSLOGGER_*`` environment variables and run::

    python scripts/replay_track.py track.jsonl

Options::

    --memory          Use the in-process store instead of the remote one
    --interval SEC    Delay between fixes (default: 0)
    --no-purge        Skip the startup retention purge
    -v, --verbose     Enable DEBUG logging
"""

from __future__ import annotations

import argparse
import asyncio
import csv
import json
import logging
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

# Allow running from the repo root without installing the package.
_repo = Path(__file__).resolve().parent.parent
_src = _repo / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from gpslogger import (  # noqa: E402
    GpsLoggerConfig,
    GpsLoggerError,
    ListRow,
    ListRowSink,
    LocationFix,
    MemoryLocationStore,
    RemoteLocationStore,
    SyncEngine,
)
from gpslogger.store.base import BaseLocationStore  # noqa: E402


def _parse_line(path: Path, line: str) -> dict[str, Any] | None:
    text = line.strip()
    if not text or text.startswith("#"):
        return None
    if path.suffix.lower() == ".csv":
        row = next(csv.reader([text]))
        fields: dict[str, Any] = {"latitude": float(row[0]), "longitude": float(row[1])}
        if len(row) > 2 and row[2].strip():
            fields["timestamp"] = row[2].strip()
        return fields
    parsed = json.loads(text)
    return parsed if isinstance(parsed, dict) else None


async def _read_fixes(path: Path, interval: float) -> AsyncIterator[LocationFix]:
    with path.open(encoding="utf-8") as handle:
        for line_no, line in enumerate(handle, start=1):
            try:
                fields = _parse_line(path, line)
                fix = LocationFix.model_validate(fields) if fields is not None else None
            except (ValueError, IndexError) as exc:
                print(f"line {line_no}: skipped ({exc})", file=sys.stderr)
                continue
            if fix is None:
                continue
            yield fix
            if interval > 0:
                await asyncio.sleep(interval)


def _print_rows(rows: tuple[ListRow, ...]) -> None:
    for row in rows:
        marker = " " if row.record_id else "*"
        print(f"{marker} {row.text:<28} {row.detail}")


async def _replay(store: BaseLocationStore, config: GpsLoggerConfig, args: argparse.Namespace) -> int:
    rows = ListRowSink()
    engine = SyncEngine(store, config)
    engine.add_sink(rows)
    await engine.start()
    try:
        accepted = await engine.follow(_read_fixes(args.path, args.interval))
        await store.flush()
        await engine.refresh()
    finally:
        await engine.stop()
    print(f"accepted {accepted} fixes, {len(rows)} stored locations:")
    _print_rows(rows.rows)
    return 0


async def _main(args: argparse.Namespace) -> int:
    overrides: dict[str, Any] = {}
    if args.no_purge:
        overrides["retention_seconds"] = 0
    config = GpsLoggerConfig.from_env(**overrides)

    if args.memory:
        return await _replay(MemoryLocationStore(), config, args)
    async with RemoteLocationStore(config) as store:
        return await _replay(store, config, args)


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("path", type=Path, help="Track file (.jsonl or .csv)")
    parser.add_argument("--memory", action="store_true", help="Use the in-process store")
    parser.add_argument("--interval", type=float, default=0.0, help="Delay between fixes in seconds")
    parser.add_argument("--no-purge", action="store_true", help="Skip the startup retention purge")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable DEBUG logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_main(args))
    except GpsLoggerError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
