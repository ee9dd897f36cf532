#!/usr/bin/env python3
"""
hlsync CLI - run the HLS sync service and inspect its state.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

import config
from store.processed_state import ProcessedStateStore
from worker.assets import VideoAsset
from worker.errors import truncate_error
from worker.validator import check_playlist

console = Console()


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def _find_source(store_key: str):
    """Locate the source file for a processed entry without touching the database."""
    for path in config.UPLOADS_DIR.rglob("*"):
        if path.is_file() and path.name.lower() == store_key:
            return path
    return None


def cmd_run(args):
    """Run the long-lived service."""
    from worker.service import configure_logging, run_service

    configure_logging(args.log_level)
    asyncio.run(run_service())


def cmd_scan(args):
    """One scan, then process what it found."""
    from worker.service import configure_logging, scan_and_drain

    configure_logging(args.log_level)
    enqueued = asyncio.run(scan_and_drain())
    print(f"Scan complete: {enqueued} job(s) processed")


def cmd_convert(args):
    """Re-encode one upload now, regardless of its processed state."""
    from worker.jobs import JobStep
    from worker.service import configure_logging, convert_file

    configure_logging(args.log_level)
    job = asyncio.run(convert_file(args.filename))
    if job is None:
        print(f"Error: {args.filename} not found under {config.UPLOADS_DIR}")
        sys.exit(1)
    if job.step != JobStep.COMPLETED:
        print(f"Error: {job.filename} failed: {job.error}")
        sys.exit(1)
    print(f"Converted {job.filename}")


def cmd_batch(args):
    """Convert every owning row once, resuming partially encoded renditions."""
    from worker.batch import BatchConverter
    from worker.service import build_components, configure_logging

    configure_logging(args.log_level)

    async def _run():
        components = build_components()
        await components.database.connect()
        try:
            return await BatchConverter(components.orchestrator).run()
        finally:
            await components.database.disconnect()

    report = asyncio.run(_run())
    print(f"Batch complete: {report.summary()}")
    if report.failed:
        for label in report.failed:
            print(f"  failed: {label}")
        sys.exit(1)


def cmd_status(args):
    """Show processed entries and whether each still matches its source."""
    store = ProcessedStateStore(config.STATE_FILE)
    if len(store) == 0:
        print(f"No processed entries in {config.STATE_FILE}")
        return

    table = Table(title=f"Processed videos ({config.STATE_FILE})")
    table.add_column("File")
    table.add_column("Pointer")
    table.add_column("Size", justify="right")
    table.add_column("Processed at")
    table.add_column("State")

    for key, entry in store.entries():
        source = _find_source(key) if args.check else None
        if not args.check:
            state = "-"
        elif source is None:
            state = "[red]missing[/red]"
        else:
            asset = VideoAsset.from_path(source)
            if asset is not None and entry.matches(asset.size, asset.mtime_ns):
                state = "[green]current[/green]"
            else:
                state = "[yellow]stale[/yellow]"
        table.add_row(key, entry.pointer, str(entry.size), entry.processed_at, state)

    console.print(table)


def cmd_validate(args):
    """Validate every tier and the master playlist of one rendition."""
    output_dir = Path(args.hls_dir) / args.base_name if args.hls_dir else config.HLS_DIR / args.base_name
    if not output_dir.is_dir():
        print(f"Error: no rendition directory at {output_dir}")
        sys.exit(1)

    table = Table(title=f"Rendition {args.base_name}")
    table.add_column("Playlist")
    table.add_column("Valid")
    table.add_column("Problem")

    tier_names = [tier["name"] for tier in config.RENDITION_LADDER]
    all_valid = True
    playlists = [f"{args.base_name}_{tier}.m3u8" for tier in tier_names] + [f"{args.base_name}.m3u8"]
    for name in playlists:
        valid, reason = check_playlist(output_dir / name, require_endlist=name != f"{args.base_name}.m3u8")
        all_valid = all_valid and valid
        table.add_row(name, "[green]yes[/green]" if valid else "[red]no[/red]", truncate_error(reason or "", 80))

    console.print(table)
    if not all_valid:
        sys.exit(1)


def cmd_forget(args):
    """Drop processed entries so the next scan re-checks the files."""
    store = ProcessedStateStore(config.STATE_FILE)
    try:
        if args.all:
            count = len(store)
            store.clear()
            print(f"Removed {count} processed entr{'y' if count == 1 else 'ies'}")
            return
        if not args.filename:
            raise CLIError("Give a filename or --all")
        key = Path(args.filename).name.lower()
        if not store.forget(key):
            raise CLIError(f"No processed entry for {key}")
        print(f"Forgot {key}")
    except CLIError as e:
        print(f"Error: {e}")
        sys.exit(1)


def main(argv=None):
    parser = argparse.ArgumentParser(prog="hlsync", description="hlsync - keep HLS renditions and database pointers in sync")
    parser.add_argument("--log-level", default=None, help=f"Logging level (default: {config.LOG_LEVEL})")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Watch uploads and scan the database until stopped")
    run_parser.set_defaults(func=cmd_run)

    scan_parser = subparsers.add_parser("scan", help="Scan the database once and process what it finds")
    scan_parser.set_defaults(func=cmd_scan)

    convert_parser = subparsers.add_parser("convert", help="Re-encode one upload now")
    convert_parser.add_argument("filename", help="Source filename under the upload root")
    convert_parser.set_defaults(func=cmd_convert)

    batch_parser = subparsers.add_parser("batch", help="Convert every owning row once (per-tier resume)")
    batch_parser.set_defaults(func=cmd_batch)

    status_parser = subparsers.add_parser("status", help="List processed videos")
    status_parser.add_argument(
        "--no-check", dest="check", action="store_false", help="Skip comparing entries against source files"
    )
    status_parser.set_defaults(func=cmd_status)

    validate_parser = subparsers.add_parser("validate", help="Validate a rendition on disk")
    validate_parser.add_argument("base_name", help="Rendition base name (source filename without extension)")
    validate_parser.add_argument("--hls-dir", help=f"Rendition root (default: {config.HLS_DIR})")
    validate_parser.set_defaults(func=cmd_validate)

    forget_parser = subparsers.add_parser("forget", help="Drop processed entries")
    forget_parser.add_argument("filename", nargs="?", help="Source filename to forget")
    forget_parser.add_argument("--all", action="store_true", help="Delete the whole processed-state file")
    forget_parser.set_defaults(func=cmd_forget)

    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
