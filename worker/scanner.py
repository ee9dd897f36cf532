"""
Periodic reconciliation of owning rows against renditions on disk.

Catches everything the filesystem watcher cannot: rows inserted after their
file arrived, pointers cleared by hand, files copied while the service was
down, and renditions left behind by a crash before the pointer was written.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Dict, Optional

from config import SCAN_INTERVAL
from store.owners import OwningRecord
from worker.assets import VideoAsset, base_name_of, is_video_file, master_playlist_name, normalize_key, pointer_for
from worker.jobs import JobKind, JobTrigger
from worker.orchestrator import TranscodeOrchestrator
from worker.validator import validate_rendition

logger = logging.getLogger(__name__)


class DatabaseScanner:
    def __init__(self, orchestrator: TranscodeOrchestrator, interval: float = SCAN_INTERVAL):
        self.orchestrator = orchestrator
        self.interval = interval
        self._scan_lock = asyncio.Lock()

    @property
    def locator(self):
        return self.orchestrator.locator

    async def scan_once(self) -> int:
        """Run one pass over every owning column. Returns the number of jobs enqueued."""
        if self._scan_lock.locked():
            logger.debug("Scan already running, skipping")
            return 0
        async with self._scan_lock:
            index = self.locator.build_index()
            enqueued = 0
            for owning_column in self.locator.owners.owning_columns:
                try:
                    records = await self.locator.owners.fetch_rows(owning_column)
                except Exception as e:
                    logger.error(f"Scan of {owning_column} failed: {e}")
                    continue
                for record in records:
                    try:
                        if self._check_record(record, index):
                            enqueued += 1
                    except Exception:
                        logger.exception(f"Skipping malformed row {record.describe()}")
            if enqueued:
                logger.info(f"Scan enqueued {enqueued} job(s)")
            return enqueued

    def _check_record(self, record: OwningRecord, index: Dict[str, Path]) -> bool:
        source_value = record.source_value
        if not isinstance(source_value, str) or not source_value.strip():
            return False
        filename = os.path.basename(source_value.strip().replace("\\", "/"))
        if not is_video_file(filename):
            return False

        key = normalize_key(filename)
        if self.orchestrator.is_tracked(key):
            return False

        path = index.get(key)
        if path is None:
            logger.debug(f"{record.describe()} references {filename}, which is not on disk")
            return False

        # Rendition and pointer names follow the casing on disk, as the orchestrator does.
        base_name = base_name_of(path.name)
        expected = pointer_for(base_name, self.orchestrator.pointer_prefix)

        if record.current_pointer is None:
            kind: Optional[JobKind] = JobKind.FRESH
        elif record.current_pointer != expected:
            kind = JobKind.FORCED
        else:
            kind = self._check_current(key, path, base_name)

        if kind is None:
            return False
        job = self.orchestrator.make_job(path, kind=kind, trigger=JobTrigger.DB_SCAN, owner=record)
        return self.orchestrator.submit(job)

    def _check_current(self, key: str, path: Path, base_name: str) -> Optional[JobKind]:
        """Pointer already correct: decide whether the rendition behind it is still good."""
        asset = VideoAsset.from_path(path)
        if asset is None:
            return None
        processed = self.orchestrator.processed
        if processed.is_current(key, asset.size, asset.mtime_ns):
            return None

        if processed.get(key) is None:
            output_dir = self.orchestrator.rendition_dir(base_name)
            valid, _ = validate_rendition(output_dir, base_name, self.orchestrator.encoder.tier_names)
            master = output_dir / master_playlist_name(base_name)
            if valid and master.stat().st_mtime_ns >= asset.mtime_ns:
                processed.record(key, asset.size, asset.mtime_ns, pointer_for(base_name, self.orchestrator.pointer_prefix))
                logger.info(f"Adopted existing rendition for {path.name}")
                return None

        logger.info(f"{path.name} changed since its rendition was made, re-encoding")
        return JobKind.FORCED

    async def run(self) -> None:
        """Scan every ``interval`` seconds until shutdown is requested or the task is cancelled."""
        state = self.orchestrator.state
        while not state.shutdown_requested:
            try:
                await self.scan_once()
            except Exception:
                logger.exception("Database scan failed")
            await asyncio.sleep(self.interval)
