"""
One-shot batch conversion of every owning row.

Used for the initial backfill of an existing library, where the long-running
service would otherwise rediscover thousands of files one scan at a time.
Unlike the service, it resumes per tier: tiers already encoded from the
current source version are kept and only missing or broken ones are redone.
"""

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from store.owners import OwningRecord
from worker.assets import VideoAsset, base_name_of, is_video_file, normalize_key, pointer_for
from worker.encoder import probe_source
from worker.errors import RenditionValidationError, TranscodeError
from worker.orchestrator import TranscodeOrchestrator
from worker.validator import validate, validate_rendition

logger = logging.getLogger(__name__)


@dataclass
class BatchReport:
    converted: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def summary(self) -> str:
        return f"{len(self.converted)} converted, {len(self.skipped)} skipped, {len(self.failed)} failed"


def _has_output_older_than(output_dir: Path, mtime_ns: int) -> bool:
    if not output_dir.is_dir():
        return False
    for entry in os.scandir(output_dir):
        if entry.is_file() and entry.stat().st_mtime_ns < mtime_ns:
            return True
    return False


class BatchConverter:
    def __init__(self, orchestrator: TranscodeOrchestrator):
        self.orchestrator = orchestrator
        self.encoder = orchestrator.encoder
        self.locator = orchestrator.locator
        self.processed = orchestrator.processed

    async def run(self) -> BatchReport:
        report = BatchReport()
        index = self.locator.build_index()
        for owning_column in self.locator.owners.owning_columns:
            try:
                records = await self.locator.owners.fetch_rows(owning_column)
            except Exception as e:
                logger.error(f"Batch: reading {owning_column} failed: {e}")
                continue
            logger.info(f"Batch: {owning_column} has {len(records)} row(s)")
            for record in records:
                label = record.describe()
                try:
                    converted = await self.convert_record(record, index)
                except TranscodeError as e:
                    logger.error(f"Batch: conversion failed for {label}: {e.reason}")
                    report.failed.append(label)
                except Exception:
                    logger.exception(f"Batch: unexpected error for {label}")
                    report.failed.append(label)
                else:
                    (report.converted if converted else report.skipped).append(label)
        logger.info(f"Batch conversion completed: {report.summary()}")
        return report

    async def convert_record(self, record: OwningRecord, index) -> bool:
        """Bring one row up to date. Returns True if its pointer was written."""
        source_value = record.source_value
        if not isinstance(source_value, str):
            return False
        filename = os.path.basename(source_value.strip().replace("\\", "/"))
        if not is_video_file(filename):
            return False

        base_name = base_name_of(filename)
        output_dir = self.orchestrator.rendition_dir(base_name)
        tiers = self.encoder.tier_names

        if record.current_pointer and validate_rendition(output_dir, base_name, tiers)[0]:
            logger.info(f"Batch: valid rendition found, skipping {filename}")
            return False

        key = normalize_key(filename)
        path = index.get(key) or self.locator.locate(filename)
        if path is None:
            logger.warning(f"Batch: file not found for {record.describe()} ({source_value}), skipping")
            return False
        asset = VideoAsset.from_path(path)
        if asset is None:
            return False

        await probe_source(self.encoder.runner, path)

        if _has_output_older_than(output_dir, asset.mtime_ns):
            # Output from an older source version; never mix tiers of two versions
            logger.info(f"Batch: {filename} is newer than its rendition, starting over")
            shutil.rmtree(output_dir)
        self.processed.forget(key)

        for tier in self.encoder.ladder:
            if validate(output_dir, base_name, tier["name"]):
                logger.info(f"Batch: found valid {tier['name']} for {filename}, keeping it")
                continue
            await self.encoder.encode_tier(path, output_dir, base_name, tier)

        missing = [name for name in tiers if not validate(output_dir, base_name, name)]
        if missing:
            raise RenditionValidationError(f"{filename} incomplete for {', '.join(missing)}")

        self.encoder.write_master_playlist(output_dir, base_name)
        pointer = pointer_for(base_name, self.orchestrator.pointer_prefix)
        await self.locator.owners.update_pointer(record, pointer)
        self.processed.record(key, asset.size, asset.mtime_ns, pointer)
        logger.info(f"Batch: completed {filename} -> {pointer}")
        return True
