"""
Long-running service: filesystem watcher + periodic database scan + one
transcode worker, all on a single event loop.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Optional

from databases import Database

import config
from store.database import database as default_database
from store.owners import OwnerRepository
from store.processed_state import ProcessedStateStore
from worker.alerts import alert_worker_shutdown, alert_worker_startup, send_alert_fire_and_forget
from worker.encoder import RenditionEncoder
from worker.jobs import Job, JobKind, JobTrigger
from worker.locator import AssetLocator
from worker.orchestrator import TranscodeOrchestrator, WorkerState
from worker.process import AsyncioProcessRunner, ProcessRunner
from worker.scanner import DatabaseScanner
from worker.watcher import start_upload_watcher, stop_upload_watcher

logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or config.LOG_LEVEL).upper(), logging.INFO),
        format=config.LOG_FORMAT,
    )


@dataclass
class Components:
    database: Database
    orchestrator: TranscodeOrchestrator
    scanner: DatabaseScanner


def build_components(
    database: Database = default_database,
    runner: Optional[ProcessRunner] = None,
    state: Optional[WorkerState] = None,
) -> Components:
    """Wire the pipeline from configuration."""
    owners = OwnerRepository(database, config.OWNING_COLUMNS)
    locator = AssetLocator(config.UPLOADS_DIR, owners)
    encoder = RenditionEncoder(runner or AsyncioProcessRunner())
    processed = ProcessedStateStore(config.STATE_FILE)
    orchestrator = TranscodeOrchestrator(locator, encoder, processed, hls_dir=config.HLS_DIR, state=state)
    scanner = DatabaseScanner(orchestrator)
    return Components(database=database, orchestrator=orchestrator, scanner=scanner)


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, state: WorkerState) -> None:
    def handle(sig: signal.Signals):
        logger.info(f"{sig.name} received, finishing current job and shutting down gracefully...")
        state.request_shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handle, sig)
        except (NotImplementedError, RuntimeError):
            # Not available on this platform / not the main thread
            pass


async def run_service(components: Optional[Components] = None) -> None:
    loop = asyncio.get_running_loop()
    components = components or build_components()
    orchestrator = components.orchestrator
    state = orchestrator.state
    state.wakeup = asyncio.Event()
    _install_signal_handlers(loop, state)

    await components.database.connect()
    logger.info(f"Connected to database; owning columns: {', '.join(str(c) for c in config.OWNING_COLUMNS)}")
    send_alert_fire_and_forget(alert_worker_startup(state.worker_id, [str(c) for c in config.OWNING_COLUMNS]))

    observer = handler = None
    if config.WATCH_ENABLED:
        observer, handler = start_upload_watcher(loop, orchestrator)

    worker_task = asyncio.create_task(orchestrator.run(), name="hlsync-worker")
    scanner_task = asyncio.create_task(components.scanner.run(), name="hlsync-scanner")
    try:
        await worker_task
    finally:
        state.request_shutdown()
        scanner_task.cancel()
        try:
            await scanner_task
        except asyncio.CancelledError:
            pass
        stop_upload_watcher(observer, handler)
        dropped = orchestrator.cancel_delayed() + orchestrator.pending_count
        if dropped:
            logger.info(f"{dropped} queued job(s) dropped; the next scan will rediscover them")
        await alert_worker_shutdown(state.worker_id, jobs_dropped=dropped)
        await components.database.disconnect()
        logger.info("Service stopped")


async def scan_and_drain(components: Optional[Components] = None) -> int:
    """One database scan, then process everything it queued. Returns jobs enqueued."""
    components = components or build_components()
    await components.database.connect()
    try:
        enqueued = await components.scanner.scan_once()
        await components.orchestrator.run_until_idle()
        return enqueued
    finally:
        await components.database.disconnect()


async def convert_file(filename: str, components: Optional[Components] = None) -> Optional[Job]:
    """Force one upload through the pipeline. Returns the finished job, or None if the file is not found."""
    components = components or build_components()
    orchestrator = components.orchestrator
    path = orchestrator.locator.locate(filename)
    if path is None:
        logger.error(f"{filename} not found under {orchestrator.locator.uploads_dir}")
        return None
    await components.database.connect()
    try:
        job = orchestrator.make_job(path, kind=JobKind.FORCED, trigger=JobTrigger.CLI)
        return await orchestrator.process_job(job)
    finally:
        await components.database.disconnect()
