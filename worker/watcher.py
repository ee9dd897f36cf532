"""
Filesystem watcher for the upload root.

watchdog delivers events on its observer thread. The handler only filters
them and hands them to the event loop with call_soon_threadsafe; debouncing
and all orchestrator calls happen on the loop thread.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler, FileSystemMovedEvent
from watchdog.observers import Observer

from config import UPLOADS_DIR, WATCH_DEBOUNCE_DELAY, WATCH_DEPTH
from worker.assets import is_hidden, is_video_file, normalize_key
from worker.jobs import JobKind, JobTrigger
from worker.orchestrator import TranscodeOrchestrator

logger = logging.getLogger(__name__)


class UploadEventHandler(FileSystemEventHandler):
    """
    Turns filesystem events under the upload root into orchestrator jobs.

    created / moved-in   -> fresh job
    modified             -> forced job (unless the same debounce window saw a create)
    deleted / moved-out  -> rendition and processed entry removed
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        orchestrator: TranscodeOrchestrator,
        uploads_dir: Path = UPLOADS_DIR,
        depth: int = WATCH_DEPTH,
        debounce_delay: float = WATCH_DEBOUNCE_DELAY,
    ):
        super().__init__()
        self.loop = loop
        self.orchestrator = orchestrator
        self.uploads_dir = Path(uploads_dir).resolve()
        self.depth = depth
        self.debounce_delay = debounce_delay
        # Loop-thread only: key -> (latest path, kind, timer)
        self._pending: Dict[str, Tuple[Path, JobKind, asyncio.TimerHandle]] = {}

    # ------------------------------------------------------------------
    # Observer thread
    # ------------------------------------------------------------------

    def _relevant(self, raw_path) -> Optional[Path]:
        """Return the path if it is a visible video file within the depth bound."""
        path = Path(os.fsdecode(raw_path))
        try:
            relative = path.resolve().relative_to(self.uploads_dir)
        except (ValueError, OSError):
            return None
        if is_hidden(relative):
            return None
        if len(relative.parts) - 1 > self.depth:
            return None
        if not is_video_file(path.name):
            return None
        return path

    def _dispatch(self, callback, *args) -> None:
        self.loop.call_soon_threadsafe(callback, *args)

    def on_created(self, event: FileSystemEvent):
        path = None if event.is_directory else self._relevant(event.src_path)
        if path is not None:
            logger.info(f"[watcher] New file detected: {path.name}")
            self._dispatch(self._schedule, path, JobKind.FRESH)

    def on_modified(self, event: FileSystemEvent):
        path = None if event.is_directory else self._relevant(event.src_path)
        if path is not None:
            self._dispatch(self._schedule, path, JobKind.FORCED)

    def on_deleted(self, event: FileSystemEvent):
        path = None if event.is_directory else self._relevant(event.src_path)
        if path is not None:
            logger.info(f"[watcher] File removed: {path.name}")
            self._dispatch(self._removed, path)

    def on_moved(self, event: FileSystemMovedEvent):
        if event.is_directory:
            return
        src = self._relevant(event.src_path)
        dest = self._relevant(event.dest_path)
        if src is not None and (dest is None or normalize_key(src.name) != normalize_key(dest.name)):
            logger.info(f"[watcher] File moved out: {src.name}")
            self._dispatch(self._removed, src)
        if dest is not None:
            logger.info(f"[watcher] File moved in: {dest.name}")
            self._dispatch(self._schedule, dest, JobKind.FRESH)

    # ------------------------------------------------------------------
    # Event loop thread
    # ------------------------------------------------------------------

    def _schedule(self, path: Path, kind: JobKind) -> None:
        key = normalize_key(path.name)
        previous = self._pending.pop(key, None)
        if previous is not None:
            previous[2].cancel()
            # A create followed by writes is still one fresh upload
            if previous[1] == JobKind.FRESH:
                kind = JobKind.FRESH
        handle = self.loop.call_later(self.debounce_delay, self._flush, key)
        self._pending[key] = (path, kind, handle)

    def _flush(self, key: str) -> None:
        entry = self._pending.pop(key, None)
        if entry is None:
            return
        path, kind, _ = entry
        if not path.exists():
            return
        job = self.orchestrator.make_job(path, kind=kind, trigger=JobTrigger.FILESYSTEM)
        self.orchestrator.submit(job)

    def _removed(self, path: Path) -> None:
        entry = self._pending.pop(normalize_key(path.name), None)
        if entry is not None:
            entry[2].cancel()
        self.orchestrator.handle_removed(path)

    def cleanup(self) -> None:
        """Cancel pending debounce timers. Call from the loop thread."""
        for _, _, handle in self._pending.values():
            handle.cancel()
        self._pending.clear()


def start_upload_watcher(
    loop: asyncio.AbstractEventLoop,
    orchestrator: TranscodeOrchestrator,
    uploads_dir: Path = UPLOADS_DIR,
    depth: int = WATCH_DEPTH,
    debounce_delay: float = WATCH_DEBOUNCE_DELAY,
) -> Tuple[Optional[Observer], Optional[UploadEventHandler]]:
    """
    Start watching the upload root.

    Returns (observer, handler), or (None, None) if the observer could not be
    started; the periodic database scan still discovers files in that case.
    """
    handler = UploadEventHandler(loop, orchestrator, uploads_dir, depth=depth, debounce_delay=debounce_delay)
    try:
        observer = Observer()
        observer.schedule(handler, str(uploads_dir), recursive=depth > 0)
        observer.start()
    except OSError as e:
        logger.warning(f"Failed to start filesystem watcher on {uploads_dir}: {e}; relying on database scans")
        return None, None
    logger.info(f"Filesystem watcher started on: {uploads_dir} (depth {depth})")
    return observer, handler


def stop_upload_watcher(observer: Optional[Observer], handler: Optional[UploadEventHandler] = None) -> None:
    """Stop the filesystem watcher gracefully."""
    if observer is not None:
        observer.stop()
        observer.join(timeout=5)
    if handler is not None:
        handler.cleanup()
