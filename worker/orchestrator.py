"""
Single-flight transcode orchestration.

The filesystem watcher and the database scanner both hand jobs to one
TranscodeOrchestrator. Jobs are deduplicated by case-normalised filename
and processed one at a time in order of first discovery. All orchestrator
state is only touched from the event loop thread.
"""

import asyncio
import logging
import shutil
import uuid
from collections import OrderedDict
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from config import (
    ENCODE_RETRIES,
    HLS_DIR,
    POINTER_PREFIX,
    STABILITY_REQUEUE_BACKOFF,
    STABILITY_REQUEUE_LIMIT,
)
from store.processed_state import ProcessedStateStore
from worker.alerts import alert_job_failed, get_metrics, send_alert_fire_and_forget
from worker.assets import VideoAsset, base_name_of, normalize_key, pointer_for
from worker.encoder import RenditionEncoder, probe_source
from worker.errors import (
    EncodeError,
    OwnerNotFoundError,
    PersistenceError,
    RenditionValidationError,
    TranscodeError,
    UnstableSourceError,
)
from worker.jobs import Job, JobKind, JobStep, JobTrigger
from worker.locator import AssetLocator
from worker.stability import StabilityMonitor, StabilityResult
from worker.validator import validate_rendition

logger = logging.getLogger(__name__)


class WorkerState:
    """
    Mutable lifecycle state for one worker process.

    Kept separate from the orchestrator so signal handlers and the service
    runner can request shutdown without holding a reference to the queue.
    """

    def __init__(self, worker_id: Optional[str] = None):
        self.worker_id = worker_id or str(uuid.uuid4())
        self.shutdown_requested = False
        self.wakeup: Optional[asyncio.Event] = None

    def request_shutdown(self):
        """Request graceful shutdown; the active job is allowed to finish."""
        self.shutdown_requested = True
        if self.wakeup is not None:
            self.wakeup.set()


class TranscodeOrchestrator:
    def __init__(
        self,
        locator: AssetLocator,
        encoder: RenditionEncoder,
        processed: ProcessedStateStore,
        stability: Optional[StabilityMonitor] = None,
        hls_dir: Path = HLS_DIR,
        pointer_prefix: str = POINTER_PREFIX,
        encode_retries: int = ENCODE_RETRIES,
        requeue_limit: int = STABILITY_REQUEUE_LIMIT,
        requeue_backoff: float = STABILITY_REQUEUE_BACKOFF,
        state: Optional[WorkerState] = None,
    ):
        self.locator = locator
        self.encoder = encoder
        self.processed = processed
        self.stability = stability or StabilityMonitor()
        self.hls_dir = Path(hls_dir)
        self.pointer_prefix = pointer_prefix
        self.encode_retries = encode_retries
        self.requeue_limit = requeue_limit
        self.requeue_backoff = requeue_backoff
        self.state = state or WorkerState()

        self._pending: "OrderedDict[str, Job]" = OrderedDict()
        self._delayed: Dict[str, Tuple[asyncio.TimerHandle, Job]] = {}
        self._active: Optional[Job] = None
        # Keys that changed on disk while their job was active
        self._changed_while_active: Dict[str, Job] = {}
        self.finished: List[Job] = []

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    @property
    def active_job(self) -> Optional[Job]:
        return self._active

    @property
    def pending_count(self) -> int:
        return len(self._pending) + len(self._delayed)

    def _wake(self) -> None:
        if self.state.wakeup is not None:
            self.state.wakeup.set()

    def is_tracked(self, key: str) -> bool:
        """True while ``key`` is queued, waiting on a requeue backoff, or in flight."""
        return key in self._pending or key in self._delayed or (self._active is not None and self._active.key == key)

    def make_job(
        self,
        path: Path,
        kind: JobKind = JobKind.FRESH,
        trigger: JobTrigger = JobTrigger.FILESYSTEM,
        owner=None,
    ) -> Job:
        path = Path(path)
        return Job(path=path, key=normalize_key(path.name), kind=kind, trigger=trigger, owner=owner)

    def submit(self, job: Job) -> bool:
        """
        Queue ``job``. Returns False when a job for the same file is already
        queued or active; a queued duplicate is merged into the existing job.
        """
        metrics = get_metrics()
        if self._active is not None and self._active.key == job.key:
            if job.kind == JobKind.FORCED:
                # Revisit once the active job is done, in case it encoded stale bytes
                previous = self._changed_while_active.get(job.key)
                if previous is not None:
                    previous.merge(job)
                else:
                    self._changed_while_active[job.key] = job
            metrics.increment_deduplicated()
            logger.debug(f"{job.filename} already in flight, not queueing ({job.trigger.value})")
            return False

        existing = self._pending.get(job.key)
        if existing is None and job.key in self._delayed:
            existing = self._delayed[job.key][1]
        if existing is not None:
            existing.merge(job)
            metrics.increment_deduplicated()
            logger.debug(f"{job.filename} already queued, merged {job.trigger.value} trigger")
            return False

        self._pending[job.key] = job
        logger.info(f"Queued {job.kind.value} job for {job.filename} ({job.trigger.value})")
        self._wake()
        return True

    def _next_job(self) -> Optional[Job]:
        if not self._pending:
            return None
        _, job = self._pending.popitem(last=False)
        return job

    def _requeue_later(self, job: Job) -> None:
        job.requeues += 1
        job.advance(JobStep.QUEUED)
        delay = self.requeue_backoff * (2 ** (job.requeues - 1))
        logger.info(f"Requeueing {job.filename} in {delay:.1f}s (attempt {job.requeues}/{self.requeue_limit})")
        handle = asyncio.get_running_loop().call_later(delay, self._release_delayed, job.key)
        self._delayed[job.key] = (handle, job)

    def _release_delayed(self, key: str) -> None:
        entry = self._delayed.pop(key, None)
        if entry is None:
            return
        _, job = entry
        self._pending[key] = job
        self._wake()

    def cancel_delayed(self) -> int:
        """Drop jobs waiting on a requeue backoff. Returns how many were dropped."""
        count = len(self._delayed)
        for handle, _ in self._delayed.values():
            handle.cancel()
        self._delayed.clear()
        return count

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def rendition_dir(self, base_name: str) -> Path:
        return self.hls_dir / base_name

    def _remove_rendition(self, base_name: str) -> bool:
        if not base_name or base_name in (".", ".."):
            return False
        output_dir = self.rendition_dir(base_name)
        if not output_dir.exists():
            return False
        shutil.rmtree(output_dir)
        logger.info(f"Removed rendition directory {output_dir}")
        return True

    def handle_removed(self, path: Path) -> None:
        """Source deleted or moved away: drop its rendition, its entry and any queued job."""
        path = Path(path)
        key = normalize_key(path.name)
        dropped = self._pending.pop(key, None)
        delayed = self._delayed.pop(key, None)
        if delayed is not None:
            delayed[0].cancel()
            dropped = delayed[1]
        if dropped is not None:
            logger.info(f"Discarded queued job for removed file {path.name}")
        self._changed_while_active.pop(key, None)
        if self._active is not None and self._active.key == key:
            logger.warning(f"{path.name} removed while being encoded; its output may be left orphaned")
        self._remove_rendition(base_name_of(path.name))
        self.processed.forget(key)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Process jobs until shutdown is requested."""
        if self.state.wakeup is None:
            self.state.wakeup = asyncio.Event()
        logger.info("Transcode worker started")
        while not self.state.shutdown_requested:
            job = self._next_job()
            if job is None:
                self.state.wakeup.clear()
                await self.state.wakeup.wait()
                continue
            await self.process_job(job)
        logger.info("Transcode worker stopped")

    async def run_until_idle(self) -> None:
        """Process queued jobs (including requeued ones) until nothing is left."""
        while self._pending or self._delayed:
            job = self._next_job()
            if job is None:
                await asyncio.sleep(0.01)
                continue
            await self.process_job(job)

    async def process_job(self, job: Job) -> Job:
        if self._active is not None:
            raise RuntimeError(f"Cannot start {job.filename}: {self._active.filename} is still active")
        self._active = job
        try:
            await self._execute(job)
        except (OwnerNotFoundError, UnstableSourceError) as e:
            self._abandon(job, e.reason)
        except TranscodeError as e:
            self._record_failure(job, e.reason)
        except Exception as e:
            logger.exception(f"Unexpected error processing {job.filename}")
            self._record_failure(job, f"{type(e).__name__}: {e}")
        finally:
            self._active = None
            self._revisit_if_changed(job)
        if job.is_terminal:
            self.finished.append(job)
        return job

    def _abandon(self, job: Job, reason: str) -> None:
        """Untracked or unsettled sources are dropped without counting as failures."""
        step = job.step
        if not job.is_terminal:
            job.fail(reason)
        logger.warning(f"Abandoned {job.filename} during {step.value}: {reason}")

    def _record_failure(self, job: Job, reason: str) -> None:
        step = job.step
        if not job.is_terminal:
            job.fail(reason)
        logger.error(f"Job for {job.filename} failed during {step.value}: {reason}")
        get_metrics().increment_failed(job.key)
        send_alert_fire_and_forget(alert_job_failed(job.key, step.value, reason, job.trigger.value))

    def _revisit_if_changed(self, job: Job) -> None:
        follow_up = self._changed_while_active.pop(job.key, None)
        if follow_up is None or not follow_up.path.exists():
            return
        entry = self.processed.get(job.key)
        current = VideoAsset.from_path(follow_up.path)
        if entry is not None and current is not None and entry.matches(current.size, current.mtime_ns):
            return
        self.submit(follow_up)

    async def _execute(self, job: Job) -> None:
        base_name = base_name_of(job.filename)
        output_dir = self.rendition_dir(base_name)

        job.advance(JobStep.STABILITY_CHECK)
        if not job.path.exists():
            raise UnstableSourceError(f"{job.filename} no longer exists")
        result = await self.stability.wait_until_stable(job.path)
        if result == StabilityResult.TIMED_OUT:
            raise UnstableSourceError(f"{job.filename} did not stop changing")
        if result == StabilityResult.UNSTABLE:
            if job.requeues < self.requeue_limit:
                self._requeue_later(job)
                return
            raise UnstableSourceError(f"{job.filename} vanished during stability check {job.requeues + 1} times")

        # Stat taken now is what the processed entry records
        asset = VideoAsset.from_path(job.path)
        if asset is None:
            raise UnstableSourceError(f"{job.filename} vanished after stability check")

        job.advance(JobStep.VALIDATING_SOURCE)
        await probe_source(self.encoder.runner, job.path)
        owner = job.owner or await self.locator.resolve_owner(job.filename)
        if owner is None:
            raise OwnerNotFoundError(f"No owning row references {job.filename}")
        job.owner = owner
        pointer = pointer_for(base_name, self.pointer_prefix)

        if (
            job.kind == JobKind.FRESH
            and self.processed.is_current(job.key, asset.size, asset.mtime_ns)
            and validate_rendition(output_dir, base_name, self.encoder.tier_names)[0]
        ):
            logger.info(f"{job.filename} already has a current rendition, skipping encode")
        else:
            await self._encode_with_retry(job, asset, output_dir, base_name)

        job.advance(JobStep.PERSISTING_POINTER)
        try:
            await self.locator.owners.update_pointer(owner, pointer)
        except Exception as e:
            raise PersistenceError(f"Could not update {owner.describe()}: {e}") from e

        self.processed.record(job.key, asset.size, asset.mtime_ns, pointer)
        job.advance(JobStep.COMPLETED)
        get_metrics().increment_completed()
        logger.info(f"Completed {job.filename} -> {pointer} ({owner.describe()})")

    async def _encode_with_retry(self, job: Job, asset: VideoAsset, output_dir: Path, base_name: str) -> None:
        attempts = 1 + self.encode_retries
        last_error: Optional[TranscodeError] = None
        for attempt in range(1, attempts + 1):
            job.advance(JobStep.ENCODING)
            # Never mix new segments into a superseded rendition
            self._remove_rendition(base_name)
            self.processed.forget(job.key)
            try:
                await self.encoder.encode(asset.path, output_dir, base_name)
            except EncodeError as e:
                last_error = e
                logger.warning(f"Encode attempt {attempt}/{attempts} for {job.filename} failed: {e.reason}")
                continue

            job.advance(JobStep.VALIDATING_OUTPUT)
            valid, reason = validate_rendition(output_dir, base_name, self.encoder.tier_names)
            if valid:
                return
            last_error = RenditionValidationError(reason or "rendition invalid")
            logger.warning(f"Validation attempt {attempt}/{attempts} for {job.filename} failed: {reason}")

        raise last_error
