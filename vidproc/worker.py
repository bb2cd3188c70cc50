"""
Worker pool that drains the job store.

Each worker thread claims the oldest queued job with a compare-and-swap on
its status, runs it (encode or compare), and writes exactly one terminal
state. Several processes may run pools against the same database
(`python -m vidproc.worker`); the claim CAS keeps them from sharing a job.
"""
import os
import socket
import threading
import time
from datetime import timedelta
from typing import Optional
from uuid import uuid4

from vidproc.core.config import settings
from vidproc.core.errors import (
    Cancelled, Conflict, EncodeFailed, NotFound, Timeout, TransientEncodeError,
    error_kind, handle_worker_error, retry_with_backoff,
)
from vidproc.core.logging_config import get_logger
from vidproc.models import EncodeProfile, Job, JobKind, JobStatus, MediaInput, utcnow
from vidproc.services.coordinator import JobCoordinator
from vidproc.services.event_publisher import publish_job_event
from vidproc.services.ffmpeg import EncodeStatus, FFmpegEncoder
from vidproc.services.storage_manager import StorageManager
from vidproc.similarity import SimilarityEngine

logger = get_logger(__name__)

# running jobs are only declared dead this long after their deadline
STALE_GRACE = timedelta(minutes=5)


class JobContext:
    """cooperative cancellation and deadline checks for one claimed job"""

    def __init__(self, job: Job, store, poll_interval: float = 1.0):
        self.job_id = job.id
        self.store = store
        self.deadline = time.monotonic() + job.timeout_seconds
        self.poll_interval = poll_interval
        self._last_poll = 0.0
        self._cancelled = False

    def cancel_requested(self) -> bool:
        now = time.monotonic()
        if not self._cancelled and now - self._last_poll >= self.poll_interval:
            self._last_poll = now
            self._cancelled = self.store.is_cancel_requested(self.job_id)
        return self._cancelled

    def expired(self) -> bool:
        return time.monotonic() >= self.deadline

    def should_stop(self) -> bool:
        return self.expired() or self.cancel_requested()

    def checkpoint(self):
        if self.expired():
            raise Timeout(f"job {self.job_id} exceeded its deadline")
        if self.cancel_requested():
            raise Cancelled(f"job {self.job_id} was cancelled")

    def sleep(self, seconds: float):
        """sleep that still honours cancellation and the deadline"""
        end = time.monotonic() + seconds
        while True:
            self.checkpoint()
            remaining = end - time.monotonic()
            if remaining <= 0:
                return
            time.sleep(min(0.2, remaining))


class WorkerPool:
    """fixed-size pool of worker threads claiming jobs from the store"""

    def __init__(
        self,
        coordinator: JobCoordinator,
        encoder: Optional[FFmpegEncoder] = None,
        engine: Optional[SimilarityEngine] = None,
        storage: Optional[StorageManager] = None,
        size: int = None,
        poll_interval: float = None,
        max_retries: int = None,
        retry_delay: float = None,
        sweep_interval: int = None,
    ):
        self.coordinator = coordinator
        self.store = coordinator.store
        self.scratch = coordinator.scratch
        self.encoder = encoder or FFmpegEncoder()
        self.engine = engine or SimilarityEngine()
        self.storage = storage
        self.size = size or settings.WORKER_COUNT
        self.poll_interval = settings.WORKER_POLL_INTERVAL if poll_interval is None else poll_interval
        self.max_retries = settings.ENCODE_MAX_RETRIES if max_retries is None else max_retries
        self.retry_delay = settings.ENCODE_RETRY_DELAY if retry_delay is None else retry_delay
        self.sweep_interval = sweep_interval or settings.SWEEP_INTERVAL

        self.pool_id = f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:6]}"
        self._threads = []
        self._stopping = threading.Event()
        self._sweep_lock = threading.Lock()
        self._last_sweep = 0.0

    # -------------------- lifecycle --------------------

    def start(self):
        self.recover_stale_jobs()
        self._stopping.clear()
        for i in range(self.size):
            worker_id = f"{self.pool_id}-w{i}"
            thread = threading.Thread(target=self._worker_loop, args=(worker_id,), name=worker_id, daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"worker pool {self.pool_id} started with {self.size} workers")

    def stop(self, timeout: float = 30.0):
        """stop claiming; running jobs finish first (up to timeout)"""
        self._stopping.set()
        self.coordinator.work_available.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info(f"worker pool {self.pool_id} stopped")

    def _worker_loop(self, worker_id: str):
        while not self._stopping.is_set():
            try:
                job = self.claim_next(worker_id)
            except Exception as e:
                logger.error(f"{worker_id}: could not claim a job: {e}", exc_info=True)
                self._stopping.wait(self.poll_interval)
                continue

            if job is None:
                self.maybe_sweep()
                if self.coordinator.work_available.wait(self.poll_interval):
                    self.coordinator.work_available.clear()
                continue

            try:
                self.run_job(job, worker_id)
            except Exception as e:
                # the store itself failed while recording the outcome
                logger.error(f"{worker_id}: job {job.id} left unrecorded: {e}", exc_info=True)

    # -------------------- claiming --------------------

    def claim_next(self, worker_id: str) -> Optional[Job]:
        """claim the oldest queued job; None if nothing is queued"""
        for candidate in self.store.queued_candidates(limit=5):
            now = utcnow()
            try:
                job = self.store.compare_and_swap_status(
                    candidate.id, JobStatus.QUEUED, JobStatus.RUNNING,
                    claimed_by=worker_id,
                    started_at=now,
                    deadline_at=now + timedelta(seconds=candidate.timeout_seconds),
                    progress_percent=0,
                )
            except (Conflict, NotFound):
                # another worker (or a cancel) got there first
                continue
            logger.info(f"{worker_id} claimed {job.kind} job {job.id}")
            publish_job_event(job, "running")
            return job
        return None

    # -------------------- execution --------------------

    def run_job(self, job: Job, worker_id: str) -> Job:
        """run a claimed job and write its terminal state; never raises"""
        self.scratch.acquire(job.id)
        ctx = JobContext(job, self.store)
        try:
            try:
                if job.kind == JobKind.TRANSCODE.value:
                    fields = self._run_transcode(job, ctx)
                else:
                    fields = self._run_compare(job, ctx)
                final = self.store.compare_and_swap_status(
                    job.id, JobStatus.RUNNING, JobStatus.SUCCEEDED, progress_percent=100, **fields
                )
                logger.info(f"{worker_id} finished job {job.id}")
            except Exception as e:
                handle_worker_error(job.id, e)
                self.scratch.discard_output(job.id)
                final = self._fail(job.id, e)
        finally:
            self.scratch.mark_terminal(job.id)
            self.scratch.release(job.id)

        if final is not None:
            publish_job_event(final, final.status)
        return final

    def _fail(self, job_id: str, error: Exception) -> Optional[Job]:
        try:
            return self.store.compare_and_swap_status(
                job_id, JobStatus.RUNNING, JobStatus.FAILED,
                error_kind=error_kind(error),
                error_message=str(error)[:2000],
            )
        except (Conflict, NotFound) as e:
            logger.warning(f"could not record failure of job {job_id}: {e}")
            return None

    def _run_transcode(self, job: Job, ctx: JobContext) -> dict:
        media = MediaInput(**job.inputs[0])
        profile = EncodeProfile(**(job.profile or {}))
        output_path = os.path.join(self.scratch.output_dir(job.id), f"output.{profile.container}")
        attempts = 0

        def report_progress(percent: int):
            self.store.update_fields(job.id, progress_percent=percent)

        def encode_once():
            nonlocal attempts
            ctx.checkpoint()
            attempts += 1
            self.store.update_fields(job.id, attempts=attempts)

            result = self.encoder.encode(
                media.path, output_path, profile,
                on_progress=report_progress,
                should_stop=ctx.should_stop,
            )
            if result.status == EncodeStatus.OK:
                return result
            if result.status == EncodeStatus.STOPPED:
                # raises Timeout or Cancelled, whichever asked for the stop
                ctx.checkpoint()
                raise Cancelled(f"encoder for job {job.id} stopped early")
            if os.path.exists(output_path):
                os.remove(output_path)
            if result.status == EncodeStatus.TRANSIENT:
                raise TransientEncodeError(result.message or "transient encoder failure")
            raise EncodeFailed(result.message or "encoder failed")

        encode = retry_with_backoff(
            max_retries=self.max_retries + 1,
            initial_delay=self.retry_delay,
            retry_on=(TransientEncodeError,),
            sleep=ctx.sleep,
        )(encode_once)

        result = encode()
        return {"output_path": result.output_path}

    def _run_compare(self, job: Job, ctx: JobContext) -> dict:
        input_a, input_b = [MediaInput(**media) for media in job.inputs]
        result = self.engine.compare(input_a, input_b, checkpoint=ctx.checkpoint)
        return {
            "similarity_score": result.score,
            "similarity_method": result.method,
            "similarity_detail": result.model_dump(),
        }

    # -------------------- housekeeping --------------------

    def recover_stale_jobs(self) -> int:
        """fail running jobs whose worker is gone (deadline long passed)"""
        recovered = 0
        for job in self.store.stale_running(utcnow() - STALE_GRACE):
            if job.claimed_by and job.claimed_by.startswith(self.pool_id):
                continue
            try:
                final = self.store.compare_and_swap_status(
                    job.id, JobStatus.RUNNING, JobStatus.FAILED,
                    error_kind="Interrupted",
                    error_message=f"worker {job.claimed_by} stopped before finishing",
                )
            except (Conflict, NotFound):
                continue
            self.scratch.discard_output(job.id)
            self.scratch.mark_terminal(job.id)
            publish_job_event(final, "interrupted")
            recovered += 1
        if recovered:
            logger.warning(f"marked {recovered} abandoned jobs as interrupted")
        return recovered

    def maybe_sweep(self):
        """retention sweep, at most once per sweep interval across the pool"""
        if not self.storage:
            return
        if time.monotonic() - self._last_sweep < self.sweep_interval:
            return
        if not self._sweep_lock.acquire(blocking=False):
            return
        try:
            self._last_sweep = time.monotonic()
            self.recover_stale_jobs()
            self.storage.run_cleanup()
        except Exception as e:
            logger.error(f"storage sweep failed: {e}", exc_info=True)
        finally:
            self._sweep_lock.release()


if __name__ == "__main__":
    from vidproc.core.logging_config import configure_logging
    from vidproc.runtime import get_coordinator, get_storage_manager

    configure_logging()
    pool = WorkerPool(get_coordinator(), storage=get_storage_manager())

    print(f"Starting worker pool {pool.pool_id} with {pool.size} workers")
    pool.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nShutting down worker pool...")
        pool.stop()
