import logging
import os
import threading
from typing import List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from vidproc.core.config import settings
from vidproc.core.errors import Conflict, InvalidInput, Overloaded, ValidationError
from vidproc.models import (
    Job, JobKind, JobState, JobStatus, MediaInput, MediaKind, EncodeProfile, SimilarityResult,
)
from vidproc.models.jobs import new_job_id
from vidproc.services.event_publisher import publish_job_event
from vidproc.services.job_store import JobStore
from vidproc.services.workspace import ScratchSpace

logger = logging.getLogger(__name__)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def to_job_state(job: Job, base_url: str = "") -> JobState:
    """public view of a job record"""
    state = JobState(
        job_id=job.id,
        kind=job.kind,
        status=job.status,
        progress_percent=job.progress_percent,
        created_at=_iso(job.created_at),
        updated_at=_iso(job.updated_at),
        started_at=_iso(job.started_at),
        finished_at=_iso(job.finished_at),
        cancel_requested=job.cancel_requested,
        attempts=job.attempts,
    )
    if job.status == JobStatus.SUCCEEDED.value:
        if job.kind == JobKind.TRANSCODE.value and job.output_path:
            if os.path.exists(job.output_path):
                state.artifact_url = f"{base_url.rstrip('/')}/processed/{job.id}"
            else:
                # removed by the output retention sweep
                state.artifact_expired = True
        elif job.kind == JobKind.COMPARE.value and job.similarity_detail:
            state.similarity = SimilarityResult(**job.similarity_detail)
    elif job.status == JobStatus.FAILED.value:
        state.error_kind = job.error_kind
        state.error_message = job.error_message
    return state


class JobCoordinator:
    """
    accepts jobs, tracks their lifecycle, answers status queries

    job creation is serialized: the queue-depth check, id assignment, moving
    the uploads into the job workspace and inserting the queued record
    happen under one lock, and the record is committed before submit
    returns.
    """

    def __init__(
        self,
        store: JobStore,
        scratch: ScratchSpace,
        max_queue_depth: int = None,
        default_timeout: int = None,
        max_timeout: int = None,
    ):
        self.store = store
        self.scratch = scratch
        self.max_queue_depth = settings.MAX_QUEUE_DEPTH if max_queue_depth is None else max_queue_depth
        self.default_timeout = default_timeout or settings.JOB_TIMEOUT_SECONDS
        self.max_timeout = max_timeout or settings.MAX_JOB_TIMEOUT_SECONDS
        self.work_available = threading.Event()
        self._create_lock = threading.Lock()

    def _validate(
        self,
        kind: Union[str, JobKind],
        inputs: List[MediaInput],
        profile: Union[None, dict, EncodeProfile],
        timeout_seconds: Optional[int],
    ):
        try:
            kind = JobKind(kind)
        except ValueError:
            raise InvalidInput(f"unknown job kind '{kind}'")

        if kind == JobKind.TRANSCODE:
            if len(inputs) != 1:
                raise InvalidInput(f"transcode takes exactly one input, got {len(inputs)}")
            if inputs[0].media_kind != MediaKind.VIDEO:
                raise InvalidInput(f"transcode input must be a video, got {inputs[0].media_kind.value}")
            if profile is None:
                profile = EncodeProfile()
            elif not isinstance(profile, EncodeProfile):
                try:
                    profile = EncodeProfile(**profile)
                except PydanticValidationError as e:
                    raise ValidationError(str(e))
        else:
            if len(inputs) != 2:
                raise InvalidInput(f"compare takes exactly two inputs, got {len(inputs)}")
            kinds = {media.media_kind for media in inputs}
            if MediaKind.OTHER in kinds:
                raise InvalidInput("compare inputs must be audio or video")
            if len(kinds) != 1:
                raise InvalidInput("compare inputs must both be video or both be audio")
            if profile is not None:
                raise InvalidInput("compare jobs take no encode profile")

        if timeout_seconds is None:
            timeout_seconds = self.default_timeout
        if not 1 <= timeout_seconds <= self.max_timeout:
            raise ValidationError(f"timeout_seconds must be between 1 and {self.max_timeout}")

        return kind, profile, timeout_seconds

    def submit(
        self,
        kind: Union[str, JobKind],
        inputs: List[MediaInput],
        profile: Union[None, dict, EncodeProfile] = None,
        timeout_seconds: Optional[int] = None,
    ) -> str:
        """
        validate and enqueue a job, returning its id

        `inputs` point at staged files; on success they are moved into the
        job workspace, on failure they are left where they are for the
        caller to discard.
        """
        kind, profile, timeout_seconds = self._validate(kind, inputs, profile, timeout_seconds)

        with self._create_lock:
            queued = self.store.count_queued()
            if queued >= self.max_queue_depth:
                logger.warning(f"rejecting {kind.value} job: {queued} jobs queued (limit {self.max_queue_depth})")
                raise Overloaded(f"queue is full ({queued} jobs waiting)")

            job_id = new_job_id()
            self.scratch.create(job_id)
            try:
                adopted = []
                for index, media in enumerate(inputs):
                    path = self.scratch.adopt(job_id, media.path, media.filename, index)
                    adopted.append(media.model_copy(update={"path": path}))

                job = self.store.put(Job(
                    id=job_id,
                    kind=kind.value,
                    status=JobStatus.QUEUED.value,
                    inputs=[media.model_dump(mode="json") for media in adopted],
                    profile=profile.model_dump() if profile else None,
                    timeout_seconds=timeout_seconds,
                ))
            except Exception:
                self.scratch.remove_job(job_id)
                raise

        logger.info(f"queued {kind.value} job {job_id}")
        publish_job_event(job, "queued")
        self.work_available.set()
        return job_id

    def get_job(self, job_id: str) -> Job:
        return self.store.get(job_id)

    def get_status(self, job_id: str, base_url: str = "") -> JobState:
        return to_job_state(self.store.get(job_id), base_url)

    def cancel(self, job_id: str, base_url: str = "") -> JobState:
        """
        best effort: a queued job fails right away, a running job is flagged
        and stops at its worker's next checkpoint, a finished job is untouched
        """
        job = self.store.get(job_id)

        if job.status == JobStatus.QUEUED.value:
            try:
                job = self.store.compare_and_swap_status(
                    job_id, JobStatus.QUEUED, JobStatus.FAILED,
                    error_kind="Cancelled",
                    error_message="cancelled before processing started",
                )
                self.scratch.discard_output(job_id)
                self.scratch.mark_terminal(job_id)
                logger.info(f"cancelled queued job {job_id}")
                publish_job_event(job, "cancelled")
                return to_job_state(job, base_url)
            except Conflict:
                # a worker claimed it in the meantime
                job = self.store.get(job_id)

        if job.status == JobStatus.RUNNING.value:
            if self.store.request_cancel(job_id):
                logger.info(f"cancellation requested for running job {job_id}")
            job = self.store.get(job_id)

        return to_job_state(job, base_url)

    def list_jobs(self, status: Optional[str] = None, limit: int = 50, base_url: str = "") -> dict:
        jobs = self.store.list_jobs(status=status, limit=limit)
        return {
            "jobs": [to_job_state(job, base_url) for job in jobs],
            "summary": self.store.count_by_status(),
        }

    def artifact_path(self, job_id: str) -> Optional[str]:
        """location of a finished transcode's output, if it is still retained"""
        job = self.store.get(job_id)
        if job.status != JobStatus.SUCCEEDED.value or not job.output_path:
            return None
        if not os.path.exists(job.output_path):
            return None
        return job.output_path
