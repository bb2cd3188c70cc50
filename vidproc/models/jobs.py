from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4
from sqlmodel import SQLModel, Field, Column, JSON
from typing import Optional, List


class JobKind(str, Enum):
    TRANSCODE = "transcode"
    COMPARE = "compare"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATUSES = {JobStatus.SUCCEEDED, JobStatus.FAILED}

# the only transitions the job store will perform
ALLOWED_TRANSITIONS = {
    (JobStatus.QUEUED, JobStatus.RUNNING),
    (JobStatus.QUEUED, JobStatus.FAILED),  # cancelled before a worker claimed it
    (JobStatus.RUNNING, JobStatus.SUCCEEDED),
    (JobStatus.RUNNING, JobStatus.FAILED),
}


def utcnow() -> datetime:
    """timezone-aware current time; job timestamps are always utc"""
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return uuid4().hex


class Job(SQLModel, table=True):
    __tablename__ = "jobs"
    id: str = Field(default_factory=new_job_id, primary_key=True)
    kind: str = Field(index=True)  # "transcode", "compare"
    status: str = Field(default=JobStatus.QUEUED.value, index=True)  # "queued", "running", "succeeded", "failed"

    inputs: List[dict] = Field(default_factory=list, sa_column=Column(JSON))  # serialized MediaInput list
    profile: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))  # serialized EncodeProfile

    # results
    output_path: Optional[str] = Field(default=None, nullable=True)
    similarity_score: Optional[float] = Field(default=None, nullable=True)
    similarity_method: Optional[str] = Field(default=None, nullable=True)
    similarity_detail: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))
    error_kind: Optional[str] = Field(default=None, nullable=True)
    error_message: Optional[str] = Field(default=None, nullable=True)

    progress_percent: int = Field(default=0)
    attempts: int = Field(default=0)
    timeout_seconds: int = Field(default=1800)
    deadline_at: Optional[datetime] = Field(default=None, nullable=True)
    cancel_requested: bool = Field(default=False)
    claimed_by: Optional[str] = Field(default=None, nullable=True)  # worker id

    started_at: Optional[datetime] = Field(default=None, nullable=True)
    finished_at: Optional[datetime] = Field(default=None, nullable=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)