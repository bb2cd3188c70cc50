from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import func, update, delete
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from vidproc.core.errors import Conflict, NotFound
from vidproc.models import Job, JobStatus, ALLOWED_TRANSITIONS, TERMINAL_STATUSES, utcnow

_TERMINAL = [s.value for s in TERMINAL_STATUSES]


class JobStore:
    """
    durable job records

    compare_and_swap_status is the only way a status changes. it is a single
    conditional UPDATE, so two writers racing on the same job cannot both
    win: the loser gets Conflict.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def put(self, job: Job) -> Job:
        """insert a new job record"""
        with Session(self.engine) as session:
            session.add(job)
            session.commit()
            session.refresh(job)
            return job

    def get(self, job_id: str) -> Job:
        with Session(self.engine) as session:
            job = session.get(Job, job_id)
            if not job:
                raise NotFound(f"job {job_id} not found")
            return job

    def compare_and_swap_status(self, job_id: str, expected: JobStatus, new: JobStatus, **fields) -> Job:
        """
        move job_id from `expected` to `new`, writing `fields` in the same statement

        raises NotFound if the job does not exist, Conflict if its status is
        not `expected` (another writer got there first) or the transition is
        not allowed.
        """
        expected, new = JobStatus(expected), JobStatus(new)
        if (expected, new) not in ALLOWED_TRANSITIONS:
            raise Conflict(f"transition {expected.value} -> {new.value} is not allowed")

        now = utcnow()
        values = dict(fields, status=new.value, updated_at=now)
        if new.value in _TERMINAL:
            values.setdefault("finished_at", now)

        with self.engine.begin() as conn:
            result = conn.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == expected.value)
                .values(**values)
            )
            swapped = result.rowcount == 1

        if swapped:
            return self.get(job_id)

        with Session(self.engine) as session:
            job = session.get(Job, job_id)
            if not job:
                raise NotFound(f"job {job_id} not found")
            raise Conflict(f"job {job_id} is {job.status}, expected {expected.value}")

    def update_fields(self, job_id: str, **fields) -> bool:
        """update non-status fields of a job that is not terminal yet; returns False otherwise"""
        if "status" in fields:
            raise ValueError("use compare_and_swap_status to change status")
        fields["updated_at"] = utcnow()
        with self.engine.begin() as conn:
            result = conn.execute(
                update(Job)
                .where(Job.id == job_id, Job.status.not_in(_TERMINAL))
                .values(**fields)
            )
            return result.rowcount == 1

    def request_cancel(self, job_id: str) -> bool:
        """set the cooperative cancellation flag on a job that is still running"""
        return self.update_fields(job_id, cancel_requested=True)

    def is_cancel_requested(self, job_id: str) -> bool:
        with Session(self.engine) as session:
            flag = session.exec(select(Job.cancel_requested).where(Job.id == job_id)).first()
            return bool(flag)

    def queued_candidates(self, limit: int = 5) -> List[Job]:
        """oldest queued jobs; claiming them is still subject to CAS"""
        with Session(self.engine) as session:
            return list(session.exec(
                select(Job)
                .where(Job.status == JobStatus.QUEUED.value)
                .order_by(Job.created_at)
                .limit(limit)
            ).all())

    def count_by_status(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in JobStatus}
        with Session(self.engine) as session:
            rows = session.exec(select(Job.status, func.count(Job.id)).group_by(Job.status)).all()
            for status, count in rows:
                counts[status] = count
        return counts

    def count_queued(self) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count(Job.id)).where(Job.status == JobStatus.QUEUED.value)
            ).one()

    def list_jobs(self, status: Optional[str] = None, limit: int = 50) -> List[Job]:
        with Session(self.engine) as session:
            query = select(Job).order_by(Job.created_at.desc()).limit(limit)
            if status:
                query = query.where(Job.status == status)
            return list(session.exec(query).all())

    def stale_running(self, now: Optional[datetime] = None) -> List[Job]:
        """running jobs whose deadline passed (their worker is gone or stuck)"""
        now = now or utcnow()
        with Session(self.engine) as session:
            return list(session.exec(
                select(Job).where(Job.status == JobStatus.RUNNING.value, Job.deadline_at < now)
            ).all())

    def terminal_older_than(self, age: timedelta) -> List[Job]:
        cutoff = utcnow() - age
        with Session(self.engine) as session:
            return list(session.exec(
                select(Job).where(Job.status.in_(_TERMINAL), Job.finished_at < cutoff)
            ).all())

    def delete_terminal_older_than(self, age: timedelta) -> int:
        cutoff = utcnow() - age
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(Job).where(Job.status.in_(_TERMINAL), Job.finished_at < cutoff)
            )
            return result.rowcount
