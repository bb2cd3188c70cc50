import threading
from datetime import timedelta, timezone

import pytest

from vidproc.core.errors import Conflict, NotFound
from vidproc.models import Job, JobKind, JobStatus, utcnow


def _queued_job(store, **fields):
    return store.put(Job(kind=JobKind.TRANSCODE.value, status=JobStatus.QUEUED.value, **fields))


def test_put_and_get(store):
    """a stored job reads back with its fields"""
    job = _queued_job(store, inputs=[{"path": "/tmp/a.mp4"}], timeout_seconds=30)
    loaded = store.get(job.id)
    assert loaded.status == "queued"
    assert loaded.inputs == [{"path": "/tmp/a.mp4"}]
    assert loaded.timeout_seconds == 30


def test_get_unknown_job(store):
    with pytest.raises(NotFound):
        store.get("does-not-exist")


def test_cas_moves_status_and_writes_fields(store):
    job = _queued_job(store)
    running = store.compare_and_swap_status(job.id, JobStatus.QUEUED, JobStatus.RUNNING, claimed_by="w0")
    assert running.status == "running"
    assert running.claimed_by == "w0"
    assert running.finished_at is None

    done = store.compare_and_swap_status(job.id, JobStatus.RUNNING, JobStatus.SUCCEEDED, output_path="/tmp/out.mp4")
    assert done.status == "succeeded"
    assert done.output_path == "/tmp/out.mp4"
    assert done.finished_at is not None


def test_cas_with_stale_expectation_conflicts(store):
    job = _queued_job(store)
    store.compare_and_swap_status(job.id, JobStatus.QUEUED, JobStatus.RUNNING)
    with pytest.raises(Conflict):
        store.compare_and_swap_status(job.id, JobStatus.QUEUED, JobStatus.RUNNING)


def test_terminal_state_is_never_overwritten(store):
    """once succeeded, a late failure report loses"""
    job = _queued_job(store)
    store.compare_and_swap_status(job.id, JobStatus.QUEUED, JobStatus.RUNNING)
    store.compare_and_swap_status(job.id, JobStatus.RUNNING, JobStatus.SUCCEEDED)

    with pytest.raises(Conflict):
        store.compare_and_swap_status(job.id, JobStatus.RUNNING, JobStatus.FAILED, error_kind="Timeout")

    assert store.get(job.id).status == "succeeded"
    assert store.get(job.id).error_kind is None


@pytest.mark.parametrize("expected, new", [
    (JobStatus.QUEUED, JobStatus.SUCCEEDED),
    (JobStatus.SUCCEEDED, JobStatus.FAILED),
    (JobStatus.FAILED, JobStatus.QUEUED),
    (JobStatus.RUNNING, JobStatus.QUEUED),
])
def test_disallowed_transitions(store, expected, new):
    job = _queued_job(store)
    with pytest.raises(Conflict):
        store.compare_and_swap_status(job.id, expected, new)
    assert store.get(job.id).status == "queued"


def test_cas_on_missing_job(store):
    with pytest.raises(NotFound):
        store.compare_and_swap_status("missing", JobStatus.QUEUED, JobStatus.RUNNING)


def test_concurrent_claims_have_one_winner(store):
    """many threads racing to claim the same job: exactly one wins"""
    job = _queued_job(store)
    winners, losers = [], []
    barrier = threading.Barrier(8)

    def claim(worker):
        barrier.wait()
        try:
            store.compare_and_swap_status(job.id, JobStatus.QUEUED, JobStatus.RUNNING, claimed_by=worker)
            winners.append(worker)
        except Conflict:
            losers.append(worker)

    threads = [threading.Thread(target=claim, args=(f"w{i}",)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(winners) == 1
    assert len(losers) == 7
    assert store.get(job.id).claimed_by == winners[0]


def test_update_fields_refuses_terminal_jobs(store):
    job = _queued_job(store)
    assert store.update_fields(job.id, progress_percent=10)
    store.compare_and_swap_status(job.id, JobStatus.QUEUED, JobStatus.FAILED, error_kind="Cancelled")

    assert not store.update_fields(job.id, progress_percent=50)
    assert store.get(job.id).progress_percent == 10


def test_update_fields_cannot_change_status(store):
    job = _queued_job(store)
    with pytest.raises(ValueError):
        store.update_fields(job.id, status="succeeded")


def test_cancel_flag(store):
    job = _queued_job(store)
    assert not store.is_cancel_requested(job.id)
    assert store.request_cancel(job.id)
    assert store.is_cancel_requested(job.id)


def test_queued_candidates_oldest_first(store):
    first = _queued_job(store, created_at=utcnow() - timedelta(minutes=5))
    second = _queued_job(store, created_at=utcnow() - timedelta(minutes=1))
    running = _queued_job(store)
    store.compare_and_swap_status(running.id, JobStatus.QUEUED, JobStatus.RUNNING)

    candidates = store.queued_candidates(limit=5)
    assert [job.id for job in candidates] == [first.id, second.id]


def test_counts(store):
    _queued_job(store)
    job = _queued_job(store)
    store.compare_and_swap_status(job.id, JobStatus.QUEUED, JobStatus.RUNNING)

    assert store.count_queued() == 1
    counts = store.count_by_status()
    assert counts == {"queued": 1, "running": 1, "succeeded": 0, "failed": 0}


def test_stale_running_and_retention_queries(store):
    job = _queued_job(store)
    store.compare_and_swap_status(
        job.id, JobStatus.QUEUED, JobStatus.RUNNING,
        deadline_at=utcnow() - timedelta(minutes=1),
    )
    assert [j.id for j in store.stale_running()] == [job.id]

    old = _queued_job(store)
    store.compare_and_swap_status(
        old.id, JobStatus.QUEUED, JobStatus.FAILED,
        finished_at=utcnow() - timedelta(hours=3),
    )
    assert [j.id for j in store.terminal_older_than(timedelta(hours=1))] == [old.id]
    assert store.delete_terminal_older_than(timedelta(hours=1)) == 1
    with pytest.raises(NotFound):
        store.get(old.id)


def test_timestamps_round_trip_as_utc(store):
    """aware utc timestamps are accepted on write and usable in range queries"""
    before = utcnow()
    job = _queued_job(store)
    store.compare_and_swap_status(
        job.id, JobStatus.QUEUED, JobStatus.RUNNING,
        started_at=before,
        deadline_at=before + timedelta(minutes=5),
    )

    loaded = store.get(job.id)
    for value in (loaded.created_at, loaded.updated_at, loaded.started_at, loaded.deadline_at):
        # sqlite hands naive values back on older sqlmodel releases
        aware = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        assert abs(aware - before) <= timedelta(minutes=5, seconds=5)

    assert store.stale_running(before + timedelta(minutes=1)) == []
    assert [j.id for j in store.stale_running(before + timedelta(minutes=10))] == [job.id]
