import io
import os
import threading
from datetime import timedelta

import numpy as np
from scipy.io import wavfile

from conftest import FakeEncoder, FakeSimilarityEngine, wait_for
from vidproc.models import JobKind, JobStatus, utcnow
from vidproc.services.ffmpeg import EncodeStatus
from vidproc.similarity import SimilarityEngine
from vidproc.worker import JobContext, WorkerPool


def _pool(coordinator, encoder=None, engine=None, **kwargs):
    kwargs.setdefault("size", 1)
    kwargs.setdefault("poll_interval", 0.05)
    kwargs.setdefault("max_retries", 3)
    kwargs.setdefault("retry_delay", 0.01)
    return WorkerPool(
        coordinator,
        encoder=encoder or FakeEncoder(),
        engine=engine or FakeSimilarityEngine(),
        **kwargs,
    )


def test_claim_next_takes_oldest_queued(coordinator, stage):
    first = coordinator.submit(JobKind.TRANSCODE, [stage()])
    coordinator.submit(JobKind.TRANSCODE, [stage()])
    pool = _pool(coordinator)

    job = pool.claim_next("w0")
    assert job.id == first
    assert job.status == "running"
    assert job.claimed_by == "w0"
    assert job.deadline_at is not None


def test_claim_next_with_empty_queue(coordinator):
    assert _pool(coordinator).claim_next("w0") is None


def test_transcode_succeeds(coordinator, store, scratch, stage):
    job_id = coordinator.submit(JobKind.TRANSCODE, [stage()], profile={"container": "mkv"})
    pool = _pool(coordinator)

    final = pool.run_job(pool.claim_next("w0"), "w0")

    assert final.status == "succeeded"
    assert final.progress_percent == 100
    assert final.attempts == 1
    assert final.output_path == os.path.join(scratch.output_dir(job_id), "output.mkv")
    assert os.path.exists(final.output_path)
    # inputs are gone once the job is terminal and nobody holds them
    assert not os.path.exists(scratch.inputs_dir(job_id))
    assert scratch.holders(job_id) == 0


def test_compare_records_similarity(coordinator, stage):
    job_id = coordinator.submit(JobKind.COMPARE, [stage("a.mp4"), stage("b.mp4")])
    engine = FakeSimilarityEngine(score=91.25)
    pool = _pool(coordinator, engine=engine)

    pool.run_job(pool.claim_next("w0"), "w0")

    state = coordinator.get_status(job_id)
    assert state.status == "succeeded"
    assert state.similarity.score == 91.25
    assert state.similarity.method == "video-phash"
    assert len(engine.calls) == 1


def test_transient_failures_are_retried(coordinator, stage):
    job_id = coordinator.submit(JobKind.TRANSCODE, [stage()])
    encoder = FakeEncoder(outcomes=[EncodeStatus.TRANSIENT, EncodeStatus.TRANSIENT])
    pool = _pool(coordinator, encoder=encoder)

    pool.run_job(pool.claim_next("w0"), "w0")

    job = coordinator.get_job(job_id)
    assert job.status == "succeeded"
    assert job.attempts == 3
    assert len(encoder.calls) == 3


def test_transient_failures_give_up_after_max_retries(coordinator, stage):
    job_id = coordinator.submit(JobKind.TRANSCODE, [stage()])
    encoder = FakeEncoder(outcomes=[EncodeStatus.TRANSIENT] * 10)
    pool = _pool(coordinator, encoder=encoder, max_retries=2)

    pool.run_job(pool.claim_next("w0"), "w0")

    job = coordinator.get_job(job_id)
    assert job.status == "failed"
    assert job.error_kind == "EncodeFailed"
    assert len(encoder.calls) == 3


def test_permanent_failure_is_not_retried(coordinator, scratch, stage):
    job_id = coordinator.submit(JobKind.TRANSCODE, [stage()])
    encoder = FakeEncoder(outcomes=[EncodeStatus.PERMANENT])
    pool = _pool(coordinator, encoder=encoder)

    pool.run_job(pool.claim_next("w0"), "w0")

    job = coordinator.get_job(job_id)
    assert job.status == "failed"
    assert job.error_kind == "EncodeFailed"
    assert "simulated permanent failure" in job.error_message
    assert len(encoder.calls) == 1
    assert not os.path.exists(scratch.output_dir(job_id))
    assert not os.path.exists(scratch.job_dir(job_id))


def test_deadline_fails_job_with_timeout(coordinator, scratch, stage):
    job_id = coordinator.submit(JobKind.TRANSCODE, [stage()], timeout_seconds=1)
    pool = _pool(coordinator, encoder=FakeEncoder(block=True))

    pool.run_job(pool.claim_next("w0"), "w0")

    job = coordinator.get_job(job_id)
    assert job.status == "failed"
    assert job.error_kind == "Timeout"
    assert not os.path.exists(scratch.inputs_dir(job_id))
    assert not os.path.exists(scratch.output_dir(job_id))


def test_cancel_running_job(coordinator, stage):
    job_id = coordinator.submit(JobKind.TRANSCODE, [stage()])
    encoder = FakeEncoder(block=True)
    pool = _pool(coordinator, encoder=encoder)
    job = pool.claim_next("w0")

    runner = threading.Thread(target=pool.run_job, args=(job, "w0"))
    runner.start()
    assert encoder.started.wait(5)

    coordinator.cancel(job_id)
    runner.join(10)
    assert not runner.is_alive()

    final = coordinator.get_job(job_id)
    assert final.status == "failed"
    assert final.error_kind == "Cancelled"


def test_concurrent_workers_finish_each_job_once(coordinator, store, stage):
    """several workers draining one queue: every job claimed and finished exactly once"""
    encoder = FakeEncoder()
    pool = _pool(coordinator, encoder=encoder, size=4)
    job_ids = [coordinator.submit(JobKind.TRANSCODE, [stage(f"clip{i}.mp4")]) for i in range(10)]

    pool.start()
    try:
        wait_for(lambda: store.count_by_status()["succeeded"] == 10)
    finally:
        pool.stop(timeout=5)

    assert len(encoder.calls) == 10
    assert len(set(encoder.calls)) == 10
    for job_id in job_ids:
        job = store.get(job_id)
        assert job.status == "succeeded"
        assert job.claimed_by.startswith(pool.pool_id)


def test_two_pools_share_one_store(coordinator, store, stage):
    """pools in different processes only coordinate through the store"""
    first, second = FakeEncoder(), FakeEncoder()
    pools = [_pool(coordinator, encoder=first, size=2), _pool(coordinator, encoder=second, size=2)]
    for i in range(8):
        coordinator.submit(JobKind.TRANSCODE, [stage(f"clip{i}.mp4")])

    for pool in pools:
        pool.start()
    try:
        wait_for(lambda: store.count_by_status()["succeeded"] == 8)
    finally:
        for pool in pools:
            pool.stop(timeout=5)

    assert len(first.calls) + len(second.calls) == 8


def test_recover_stale_jobs(coordinator, store, stage):
    job_id = coordinator.submit(JobKind.TRANSCODE, [stage()])
    store.compare_and_swap_status(
        job_id, JobStatus.QUEUED, JobStatus.RUNNING,
        claimed_by="gone-host:1:abc-w0",
        deadline_at=utcnow() - timedelta(hours=1),
    )

    assert _pool(coordinator).recover_stale_jobs() == 1
    job = store.get(job_id)
    assert job.status == "failed"
    assert job.error_kind == "Interrupted"


def test_job_context_checkpoint(coordinator, store, stage):
    job_id = coordinator.submit(JobKind.TRANSCODE, [stage()])
    job = store.get(job_id)
    ctx = JobContext(job, store, poll_interval=0)

    ctx.checkpoint()
    assert not ctx.should_stop()

    store.request_cancel(job_id)
    assert ctx.should_stop()


def _wav_bytes(seconds=3.0, seed=0):
    rng = np.random.default_rng(seed)
    samples = (rng.standard_normal(int(seconds * 11025)) * 8000).astype(np.int16)
    buffer = io.BytesIO()
    wavfile.write(buffer, 11025, samples)
    return buffer.getvalue()


def _audio_compare(coordinator, stage):
    content = _wav_bytes()
    return coordinator.submit(
        JobKind.COMPARE,
        [stage("a.wav", content=content), stage("b.wav", content=content)],
    )


def test_finished_compare_leaves_no_workspace(coordinator, scratch, stage):
    job_id = coordinator.submit(JobKind.COMPARE, [stage("a.mp4"), stage("b.mp4")])
    pool = _pool(coordinator)

    pool.run_job(pool.claim_next("w0"), "w0")

    assert coordinator.get_job(job_id).status == "succeeded"
    assert not os.path.exists(scratch.job_dir(job_id))


def test_compare_with_similarity_engine(coordinator, stage):
    job_id = _audio_compare(coordinator, stage)
    pool = _pool(coordinator, engine=SimilarityEngine())

    pool.run_job(pool.claim_next("w0"), "w0")

    state = coordinator.get_status(job_id)
    assert state.status == "succeeded"
    assert state.similarity.score == 100
    assert state.similarity.method == "audio-spectral-print"


def test_compare_cancelled_inside_similarity_engine(coordinator, store, scratch, stage):
    job_id = _audio_compare(coordinator, stage)
    pool = _pool(coordinator, engine=SimilarityEngine())
    job = pool.claim_next("w0")
    store.request_cancel(job_id)

    pool.run_job(job, "w0")

    final = store.get(job_id)
    assert final.status == "failed"
    assert final.error_kind == "Cancelled"
    assert final.similarity_score is None
    assert not os.path.exists(scratch.job_dir(job_id))


def test_compare_timed_out_inside_similarity_engine(coordinator, store, scratch, stage):
    job_id = _audio_compare(coordinator, stage)
    pool = _pool(coordinator, engine=SimilarityEngine())
    job = pool.claim_next("w0")
    # deadline already passed when the worker starts
    job.timeout_seconds = 0

    pool.run_job(job, "w0")

    final = store.get(job_id)
    assert final.status == "failed"
    assert final.error_kind == "Timeout"
    assert not os.path.exists(scratch.job_dir(job_id))
