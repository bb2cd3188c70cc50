import os
import tempfile
import threading
import time

# settings are read at import time; keep tests off /data and away from redis
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="vidproc-test-"))
os.environ["REDIS_URL"] = ""
os.environ["RUN_EMBEDDED_WORKERS"] = "false"

import pytest

from vidproc.core.db import init_db, make_engine
from vidproc.models import MediaInput, SimilarityResult, classify_media_kind
from vidproc.services.coordinator import JobCoordinator
from vidproc.services.ffmpeg import EncodeResult, EncodeStatus
from vidproc.services.job_store import JobStore
from vidproc.services.storage_manager import StorageManager
from vidproc.services.workspace import ScratchSpace


class FakeEncoder:
    """stands in for ffmpeg; plays back a list of outcomes, then succeeds"""

    def __init__(self, outcomes=None, block=False):
        self.outcomes = list(outcomes or [])
        self.block = block
        self.calls = []
        self.started = threading.Event()
        self._lock = threading.Lock()

    def encode(self, input_path, output_path, profile, on_progress=None, should_stop=None):
        with self._lock:
            self.calls.append(input_path)
            status = self.outcomes.pop(0) if self.outcomes else EncodeStatus.OK
        self.started.set()

        if self.block:
            # behaves like a long encode that honours the stop request
            while not should_stop():
                time.sleep(0.05)
            return EncodeResult(EncodeStatus.STOPPED, message="stopped on request")

        if status != EncodeStatus.OK:
            return EncodeResult(status, message=f"simulated {status.value} failure", returncode=1)

        if on_progress:
            on_progress(50)
        with open(output_path, "wb") as f:
            f.write(b"encoded")
        return EncodeResult(EncodeStatus.OK, output_path=output_path, returncode=0)


class FakeSimilarityEngine:
    def __init__(self, score=87.5):
        self.score = score
        self.calls = []

    def compare(self, input_a, input_b, checkpoint=None):
        self.calls.append((input_a.path, input_b.path))
        if checkpoint:
            checkpoint()
        return SimilarityResult(
            score=self.score,
            method="video-phash",
            samples_compared=32,
            duration_a=10.0,
            duration_b=10.0,
        )


@pytest.fixture(name="engine")
def engine_fixture(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'jobs.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture(name="store")
def store_fixture(engine):
    return JobStore(engine)


@pytest.fixture(name="scratch")
def scratch_fixture(tmp_path):
    return ScratchSpace(str(tmp_path / "jobs"), str(tmp_path / "staging"))


@pytest.fixture(name="coordinator")
def coordinator_fixture(store, scratch):
    return JobCoordinator(store, scratch, max_queue_depth=10, default_timeout=60, max_timeout=600)


@pytest.fixture(name="storage")
def storage_fixture(store, scratch):
    return StorageManager(store, scratch, output_retention_hours=1, job_retention_hours=2)


@pytest.fixture(name="stage")
def stage_fixture(scratch):
    """write a file into the staging area and describe it as an upload"""
    def _stage(filename="clip.mp4", content=b"not really a video", content_type=None):
        path = os.path.join(scratch.staging_dir(), f"{time.monotonic_ns()}-{filename}")
        with open(path, "wb") as f:
            f.write(content)
        return MediaInput(
            path=path,
            filename=filename,
            media_kind=classify_media_kind(content_type, filename),
            content_type=content_type,
            size_bytes=len(content),
        )
    return _stage


def wait_for(predicate, timeout=10.0, interval=0.05):
    """poll until predicate() is truthy; fails the test on timeout"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(interval)
    pytest.fail(f"condition not met within {timeout}s")
