import logging
import os
import shutil
import threading
from typing import Dict, Set

logger = logging.getLogger(__name__)


class ScratchSpace:
    """
    per-job working directories under <root>/<job_id>/ with inputs/ and output/

    inputs are reference counted: every holder acquires before touching them
    and releases afterwards. the inputs directory is removed only once the
    count is back to zero and the job has been marked terminal, whichever
    happens last; an output directory left empty goes with them. outputs
    are left for the retention sweep.
    """

    def __init__(self, root: str, staging_root: str):
        self.root = root
        self.staging_root = staging_root
        self._lock = threading.Lock()
        self._refs: Dict[str, int] = {}
        self._terminal: Set[str] = set()

    def job_dir(self, job_id: str) -> str:
        return os.path.join(self.root, job_id)

    def inputs_dir(self, job_id: str) -> str:
        return os.path.join(self.job_dir(job_id), "inputs")

    def output_dir(self, job_id: str) -> str:
        return os.path.join(self.job_dir(job_id), "output")

    def staging_dir(self) -> str:
        os.makedirs(self.staging_root, exist_ok=True)
        return self.staging_root

    def create(self, job_id: str) -> str:
        os.makedirs(self.inputs_dir(job_id), exist_ok=True)
        os.makedirs(self.output_dir(job_id), exist_ok=True)
        return self.job_dir(job_id)

    def adopt(self, job_id: str, staged_path: str, filename: str, index: int = 0) -> str:
        """move a staged upload into the job's inputs directory"""
        safe_name = os.path.basename(filename) or "input"
        # index prefix keeps two uploads with the same name apart
        dest = os.path.join(self.inputs_dir(job_id), f"{index}-{safe_name}")
        shutil.move(staged_path, dest)
        return dest

    def acquire(self, job_id: str):
        with self._lock:
            self._refs[job_id] = self._refs.get(job_id, 0) + 1

    def release(self, job_id: str):
        with self._lock:
            count = self._refs.get(job_id, 0) - 1
            if count > 0:
                self._refs[job_id] = count
                return
            self._refs.pop(job_id, None)
            ready = job_id in self._terminal
        if ready:
            self._cleanup_inputs(job_id)

    def mark_terminal(self, job_id: str):
        """the job's final state is persisted; inputs may go once nobody holds them"""
        with self._lock:
            self._terminal.add(job_id)
            ready = self._refs.get(job_id, 0) == 0
        if ready:
            self._cleanup_inputs(job_id)

    def holders(self, job_id: str) -> int:
        with self._lock:
            return self._refs.get(job_id, 0)

    def _cleanup_inputs(self, job_id: str):
        with self._lock:
            self._terminal.discard(job_id)
        path = self.inputs_dir(job_id)
        if os.path.exists(path):
            shutil.rmtree(path, ignore_errors=True)
            logger.info(f"removed inputs for job {job_id}")
        # compare jobs and failures leave nothing to retain
        self._rmdir_if_empty(self.output_dir(job_id))
        self.remove_empty_job_dir(job_id)

    def discard_output(self, job_id: str):
        """drop partial output of a job that did not succeed"""
        path = self.output_dir(job_id)
        if os.path.exists(path):
            shutil.rmtree(path, ignore_errors=True)

    def remove_job(self, job_id: str):
        path = self.job_dir(job_id)
        if os.path.exists(path):
            shutil.rmtree(path, ignore_errors=True)

    def remove_empty_job_dir(self, job_id: str):
        self._rmdir_if_empty(self.job_dir(job_id))

    def _rmdir_if_empty(self, path: str):
        try:
            if os.path.isdir(path) and not os.listdir(path):
                os.rmdir(path)
        except OSError as e:
            logger.warning(f"could not remove {path}: {e}")
