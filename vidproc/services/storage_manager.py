import logging
import os
import shutil
import time
from datetime import timedelta
from typing import Tuple

from vidproc.core.config import settings
from vidproc.services.job_store import JobStore
from vidproc.services.workspace import ScratchSpace

logger = logging.getLogger(__name__)


class StorageManager:
    """enforces output and job retention on the scratch workspace"""

    def __init__(
        self,
        store: JobStore,
        scratch: ScratchSpace,
        output_retention_hours: int = None,
        job_retention_hours: int = None,
    ):
        self.store = store
        self.scratch = scratch
        self.output_retention = timedelta(hours=output_retention_hours or settings.OUTPUT_RETENTION_HOURS)
        self.job_retention = timedelta(hours=job_retention_hours or settings.JOB_RETENTION_HOURS)

    def get_disk_usage(self) -> dict:
        """get current disk usage statistics"""
        jobs_size = self._get_directory_size(self.scratch.root)
        staging_size = self._get_directory_size(self.scratch.staging_root)

        usage = {
            "jobs_gb": jobs_size / (1024**3),
            "staging_gb": staging_size / (1024**3),
            "total_gb": (jobs_size + staging_size) / (1024**3),
        }
        try:
            disk = shutil.disk_usage(self.scratch.root if os.path.exists(self.scratch.root) else "/")
            usage["disk_free_gb"] = disk.free / (1024**3)
            usage["disk_percent_used"] = (disk.used / disk.total) * 100 if disk.total else 0
        except OSError as e:
            logger.warning(f"could not read disk usage: {e}")
        return usage

    def _get_directory_size(self, path: str) -> int:
        """recursively calculate directory size in bytes"""
        total = 0
        if not os.path.exists(path):
            return 0
        try:
            for entry in os.scandir(path):
                if entry.is_file():
                    total += entry.stat().st_size
                elif entry.is_dir():
                    total += self._get_directory_size(entry.path)
        except OSError as e:
            logger.warning(f"error calculating size for {path}: {e}")
        return total

    def cleanup_expired_outputs(self) -> Tuple[int, int]:
        """
        delete workspaces of jobs that finished longer than the output retention ago
        returns: (workspaces_deleted, bytes_freed)
        """
        deleted = 0
        bytes_freed = 0
        for job in self.store.terminal_older_than(self.output_retention):
            path = self.scratch.job_dir(job.id)
            if not os.path.exists(path) or self.scratch.holders(job.id):
                continue
            size = self._get_directory_size(path)
            self.scratch.remove_job(job.id)
            deleted += 1
            bytes_freed += size
            logger.info(f"removed expired workspace of job {job.id}")
        return deleted, bytes_freed

    def cleanup_expired_jobs(self) -> int:
        """delete job records past the job retention window (and anything left on disk)"""
        for job in self.store.terminal_older_than(self.job_retention):
            self.scratch.remove_job(job.id)
        removed = self.store.delete_terminal_older_than(self.job_retention)
        if removed:
            logger.info(f"deleted {removed} expired job records")
        return removed

    def cleanup_staging(self, max_age_seconds: int = 3600) -> int:
        """remove staged uploads that were never adopted by a job"""
        root = self.scratch.staging_root
        if not os.path.exists(root):
            return 0
        cutoff = time.time() - max_age_seconds
        removed = 0
        for entry in os.scandir(root):
            try:
                if entry.is_file() and entry.stat().st_mtime < cutoff:
                    os.remove(entry.path)
                    removed += 1
            except OSError as e:
                logger.warning(f"error deleting {entry.path}: {e}")
        return removed

    def run_cleanup(self) -> dict:
        """
        run the retention sweep
        returns: summary of actions taken
        """
        logger.info("starting storage cleanup...")

        outputs_deleted, bytes_freed = self.cleanup_expired_outputs()
        jobs_deleted = self.cleanup_expired_jobs()
        staged_deleted = self.cleanup_staging()

        summary = {
            "outputs_deleted": outputs_deleted,
            "jobs_deleted": jobs_deleted,
            "staged_uploads_deleted": staged_deleted,
            "total_gb_freed": bytes_freed / (1024**3),
            "current_usage_gb": self.get_disk_usage()["total_gb"],
        }

        logger.info(f"cleanup complete: freed {summary['total_gb_freed']:.2f} GB")
        return summary
