from vidproc.core.config import settings
from vidproc.core.db import get_engine, init_db
from vidproc.services.coordinator import JobCoordinator
from vidproc.services.job_store import JobStore
from vidproc.services.storage_manager import StorageManager
from vidproc.services.workspace import ScratchSpace

# process-wide instances, built on first use
_coordinator = None
_storage_manager = None


def get_coordinator() -> JobCoordinator:
    global _coordinator
    if _coordinator is None:
        init_db()
        store = JobStore(get_engine())
        scratch = ScratchSpace(settings.JOBS_DIR, settings.STAGING_DIR)
        _coordinator = JobCoordinator(store, scratch)
    return _coordinator


def get_storage_manager() -> StorageManager:
    global _storage_manager
    if _storage_manager is None:
        coordinator = get_coordinator()
        _storage_manager = StorageManager(coordinator.store, coordinator.scratch)
    return _storage_manager
