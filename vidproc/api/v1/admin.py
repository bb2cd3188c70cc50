from fastapi import APIRouter, Depends

from vidproc.runtime import get_storage_manager
from vidproc.services.storage_manager import StorageManager

router = APIRouter()


@router.get("/storage")
def get_storage_stats(storage: StorageManager = Depends(get_storage_manager)):
    """get current storage usage statistics"""
    return storage.get_disk_usage()


@router.post("/storage/cleanup")
def trigger_cleanup(storage: StorageManager = Depends(get_storage_manager)):
    """run the retention sweep now instead of waiting for the workers"""
    return {
        "success": True,
        "result": storage.run_cleanup()
    }
