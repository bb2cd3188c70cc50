import os
import shutil
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from vidproc.core.config import settings
from vidproc.runtime import get_coordinator, get_storage_manager
from vidproc.services.coordinator import JobCoordinator
from vidproc.services.storage_manager import StorageManager

router = APIRouter()


@router.get("/")
def health_check():
    """basic liveness check"""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "vidproc"
    }


@router.get("/ready")
def readiness_check(coordinator: JobCoordinator = Depends(get_coordinator)):
    """comprehensive readiness check - verifies all dependencies"""
    checks = {}
    all_healthy = True

    # check database
    try:
        coordinator.store.count_queued()
        checks["database"] = {"status": "healthy", "message": "connected"}
    except Exception as e:
        checks["database"] = {"status": "unhealthy", "message": str(e)}
        all_healthy = False

    # check encoder binaries
    for name, binary in (("ffmpeg", settings.FFMPEG_PATH), ("ffprobe", settings.FFPROBE_PATH)):
        if shutil.which(binary):
            checks[name] = {"status": "healthy", "message": "found"}
        else:
            checks[name] = {"status": "unhealthy", "message": f"{binary} not found"}
            all_healthy = False

    # check scratch storage
    staging = coordinator.scratch.staging_dir()
    if os.access(staging, os.W_OK):
        checks["storage"] = {"status": "healthy", "message": "writable"}
    else:
        checks["storage"] = {"status": "unhealthy", "message": f"{staging} not writable"}
        all_healthy = False

    # check redis (optional: only used for job event notifications)
    if settings.REDIS_URL:
        try:
            from vidproc.services.event_publisher import get_redis_client
            get_redis_client().ping()
            checks["redis"] = {"status": "healthy", "message": "connected"}
        except Exception as e:
            checks["redis"] = {"status": "warning", "message": str(e)}
    else:
        checks["redis"] = {"status": "warning", "message": "not configured"}

    return {
        "status": "healthy" if all_healthy else "unhealthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks
    }


@router.get("/metrics")
def get_metrics(
    coordinator: JobCoordinator = Depends(get_coordinator),
    storage: StorageManager = Depends(get_storage_manager),
):
    """job and storage metrics"""
    counts = coordinator.store.count_by_status()
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "jobs": counts,
        "queue": {
            "depth": counts.get("queued", 0),
            "max_depth": coordinator.max_queue_depth,
        },
        "storage": storage.get_disk_usage(),
    }
