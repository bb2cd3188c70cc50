import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from vidproc.api.v1 import admin, health, jobs, ws
from vidproc.core.config import settings
from vidproc.core.errors import VidprocError
from vidproc.core.logging_config import configure_logging
from vidproc.runtime import get_coordinator, get_storage_manager
from vidproc.worker import WorkerPool

logger = logging.getLogger(__name__)

app = FastAPI(title=settings.PROJECT_NAME)

# embedded worker pool, when this process also runs jobs
worker_pool = None


@app.exception_handler(VidprocError)
def vidproc_error_handler(request: Request, exc: VidprocError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.kind, "detail": exc.message},
    )


@app.on_event("startup")
def on_startup():
    global worker_pool
    configure_logging()
    os.makedirs(settings.JOBS_DIR, exist_ok=True)
    os.makedirs(settings.STAGING_DIR, exist_ok=True)
    coordinator = get_coordinator()

    if settings.RUN_EMBEDDED_WORKERS:
        worker_pool = WorkerPool(coordinator, storage=get_storage_manager())
        worker_pool.start()
    else:
        logger.info("embedded workers disabled; run `python -m vidproc.worker` separately")


@app.on_event("shutdown")
def on_shutdown():
    global worker_pool
    if worker_pool is not None:
        worker_pool.stop()
        worker_pool = None


@app.get("/")
def read_root():
    return {
        "message": "vidproc media processing API",
        "endpoints": {
            "transcode": "POST /api/jobs/transcode",
            "compare": "POST /api/jobs/compare",
            "status": "GET /api/jobs/{job_id}",
            "cancel": "POST /api/jobs/{job_id}/cancel",
            "download": "GET /processed/{job_id}",
        },
    }

app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(jobs.router, prefix="/api/jobs", tags=["jobs"])
app.include_router(jobs.legacy_router, tags=["jobs"])
app.include_router(admin.router, prefix="/api/admin", tags=["admin"])
app.include_router(ws.router, prefix="/ws", tags=["websocket"])
