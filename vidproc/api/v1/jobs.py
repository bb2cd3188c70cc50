import logging
import mimetypes
import os
from typing import List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import FileResponse

from vidproc.core.config import settings
from vidproc.models import JobKind, JobState, MediaInput, classify_media_kind
from vidproc.runtime import get_coordinator
from vidproc.services.coordinator import JobCoordinator

logger = logging.getLogger(__name__)

router = APIRouter()
# paths of the original service, kept at the root
legacy_router = APIRouter()

CHUNK_SIZE = 1024 * 1024


def public_base_url(request: Request) -> str:
    return settings.PUBLIC_BASE_URL or str(request.base_url)


def stage_upload(upload: UploadFile, staging_dir: str, max_bytes: int = None) -> MediaInput:
    """stream an upload into the staging area, enforcing the size limit"""
    max_bytes = max_bytes or settings.MAX_UPLOAD_MB * 1024 * 1024
    filename = os.path.basename(upload.filename or "upload")
    staged_path = os.path.join(staging_dir, f"{uuid4().hex}-{filename}")

    size = 0
    with open(staged_path, "wb") as buffer:
        while True:
            chunk = upload.file.read(CHUNK_SIZE)
            if not chunk:
                break
            size += len(chunk)
            if size > max_bytes:
                buffer.close()
                os.remove(staged_path)
                raise HTTPException(status_code=413, detail=f"{filename} exceeds {max_bytes // (1024 * 1024)} MB")
            buffer.write(chunk)

    if size == 0:
        os.remove(staged_path)
        raise HTTPException(status_code=400, detail=f"{filename} is empty")

    return MediaInput(
        path=staged_path,
        filename=filename,
        media_kind=classify_media_kind(upload.content_type, filename),
        content_type=upload.content_type,
        size_bytes=size,
    )


def discard_staged(staged: List[MediaInput]):
    """remove staged files a job did not adopt"""
    for media in staged:
        if os.path.exists(media.path):
            os.remove(media.path)


def _accepted(job_id: str, request: Request) -> dict:
    base = public_base_url(request).rstrip("/")
    return {
        "job_id": job_id,
        "status": "queued",
        "status_url": f"{base}/api/jobs/{job_id}",
    }


@router.post("/transcode", status_code=202)
def submit_transcode(
    request: Request,
    video: UploadFile = File(...),
    video_codec: Optional[str] = Form(None),
    crf: Optional[int] = Form(None),
    preset: Optional[str] = Form(None),
    audio_codec: Optional[str] = Form(None),
    audio_bitrate_kbps: Optional[int] = Form(None),
    container: Optional[str] = Form(None),
    max_height: Optional[int] = Form(None),
    timeout_seconds: Optional[int] = Form(None),
    coordinator: JobCoordinator = Depends(get_coordinator),
):
    """accept one video plus an optional encode profile; returns a job id"""
    profile = {
        key: value for key, value in {
            "video_codec": video_codec,
            "crf": crf,
            "preset": preset,
            "audio_codec": audio_codec,
            "audio_bitrate_kbps": audio_bitrate_kbps,
            "container": container,
            "max_height": max_height,
        }.items() if value is not None
    }

    staged = []
    try:
        staged.append(stage_upload(video, coordinator.scratch.staging_dir()))
        job_id = coordinator.submit(JobKind.TRANSCODE, staged, profile, timeout_seconds)
    finally:
        discard_staged(staged)

    return _accepted(job_id, request)


@router.post("/compare", status_code=202)
def submit_compare(
    request: Request,
    file1: UploadFile = File(...),
    file2: UploadFile = File(...),
    timeout_seconds: Optional[int] = Form(None),
    coordinator: JobCoordinator = Depends(get_coordinator),
):
    """accept exactly two media files to compare; returns a job id"""
    staged = []
    try:
        for upload in (file1, file2):
            staged.append(stage_upload(upload, coordinator.scratch.staging_dir()))
        job_id = coordinator.submit(JobKind.COMPARE, staged, None, timeout_seconds)
    finally:
        discard_staged(staged)

    return _accepted(job_id, request)


@router.get("/")
def list_jobs(
    request: Request,
    status: Optional[str] = None,
    limit: int = Query(default=50, le=200),
    coordinator: JobCoordinator = Depends(get_coordinator),
):
    """recent jobs with per-status counts"""
    return coordinator.list_jobs(status=status, limit=limit, base_url=public_base_url(request))


@router.get("/{job_id}", response_model=JobState)
def get_job_status(job_id: str, request: Request, coordinator: JobCoordinator = Depends(get_coordinator)):
    return coordinator.get_status(job_id, base_url=public_base_url(request))


@router.post("/{job_id}/cancel", status_code=202, response_model=JobState)
def cancel_job(job_id: str, request: Request, coordinator: JobCoordinator = Depends(get_coordinator)):
    return coordinator.cancel(job_id, base_url=public_base_url(request))


legacy_router.add_api_route("/process-video", submit_transcode, methods=["POST"], status_code=202)
legacy_router.add_api_route("/compare-media", submit_compare, methods=["POST"], status_code=202)


@legacy_router.get("/processed/{job_id}")
def download_artifact(job_id: str, coordinator: JobCoordinator = Depends(get_coordinator)):
    """serve the output of a finished transcode while it is retained"""
    output_path = coordinator.artifact_path(job_id)
    if not output_path:
        raise HTTPException(status_code=404, detail="Output not available")

    ext = os.path.splitext(output_path)[1]
    media_type = mimetypes.guess_type(output_path)[0] or "application/octet-stream"
    return FileResponse(
        path=output_path,
        filename=f"processed-{job_id}{ext}",
        media_type=media_type,
    )
