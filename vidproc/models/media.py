import mimetypes
import os
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator


class MediaKind(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"
    OTHER = "other"


def classify_media_kind(content_type: Optional[str], filename: Optional[str] = None) -> MediaKind:
    """classify an upload from its content type, falling back to the filename extension"""
    if not content_type or content_type == "application/octet-stream":
        guessed, _ = mimetypes.guess_type(filename or "")
        content_type = guessed or ""

    if content_type.startswith("video/"):
        return MediaKind.VIDEO
    if content_type.startswith("audio/"):
        return MediaKind.AUDIO

    # containers mimetypes does not know on every platform
    ext = os.path.splitext(filename or "")[1].lower()
    if ext in {".mkv", ".mov", ".mp4", ".webm", ".avi", ".m4v", ".ts"}:
        return MediaKind.VIDEO
    if ext in {".wav", ".mp3", ".flac", ".ogg", ".opus", ".m4a", ".aac"}:
        return MediaKind.AUDIO

    return MediaKind.OTHER


class MediaInput(BaseModel):
    """a stored upload owned by exactly one job"""
    path: str
    filename: str
    media_kind: MediaKind
    content_type: Optional[str] = None
    size_bytes: int = 0


X26X_PRESETS = {
    "ultrafast", "superfast", "veryfast", "faster", "fast",
    "medium", "slow", "slower", "veryslow",
}


class EncodeProfile(BaseModel):
    """target encode settings; defaults match the original service's ffmpeg call"""
    video_codec: Literal["libx264", "libx265", "libvpx-vp9", "mpeg4"] = "libx264"
    crf: int = Field(default=23, ge=0, le=63)
    preset: str = "medium"
    audio_codec: Literal["aac", "libopus", "libmp3lame", "copy", "none"] = "aac"
    audio_bitrate_kbps: int = Field(default=128, ge=32, le=512)
    container: Literal["mp4", "mkv", "webm", "mov"] = "mp4"
    max_height: Optional[int] = Field(default=None, ge=144, le=4320)

    @model_validator(mode="after")
    def check_combination(self):
        if self.video_codec != "libvpx-vp9" and self.crf > 51:
            raise ValueError(f"crf must be <= 51 for {self.video_codec}")
        if self.preset not in X26X_PRESETS:
            raise ValueError(f"unknown preset '{self.preset}'")
        if self.max_height is not None and self.max_height % 2:
            raise ValueError("max_height must be even")
        if self.container == "webm":
            if self.video_codec != "libvpx-vp9":
                raise ValueError("webm output requires libvpx-vp9")
            if self.audio_codec not in {"libopus", "none"}:
                raise ValueError("webm output requires libopus audio (or none)")
        return self

    def ffmpeg_args(self) -> list:
        """output options for this profile"""
        args = ["-c:v", self.video_codec]
        if self.video_codec == "libvpx-vp9":
            # constant quality mode needs an explicit zero bitrate
            args += ["-crf", str(self.crf), "-b:v", "0"]
        elif self.video_codec == "mpeg4":
            # mpeg4 has no crf; map 0-51 onto its 1-31 qscale range
            args += ["-q:v", str(max(1, min(31, round(self.crf * 31 / 51))))]
        else:
            args += ["-crf", str(self.crf), "-preset", self.preset]

        if self.max_height:
            args += ["-vf", f"scale=-2:'min({self.max_height},ih)'"]

        if self.audio_codec == "none":
            args += ["-an"]
        elif self.audio_codec == "copy":
            args += ["-c:a", "copy"]
        else:
            args += ["-c:a", self.audio_codec, "-b:a", f"{self.audio_bitrate_kbps}k"]

        if self.container in {"mp4", "mov"}:
            args += ["-movflags", "+faststart"]
        return args


class SimilarityResult(BaseModel):
    score: float = Field(ge=0, le=100)
    method: Literal["video-phash", "audio-spectral-print"]
    samples_compared: int
    duration_a: float
    duration_b: float
    duration_capped: bool = False


class JobState(BaseModel):
    """public view of a job"""
    job_id: str
    kind: str
    status: str
    progress_percent: int
    created_at: str
    updated_at: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    cancel_requested: bool = False
    attempts: int = 0
    artifact_url: Optional[str] = None
    artifact_expired: bool = False
    similarity: Optional[SimilarityResult] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
