import json
import logging
import os
import queue
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from vidproc.core.config import settings
from vidproc.core.errors import UnreadableMedia
from vidproc.models import EncodeProfile

logger = logging.getLogger(__name__)


def get_media_metadata(file_path: str, ffprobe_path: str = None) -> dict:
    """
    Extracts metadata from a media file using ffprobe.
    Returns a dict with: duration_sec, has_video, has_audio, fps, width, height

    raises UnreadableMedia when ffprobe cannot make sense of the file.
    FileNotFoundError (no ffprobe binary) propagates as-is.
    """
    cmd = [
        ffprobe_path or settings.FFPROBE_PATH,
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        file_path
    ]

    name = os.path.basename(file_path)
    try:
        # container tags are often latin-1; never let them break metadata parsing
        result = subprocess.run(
            cmd, capture_output=True, text=True, errors="replace", check=True, timeout=60
        )
        data = json.loads(result.stdout)
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, ValueError) as e:
        raise UnreadableMedia(f"ffprobe could not read {name}: {e}") from e

    streams = data.get("streams", [])
    video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)
    if not video_stream and not audio_stream:
        raise UnreadableMedia(f"no audio or video stream in {name}")

    try:
        fps = 0.0
        if video_stream:
            # Calculate FPS
            avg_frame_rate = video_stream.get("avg_frame_rate", "0/0")
            num, den = map(int, avg_frame_rate.split("/"))
            fps = num / den if den != 0 else 0.0

        duration_sec = float(data.get("format", {}).get("duration", 0) or 0)

        return {
            "duration_sec": duration_sec,
            "has_video": video_stream is not None,
            "has_audio": audio_stream is not None,
            "fps": fps,
            "width": int(video_stream.get("width", 0)) if video_stream else 0,
            "height": int(video_stream.get("height", 0)) if video_stream else 0,
        }
    except (ValueError, TypeError, AttributeError) as e:
        raise UnreadableMedia(f"unexpected ffprobe output for {name}: {e}") from e


class EncodeStatus(str, Enum):
    OK = "ok"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    STOPPED = "stopped"  # stop was requested and the encoder honoured it


@dataclass
class EncodeResult:
    """outcome of one encoder run; retry policy is decided by the caller"""
    status: EncodeStatus
    output_path: Optional[str] = None
    message: str = ""
    returncode: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status == EncodeStatus.OK


# stderr markers, checked in order
TRANSIENT_MARKERS = (
    "No space left on device",
    "Resource temporarily unavailable",
    "Cannot allocate memory",
    "Too many open files",
    "Connection refused",
    "Connection timed out",
)

PERMANENT_MARKERS = (
    "Unknown encoder",
    "Encoder not found",
    "Error while opening encoder",
    "Invalid data found when processing input",
    "moov atom not found",
    "does not contain any stream",
    "Could not find codec parameters",
    "No such file or directory",
)


def classify_failure(returncode: Optional[int], stderr_text: str) -> EncodeStatus:
    """map a failed encoder run onto transient/permanent"""
    if returncode is not None and returncode < 0:
        # killed by a signal (oom killer, host shutdown)
        return EncodeStatus.TRANSIENT
    for marker in TRANSIENT_MARKERS:
        if marker in stderr_text:
            return EncodeStatus.TRANSIENT
    for marker in PERMANENT_MARKERS:
        if marker in stderr_text:
            return EncodeStatus.PERMANENT
    return EncodeStatus.PERMANENT


def parse_progress_seconds(line: str) -> Optional[float]:
    """position in seconds from an ffmpeg -progress line, if it carries one"""
    key, _, value = line.strip().partition("=")
    # out_time_ms is in microseconds too (long-standing ffmpeg quirk)
    if key in ("out_time_us", "out_time_ms"):
        try:
            return int(value) / 1_000_000
        except ValueError:
            return None
    return None


class FFmpegEncoder:
    """
    external encode capability: input path + profile -> output path

    the process is treated as untrusted. every way it can fail, including
    a missing binary or a crash, comes back as an EncodeResult instead of
    an exception.
    """

    def __init__(self, ffmpeg_path: str = None, ffprobe_path: str = None, stop_grace: float = None):
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH
        self.ffprobe_path = ffprobe_path or settings.FFPROBE_PATH
        self.stop_grace = settings.ENCODE_STOP_GRACE if stop_grace is None else stop_grace

    def build_command(self, input_path: str, output_path: str, profile: EncodeProfile) -> list:
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-nostats",
            "-i", input_path,
            *profile.ffmpeg_args(),
            "-progress", "pipe:1",
            "-y", output_path,
        ]

    def encode(
        self,
        input_path: str,
        output_path: str,
        profile: EncodeProfile,
        on_progress: Optional[Callable[[int], None]] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> EncodeResult:
        try:
            duration = get_media_metadata(input_path, self.ffprobe_path)["duration_sec"]
        except UnreadableMedia as e:
            return EncodeResult(EncodeStatus.PERMANENT, message=str(e))
        except OSError as e:
            return EncodeResult(EncodeStatus.TRANSIENT, message=f"ffprobe unavailable: {e}")

        cmd = self.build_command(input_path, output_path, profile)
        logger.info(f"running encoder: {' '.join(cmd)}")
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except OSError as e:
            return EncodeResult(EncodeStatus.TRANSIENT, message=f"encoder unavailable: {e}")

        try:
            return self._supervise(process, output_path, duration, on_progress, should_stop)
        except Exception as e:
            logger.error(f"encoder supervision failed: {e}", exc_info=True)
            return EncodeResult(EncodeStatus.PERMANENT, message=f"encoder crashed: {e}")
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()

    def _supervise(self, process, output_path, duration, on_progress, should_stop) -> EncodeResult:
        lines: "queue.Queue[Optional[str]]" = queue.Queue()
        stderr_tail = deque(maxlen=50)

        def pump_stdout():
            try:
                for line in process.stdout:
                    lines.put(line)
            finally:
                # end of stream, even if the pipe broke
                lines.put(None)

        def pump_stderr():
            for line in process.stderr:
                stderr_tail.append(line)

        readers = [
            threading.Thread(target=pump_stdout, daemon=True),
            threading.Thread(target=pump_stderr, daemon=True),
        ]
        for reader in readers:
            reader.start()

        stop_sent_at = None
        last_percent = -1

        while True:
            try:
                line = lines.get(timeout=0.5)
            except queue.Empty:
                line = ""
            if line is None:
                break

            position = parse_progress_seconds(line) if line else None
            if position is not None and duration > 0 and on_progress:
                percent = min(99, int(position / duration * 100))
                if percent != last_percent:
                    last_percent = percent
                    on_progress(percent)

            if stop_sent_at is None and should_stop and should_stop():
                # "q" makes ffmpeg finish the container instead of dying mid-write
                logger.info("asking encoder to stop")
                stop_sent_at = time.monotonic()
                try:
                    process.stdin.write("q")
                    process.stdin.flush()
                except (BrokenPipeError, OSError):
                    pass
            elif stop_sent_at is not None and time.monotonic() - stop_sent_at > self.stop_grace:
                logger.warning("encoder ignored stop request, killing it")
                process.kill()

        try:
            returncode = process.wait(timeout=max(self.stop_grace, 1.0))
        except subprocess.TimeoutExpired:
            process.kill()
            returncode = process.wait()
        for reader in readers:
            reader.join(timeout=1.0)

        stderr_text = "".join(stderr_tail)
        if stop_sent_at is not None:
            return EncodeResult(EncodeStatus.STOPPED, message="stopped on request", returncode=returncode)

        if returncode == 0:
            if os.path.exists(output_path) and os.path.getsize(output_path) > 0:
                return EncodeResult(EncodeStatus.OK, output_path=output_path, returncode=0)
            return EncodeResult(EncodeStatus.PERMANENT, message="encoder produced no output", returncode=0)

        status = classify_failure(returncode, stderr_text)
        return EncodeResult(status, message=stderr_text.strip()[-2000:], returncode=returncode)
