import cv2
import logging
import numpy as np
from typing import Callable, Dict, List, Optional, Tuple
from scipy.fft import dct

from vidproc.core.errors import UnreadableMedia
from vidproc.services.ffmpeg import get_media_metadata
from .config import SimilarityConfig
from .fingerprint import Fingerprint

logger = logging.getLogger(__name__)


def phash(frame: np.ndarray, hash_size: int = 8, highfreq_factor: int = 4) -> np.ndarray:
    """
    64-bit dct perceptual hash of a frame

    returns: np.ndarray [hash_size * hash_size] of bool

    algorithm:
    1. grayscale, shrink to 32x32 (drops detail re-encoding touches)
    2. 2d dct, keep the top-left 8x8 low frequencies
    3. bit = coefficient above the median of the block (dc term excluded)
    """
    if frame.ndim == 3:
        frame = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)

    size = hash_size * highfreq_factor
    small = cv2.resize(frame, (size, size), interpolation=cv2.INTER_AREA).astype(np.float64)
    coeffs = dct(dct(small, axis=0, norm="ortho"), axis=1, norm="ortho")
    low = coeffs[:hash_size, :hash_size].flatten()

    median = np.median(low[1:])
    return low > median


def sample_times(duration: float, n: int) -> np.ndarray:
    """n evenly spaced timestamps, each in the middle of its slice"""
    return (np.arange(n) + 0.5) * duration / n


# assumed frame rate when neither the container nor ffprobe reports one
FALLBACK_FPS = 25.0


def _ffprobe_timing(video_path: str, ffprobe_path: str = None) -> Tuple[float, float]:
    """(fps, duration) from ffprobe, zeros when it cannot tell"""
    try:
        metadata = get_media_metadata(video_path, ffprobe_path)
    except (UnreadableMedia, OSError) as e:
        logger.info(f"ffprobe could not time {video_path}: {e}")
        return 0.0, 0.0
    return metadata["fps"], metadata["duration_sec"]


def _count_frames(video_path: str, config: SimilarityConfig, checkpoint: Optional[Callable[[], None]]) -> int:
    """decode-only pass for streams that carry no frame count"""
    cap = cv2.VideoCapture(video_path)
    count = 0
    try:
        while True:
            if checkpoint and count % config.frame_check_interval == 0:
                checkpoint()
            if not cap.grab():
                break
            count += 1
    finally:
        cap.release()
    return count


def video_fingerprint(
    video_path: str,
    config: Optional[SimilarityConfig] = None,
    checkpoint: Optional[Callable[[], None]] = None,
    ffprobe_path: str = None,
) -> Fingerprint:
    """
    sample evenly spaced frames and hash each one

    frames are read sequentially (grab, retrieve only the wanted ones)
    since seeking is unreliable across codecs. checkpoint is called every
    few frames and may raise to abort.

    streamed webm/mkv (e.g. MediaRecorder output) often has no frame count
    in its header; the length then comes from ffprobe's duration, or from
    counting decoded frames when ffprobe cannot tell either.
    """
    config = config or SimilarityConfig()

    cap = cv2.VideoCapture(video_path)
    if not cap.isOpened():
        raise UnreadableMedia(f"could not open video: {video_path}")

    try:
        fps = cap.get(cv2.CAP_PROP_FPS)
        total_frames = int(cap.get(cv2.CAP_PROP_FRAME_COUNT))

        if fps <= 0 or total_frames <= 0:
            ffprobe_fps, ffprobe_duration = _ffprobe_timing(video_path, ffprobe_path)
            if fps <= 0:
                fps = ffprobe_fps
            if fps <= 0:
                logger.warning(f"no frame rate for {video_path}, assuming {FALLBACK_FPS}")
                fps = FALLBACK_FPS
            if total_frames <= 0 and ffprobe_duration > 0:
                total_frames = int(round(ffprobe_duration * fps))
            if total_frames <= 0:
                total_frames = _count_frames(video_path, config, checkpoint)
            if total_frames <= 0:
                raise UnreadableMedia(f"no decodable frames in {video_path}")

        duration = total_frames / fps
        targets = np.minimum((sample_times(duration, config.samples) * fps).astype(int), total_frames - 1)

        # frame index -> sample positions (short clips reuse a frame)
        wanted: Dict[int, List[int]] = {}
        for position, frame_idx in enumerate(targets):
            wanted.setdefault(int(frame_idx), []).append(position)

        hashes = [None] * config.samples
        times = np.zeros(config.samples)
        last_wanted = max(wanted)
        frame_idx = 0

        while frame_idx <= last_wanted:
            if checkpoint and frame_idx % config.frame_check_interval == 0:
                checkpoint()

            if not cap.grab():
                break

            if frame_idx in wanted:
                ret, frame = cap.retrieve()
                if ret and frame is not None:
                    bits = phash(frame, config.hash_size, config.highfreq_factor)
                    for position in wanted[frame_idx]:
                        hashes[position] = bits
                        times[position] = frame_idx / fps

            frame_idx += 1
    finally:
        cap.release()

    # container frame counts can overshoot; keep what was actually decoded
    kept = [i for i, h in enumerate(hashes) if h is not None]
    if not kept:
        raise UnreadableMedia(f"no decodable frames in {video_path}")
    if len(kept) < config.samples:
        logger.warning(f"decoded {len(kept)}/{config.samples} sampled frames from {video_path}")

    return Fingerprint(
        times=times[kept],
        bits=np.array([hashes[i] for i in kept]),
        duration=duration,
    )


def frames_fingerprint(frames: List[np.ndarray], fps: float, config: Optional[SimilarityConfig] = None) -> Fingerprint:
    """fingerprint of already decoded frames, sampled the same way as a video file"""
    config = config or SimilarityConfig()
    if not frames or fps <= 0:
        raise UnreadableMedia("no frames to fingerprint")

    duration = len(frames) / fps
    targets = np.minimum((sample_times(duration, config.samples) * fps).astype(int), len(frames) - 1)
    bits = np.array([phash(frames[i], config.hash_size, config.highfreq_factor) for i in targets])
    return Fingerprint(times=targets / fps, bits=bits, duration=duration)
