import logging
import os
import subprocess
import tempfile
from math import gcd
from typing import Callable, Optional

import numpy as np
from scipy.fft import rfft, rfftfreq
from scipy.io import wavfile
from scipy.signal import get_window, resample_poly

from vidproc.core.config import settings
from vidproc.core.errors import UnreadableMedia
from .config import SimilarityConfig
from .fingerprint import Fingerprint

logger = logging.getLogger(__name__)


def _to_mono_float(audio_data: np.ndarray) -> np.ndarray:
    # convert to float and normalize
    if audio_data.dtype == np.int16:
        audio_data = audio_data.astype(np.float32) / 32768.0
    elif audio_data.dtype == np.int32:
        audio_data = audio_data.astype(np.float32) / 2147483648.0
    elif audio_data.dtype == np.uint8:
        audio_data = (audio_data.astype(np.float32) - 128.0) / 128.0
    else:
        audio_data = audio_data.astype(np.float32)

    if audio_data.ndim == 2:
        audio_data = audio_data.mean(axis=1)
    return audio_data


def load_audio(media_path: str, sample_rate: int, ffmpeg_path: str = None) -> np.ndarray:
    """
    decode any audio (or the audio track of a video) to mono float32 at sample_rate

    wav files are read directly; everything else goes through ffmpeg into a
    temp wav (mono, pcm 16-bit).
    """
    if media_path.lower().endswith(".wav"):
        try:
            source_rate, audio_data = wavfile.read(media_path)
        except (ValueError, OSError) as e:
            logger.info(f"scipy could not read {media_path} ({e}), decoding with ffmpeg")
        else:
            samples = _to_mono_float(audio_data)
            if source_rate != sample_rate and len(samples):
                g = gcd(int(source_rate), int(sample_rate))
                samples = resample_poly(samples, sample_rate // g, int(source_rate) // g).astype(np.float32)
            return samples

    with tempfile.NamedTemporaryFile(suffix=".wav", delete=False) as tmp:
        tmp_wav_path = tmp.name

    try:
        cmd = [
            ffmpeg_path or settings.FFMPEG_PATH,
            "-i", media_path,
            "-vn",  # no video
            "-acodec", "pcm_s16le",  # pcm 16-bit
            "-ar", str(sample_rate),
            "-ac", "1",  # mono
            "-y",
            tmp_wav_path
        ]

        result = subprocess.run(cmd, capture_output=True, text=True, errors="replace")
        if result.returncode != 0:
            raise UnreadableMedia(f"could not decode audio from {os.path.basename(media_path)}: {result.stderr[-500:]}")

        try:
            _, audio_data = wavfile.read(tmp_wav_path)
        except ValueError as e:
            raise UnreadableMedia(f"decoded audio is unreadable: {e}") from e

        return _to_mono_float(audio_data)

    finally:
        # cleanup temp file
        if os.path.exists(tmp_wav_path):
            os.remove(tmp_wav_path)


def band_edges_bins(config: SimilarityConfig) -> np.ndarray:
    """fft bin boundaries of the log-spaced analysis bands"""
    freqs = rfftfreq(config.audio_frame_length, 1.0 / config.audio_sample_rate)
    edges_hz = np.geomspace(config.audio_min_hz, config.audio_max_hz, config.audio_band_count + 1)
    return np.searchsorted(freqs, edges_hz)


def band_energies(frame: np.ndarray, edges: np.ndarray, window: np.ndarray) -> np.ndarray:
    spectrum = np.abs(rfft(frame * window)) ** 2
    # narrow low bands can fall between bins; take at least one
    return np.array([
        spectrum[lo:max(hi, lo + 1)].sum()
        for lo, hi in zip(edges[:-1], edges[1:])
    ])


def audio_fingerprint(
    samples: np.ndarray,
    config: Optional[SimilarityConfig] = None,
    checkpoint: Optional[Callable[[], None]] = None,
) -> Fingerprint:
    """
    spectral band-difference print of evenly spaced audio blocks

    algorithm:
    1. split the signal into `samples` evenly spaced blocks
    2. each block = 3 consecutive hann-windowed frames
    3. energy in 33 log-spaced bands between 300hz and 3khz per frame
    4. bit = sign of the change (between frames) of the energy difference
       between adjacent bands; two frame pairs -> 64 bits per block
    """
    config = config or SimilarityConfig()
    rate = config.audio_sample_rate
    frame_len = config.audio_frame_length

    if len(samples) < rate * 0.1:
        raise UnreadableMedia("audio is empty or shorter than 100ms")

    duration = len(samples) / rate
    span = 3 * frame_len
    if len(samples) < span:
        samples = np.pad(samples, (0, span - len(samples)))

    edges = band_edges_bins(config)
    window = get_window("hann", frame_len)
    times = (np.arange(config.samples) + 0.5) * duration / config.samples

    bits = []
    for t in times:
        if checkpoint:
            checkpoint()
        start = int(np.clip(t * rate - span / 2, 0, len(samples) - span))
        energies = [
            band_energies(samples[start + k * frame_len:start + (k + 1) * frame_len], edges, window)
            for k in range(3)
        ]
        words = []
        for prev, cur in zip(energies[:-1], energies[1:]):
            diff = (cur[:-1] - cur[1:]) - (prev[:-1] - prev[1:])
            words.append(diff > 0)
        bits.append(np.concatenate(words))

    return Fingerprint(times=times, bits=np.array(bits), duration=duration)


def audio_file_fingerprint(
    media_path: str,
    config: Optional[SimilarityConfig] = None,
    checkpoint: Optional[Callable[[], None]] = None,
    ffmpeg_path: str = None,
) -> Fingerprint:
    config = config or SimilarityConfig()
    samples = load_audio(media_path, config.audio_sample_rate, ffmpeg_path)
    return audio_fingerprint(samples, config, checkpoint)
