import numpy as np
from dataclasses import dataclass


@dataclass
class Fingerprint:
    """sampled perceptual hashes of one input"""
    times: np.ndarray  # [N] sample timestamps in seconds, ascending
    bits: np.ndarray  # [N, B] boolean hash bits per sample
    duration: float  # seconds

    def __len__(self) -> int:
        return len(self.times)


def nearest_indices(src_times: np.ndarray, dst_times: np.ndarray) -> np.ndarray:
    """for every src timestamp, the index of the closest dst timestamp"""
    if len(dst_times) == 1:
        return np.zeros(len(src_times), dtype=int)
    right = np.clip(np.searchsorted(dst_times, src_times), 1, len(dst_times) - 1)
    left = right - 1
    choose_left = (src_times - dst_times[left]) <= (dst_times[right] - src_times)
    return np.where(choose_left, left, right)


def hamming_fraction(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """normalized hamming distance per row, 0 = identical, 1 = every bit differs"""
    return np.mean(a != b, axis=-1)


def directional_similarity(src: Fingerprint, dst: Fingerprint) -> float:
    """
    mean per-sample similarity of src against its nearest-in-time dst samples

    hashes of unrelated content disagree on about half their bits, so a
    distance of 0.5 maps to zero similarity and 0 maps to one
    """
    idx = nearest_indices(src.times, dst.times)
    distances = hamming_fraction(src.bits, dst.bits[idx])
    return float(np.mean(np.clip(1.0 - 2.0 * distances, 0.0, 1.0)))


def duration_cap(duration_a: float, duration_b: float, tolerance: float) -> float:
    """highest score two inputs of these lengths may get (100 = no cap)"""
    ratio = min(duration_a, duration_b) / max(duration_a, duration_b)
    if 1.0 - ratio > tolerance:
        return 100.0 * ratio
    return 100.0


def score_fingerprints(a: Fingerprint, b: Fingerprint, tolerance: float):
    """
    0-100 similarity of two fingerprints

    returns (score, capped) where capped says the duration mismatch limited
    the score
    """
    raw = 100.0 * (directional_similarity(a, b) + directional_similarity(b, a)) / 2.0
    cap = duration_cap(a.duration, b.duration, tolerance)
    if raw > cap:
        return cap, True
    return raw, False
