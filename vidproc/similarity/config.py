from pydantic import BaseModel
import os


class SimilarityConfig(BaseModel):
    """tuning for the perceptual comparison engine"""

    # sampling
    samples: int = int(os.getenv("SIMILARITY_SAMPLES", "32"))  # frames / audio blocks per input
    frame_check_interval: int = 25  # decoded frames between cancellation checkpoints

    # video hashing
    hash_size: int = 8  # 8x8 low-frequency dct block -> 64-bit hash
    highfreq_factor: int = 4  # frames are shrunk to 32x32 before the dct

    # audio prints
    audio_sample_rate: int = int(os.getenv("AUDIO_SAMPLE_RATE", "11025"))
    audio_frame_length: int = 2048
    audio_band_count: int = 33  # 33 bands -> 32 difference bits per frame pair
    audio_min_hz: float = 300.0
    audio_max_hz: float = 3000.0

    # scoring
    duration_tolerance: float = float(os.getenv("DURATION_TOLERANCE", "0.1"))  # relative length mismatch before capping
