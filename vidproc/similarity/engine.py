import logging
from typing import Callable, Optional

from vidproc.core.errors import InvalidInput
from vidproc.models import MediaInput, MediaKind, SimilarityResult
from .audio_print import audio_file_fingerprint
from .config import SimilarityConfig
from .fingerprint import Fingerprint, score_fingerprints
from .video_hash import video_fingerprint

logger = logging.getLogger(__name__)

METHODS = {
    MediaKind.VIDEO: "video-phash",
    MediaKind.AUDIO: "audio-spectral-print",
}


class SimilarityEngine:
    """
    perceptual comparison of two media inputs

    both inputs are decoded to the same sampled representation (evenly
    spaced frames or audio blocks), hashed, aligned by nearest timestamp
    and scored 0-100. file sizes and bytes are never looked at.
    """

    def __init__(
        self,
        config: Optional[SimilarityConfig] = None,
        ffmpeg_path: str = None,
        ffprobe_path: str = None,
    ):
        self.config = config or SimilarityConfig()
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path

    def fingerprint(self, media: MediaInput, checkpoint: Optional[Callable[[], None]] = None) -> Fingerprint:
        if media.media_kind == MediaKind.VIDEO:
            return video_fingerprint(media.path, self.config, checkpoint, self.ffprobe_path)
        if media.media_kind == MediaKind.AUDIO:
            return audio_file_fingerprint(media.path, self.config, checkpoint, self.ffmpeg_path)
        raise InvalidInput(f"cannot fingerprint media of kind '{media.media_kind.value}'")

    def compare(
        self,
        input_a: MediaInput,
        input_b: MediaInput,
        checkpoint: Optional[Callable[[], None]] = None,
    ) -> SimilarityResult:
        if input_a.media_kind != input_b.media_kind:
            raise InvalidInput(
                f"cannot compare {input_a.media_kind.value} with {input_b.media_kind.value}"
            )
        method = METHODS.get(input_a.media_kind)
        if method is None:
            raise InvalidInput(f"cannot compare media of kind '{input_a.media_kind.value}'")

        print_a = self.fingerprint(input_a, checkpoint)
        print_b = self.fingerprint(input_b, checkpoint)
        return self.compare_fingerprints(print_a, print_b, method)

    def compare_fingerprints(self, print_a: Fingerprint, print_b: Fingerprint, method: str) -> SimilarityResult:
        score, capped = score_fingerprints(print_a, print_b, self.config.duration_tolerance)
        logger.info(
            f"{method}: score {score:.2f} over {min(len(print_a), len(print_b))} samples"
            f"{' (capped by duration mismatch)' if capped else ''}"
        )
        return SimilarityResult(
            score=round(score, 2),
            method=method,
            samples_compared=min(len(print_a), len(print_b)),
            duration_a=round(print_a.duration, 3),
            duration_b=round(print_b.duration, 3),
            duration_capped=capped,
        )
