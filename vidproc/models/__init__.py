from .jobs import Job, JobKind, JobStatus, TERMINAL_STATUSES, ALLOWED_TRANSITIONS, utcnow
from .media import MediaKind, MediaInput, EncodeProfile, SimilarityResult, JobState, classify_media_kind

__all__ = [
    'Job', 'JobKind', 'JobStatus', 'TERMINAL_STATUSES', 'ALLOWED_TRANSITIONS', 'utcnow',
    'MediaKind', 'MediaInput', 'EncodeProfile', 'SimilarityResult', 'JobState',
    'classify_media_kind',
]
