import logging
from typing import Callable, Any, Tuple, Type
from functools import wraps
import time

logger = logging.getLogger(__name__)


class VidprocError(Exception):
    """base exception for vidproc-specific errors"""
    kind: str = "Internal"
    status_code: int = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind


# raised synchronously at submission / lookup time

class InvalidInput(VidprocError):
    """request shape does not match the job kind"""
    kind = "InvalidInput"
    status_code = 400


class ValidationError(VidprocError):
    """encode profile out of the allowed ranges"""
    kind = "ValidationError"
    status_code = 422


class NotFound(VidprocError):
    kind = "NotFound"
    status_code = 404


class Overloaded(VidprocError):
    """queue depth exceeded"""
    kind = "Overloaded"
    status_code = 503


class Conflict(VidprocError):
    """concurrent state-transition race (or a disallowed transition)"""
    kind = "Conflict"
    status_code = 409


# recorded on the job and surfaced through status only

class UnreadableMedia(VidprocError):
    kind = "UnreadableMedia"


class EncodeFailed(VidprocError):
    kind = "EncodeFailed"


class TransientEncodeError(EncodeFailed):
    """encoder failure worth retrying"""
    pass


class Timeout(VidprocError):
    kind = "Timeout"


class Cancelled(VidprocError):
    kind = "Cancelled"


class Interrupted(VidprocError):
    """job was running in a process that went away"""
    kind = "Interrupted"


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
):
    """
    decorator to retry a function with exponential backoff

    only exceptions listed in retry_on are retried, everything else
    propagates on the first attempt. `sleep` may raise to abort the wait
    (e.g. on cancellation).

    usage:
        @retry_with_backoff(max_retries=5, initial_delay=2.0, retry_on=(TransientEncodeError,))
        def encode(job):
            # ... code that might fail ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            delay = initial_delay
            last_exception = None

            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    last_exception = e
                    if attempt < max_retries - 1:
                        logger.warning(
                            f"{func.__name__} failed (attempt {attempt + 1}/{max_retries}): {str(e)}. "
                            f"retrying in {delay}s..."
                        )
                        sleep(delay)
                        delay *= backoff_factor
                    else:
                        logger.error(
                            f"{func.__name__} failed after {max_retries} attempts: {str(e)}"
                        )

            # all retries exhausted
            raise last_exception

        return wrapper
    return decorator


def handle_worker_error(job_id: str, error: Exception):
    """
    centralized error handler for worker jobs
    expected failures are logged without a traceback
    """
    if isinstance(error, VidprocError):
        logger.error(f"job {job_id} failed: {error.kind}: {error.message}")
    else:
        logger.error(f"job {job_id} failed: {error}", exc_info=True)


def error_kind(error: BaseException) -> str:
    return error.kind if isinstance(error, VidprocError) else "Internal"
