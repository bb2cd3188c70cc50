import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in {"1", "true", "yes", "on"}


class Settings:
    PROJECT_NAME: str = "vidproc"

    # storage paths
    DATA_DIR: str = os.getenv("DATA_DIR", "/data")
    JOBS_DIR: str = os.path.join(DATA_DIR, "jobs")
    STAGING_DIR: str = os.path.join(DATA_DIR, "staging")

    DATABASE_URL: str = os.getenv("DATABASE_URL", f"sqlite:///{os.path.join(DATA_DIR, 'vidproc.db')}")
    REDIS_URL: str = os.getenv("REDIS_URL", "")  # empty = job events are not published

    # external encoder
    FFMPEG_PATH: str = os.getenv("FFMPEG_PATH", "ffmpeg")
    FFPROBE_PATH: str = os.getenv("FFPROBE_PATH", "ffprobe")

    # worker pool
    WORKER_COUNT: int = int(os.getenv("WORKER_COUNT", "2"))
    RUN_EMBEDDED_WORKERS: bool = _env_bool("RUN_EMBEDDED_WORKERS", True)
    WORKER_POLL_INTERVAL: float = float(os.getenv("WORKER_POLL_INTERVAL", "2.0"))
    MAX_QUEUE_DEPTH: int = int(os.getenv("MAX_QUEUE_DEPTH", "100"))

    # per-job deadline
    JOB_TIMEOUT_SECONDS: int = int(os.getenv("JOB_TIMEOUT_SECONDS", "1800"))
    MAX_JOB_TIMEOUT_SECONDS: int = int(os.getenv("MAX_JOB_TIMEOUT_SECONDS", "7200"))

    # encode retry policy
    ENCODE_MAX_RETRIES: int = int(os.getenv("ENCODE_MAX_RETRIES", "3"))
    ENCODE_RETRY_DELAY: float = float(os.getenv("ENCODE_RETRY_DELAY", "2.0"))
    ENCODE_STOP_GRACE: float = float(os.getenv("ENCODE_STOP_GRACE", "10.0"))

    # retention
    OUTPUT_RETENTION_HOURS: int = int(os.getenv("OUTPUT_RETENTION_HOURS", "24"))
    JOB_RETENTION_HOURS: int = int(os.getenv("JOB_RETENTION_HOURS", "168"))
    SWEEP_INTERVAL: int = int(os.getenv("SWEEP_INTERVAL", "600"))

    MAX_UPLOAD_MB: int = int(os.getenv("MAX_UPLOAD_MB", "500"))
    PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "")  # empty = derive from request

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_DIR: str = os.getenv("LOG_DIR", "")  # empty = stdout only

settings = Settings()
