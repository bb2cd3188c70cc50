import json
import logging
from datetime import datetime, timezone
from typing import Optional

from vidproc.core.config import settings
from vidproc.models import Job

logger = logging.getLogger(__name__)

JOB_EVENTS_CHANNEL = "job_events"

# Lazy initialize Redis to avoid startup issues
_redis_client = None


def get_redis_client():
    global _redis_client
    if _redis_client is None:
        import redis
        _redis_client = redis.from_url(settings.REDIS_URL)
    return _redis_client


def job_event(job: Job, message: Optional[str] = None) -> dict:
    return {
        "type": "job_state",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "job_id": job.id,
        "kind": job.kind,
        "status": job.status,
        "progress_percent": job.progress_percent,
        "error_kind": job.error_kind,
        "message": message or "",
    }


def publish_job_event(job: Job, message: Optional[str] = None):
    """Publish a job state change to Redis for subscribers"""
    if not settings.REDIS_URL:
        return

    try:
        redis_client = get_redis_client()
        redis_client.publish(JOB_EVENTS_CHANNEL, json.dumps(job_event(job, message)))
    except Exception as e:
        # Don't fail the job if Redis publish fails - just log
        logger.warning(f"failed to publish job event for {job.id}: {e}")
