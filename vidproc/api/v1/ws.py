import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from vidproc.core.config import settings
from vidproc.services.event_publisher import JOB_EVENTS_CHANNEL

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/jobs")
async def websocket_job_events(websocket: WebSocket, job_id: Optional[str] = None):
    """Stream job state changes via Redis pub/sub, optionally for a single job"""
    await websocket.accept()

    if not settings.REDIS_URL:
        await websocket.send_json({
            "type": "error",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "message": "job events are not enabled (REDIS_URL is not set)",
        })
        await websocket.close()
        return

    import redis.asyncio as aioredis

    redis = aioredis.from_url(settings.REDIS_URL)
    pubsub = redis.pubsub()
    try:
        await pubsub.subscribe(JOB_EVENTS_CHANNEL)

        # Send initial connection message
        await websocket.send_json({
            "type": "connected",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "job_id": job_id,
        })

        # Stream events
        async for message in pubsub.listen():
            if message['type'] != 'message':
                continue
            try:
                event = json.loads(message['data'])
            except ValueError as e:
                logger.warning(f"dropping malformed job event: {e}")
                continue
            if job_id and event.get("job_id") != job_id:
                continue
            await websocket.send_json(event)

    except WebSocketDisconnect:
        logger.info("client disconnected from job event stream")
    finally:
        await pubsub.unsubscribe(JOB_EVENTS_CHANNEL)
        await pubsub.close()
        await redis.close()
