"""
Operational API for the notification pipeline.

This application provides:
1. Worker lifecycle and health (/health, /worker/*)
2. Event publishing for upstream services (/events)
3. Delivery status lookups and stats (/notifications/*)
4. Admin operations: force retry and queue purge

Run with:
    uv run uvicorn api.main:app --reload

Then visit http://localhost:8000/docs for interactive API documentation.
"""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from shared.config import configure_logging, get_settings
from shared.errors import RecordNotFound, RetryNotAllowed
from shared.models import DeliveryRecord, PublishResult, parse_notification_data, utcnow
from pipeline.controller import PipelineController
from pipeline.producers import NotificationPublisher

logger = logging.getLogger("notification_api")


# Request/response models
class PublishEventRequest(BaseModel):
    """An event published by an upstream service."""
    type: str = Field(..., description="Event type, e.g. USER_REGISTRATION")
    user_id: str
    destination: str = Field(..., description="Email address or phone number")
    payload: dict[str, Any] = Field(default_factory=dict)
    occurrence_key: Optional[str] = Field(
        default=None,
        description="Identifies the business occurrence; defaults to the publish time",
    )
    event_id: Optional[str] = Field(default=None, description="Explicit dedup key")


class NotificationHistory(BaseModel):
    """A page of a user's delivery records."""
    user_id: str
    total: int
    limit: int
    offset: int
    notifications: list[DeliveryRecord]


class ForceRetryResponse(BaseModel):
    event_id: str
    status: str
    attempt_count: int
    next_retry_at: Optional[str] = None


# Global pipeline (can be overridden for testing)
_controller: Optional[PipelineController] = None


def get_controller() -> PipelineController:
    """Get the pipeline controller instance."""
    global _controller
    if _controller is None:
        _controller = PipelineController.from_settings()
    return _controller


def reset_api_state(controller: Optional[PipelineController] = None) -> None:
    """Replace the pipeline controller (for testing)."""
    global _controller
    _controller = controller


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the worker on startup (when configured) and stop it on shutdown."""
    configure_logging()
    settings = get_settings()
    controller = get_controller()
    logger.info("Starting notification pipeline API")
    if settings.autostart_worker:
        controller.start()
    yield
    if controller.is_running:
        controller.stop()
    logger.info("Shutting down")


app = FastAPI(
    title="Notification Pipeline",
    description="""
    Operational surface of the notification event pipeline.

    ## Endpoints

    - `/worker/*` - Start, stop and inspect the notification worker
    - `/events` - Publish a notification event (best-effort)
    - `/notifications/*` - Delivery status, history and stats
    - `/queue` - Purge the queue (irreversible)
    """,
    version="1.0.0",
    lifespan=lifespan,
)


# =============================================================================
# Health and worker lifecycle
# =============================================================================

@app.get("/health", tags=["Health"])
def health_check():
    """Healthy while the worker is running; 503 otherwise."""
    controller = get_controller()
    status = controller.status()
    healthy = status["worker_status"] == "running" and "error" not in status
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "service": "notification-pipeline",
        "worker_status": status["worker_status"],
        "queue_length": status.get("queue_length"),
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)


@app.get("/worker/status", tags=["Worker"])
def worker_status():
    """Worker status, queue length, configuration and recent counts."""
    return get_controller().status()


@app.post("/worker/start", tags=["Worker"])
def start_worker():
    """Start the worker. Starting a running worker is a no-op."""
    controller = get_controller()
    started = controller.start()
    return {
        "started": started,
        "message": "Worker started" if started else "Worker is already running",
        "worker_status": "running",
    }


@app.post("/worker/stop", tags=["Worker"])
def stop_worker():
    """Stop the worker after its in-flight batch. Stopping a stopped worker is a no-op."""
    controller = get_controller()
    stopped = controller.stop()
    return {
        "stopped": stopped,
        "message": "Worker stopped" if stopped else "Worker is not running",
        "worker_status": "stopped",
    }


# =============================================================================
# Publishing
# =============================================================================

@app.post("/events", response_model=PublishResult, status_code=202, tags=["Events"])
def publish_event(request: PublishEventRequest):
    """
    Publish a notification event.

    The payload is validated against the event type's schema (422 when it
    does not fit). A queue that cannot accept the event answers 503 with the
    rejected PublishResult.
    """
    try:
        data = parse_notification_data(request.type, request.payload)
    except ValidationError as e:
        raise HTTPException(
            status_code=422,
            detail=f"Invalid payload for {request.type}: {e.error_count()} error(s)",
        )

    publisher = NotificationPublisher(get_controller().queue, source="notification-api")
    result = publisher.publish(
        data,
        user_id=request.user_id,
        destination=request.destination,
        occurrence_key=request.occurrence_key or utcnow().isoformat(),
        event_id=request.event_id,
    )
    if not result.accepted:
        return JSONResponse(status_code=503, content=result.model_dump())
    return result


# =============================================================================
# Delivery status
# =============================================================================

@app.get("/notifications/stats", tags=["Notifications"])
def notification_stats(days: int = Query(default=7, ge=1, le=365)):
    """Counts by status and type, recent failures and worker status."""
    controller = get_controller()
    since = controller.clock() - timedelta(days=days)
    return {
        "period_days": days,
        "by_status": controller.store.count_by_status(since=since),
        "by_type": controller.store.count_by_type(since=since),
        "recent_failures": [
            {
                "event_id": r.event_id,
                "type": r.type,
                "destination": r.destination,
                "attempt_count": r.attempt_count,
                "last_error": r.last_error,
                "failed_at": r.failed_at.isoformat() if r.failed_at else None,
            }
            for r in controller.store.recent_failures(since=since)
        ],
        "worker": controller.status(),
    }


@app.get("/notifications/user/{user_id}", response_model=NotificationHistory, tags=["Notifications"])
def user_notifications(
    user_id: str,
    status: Optional[str] = None,
    type: Optional[str] = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    """A user's notification history, newest first."""
    records, total = get_controller().store.list_for_user(
        user_id, status=status, type=type, limit=limit, offset=offset
    )
    return NotificationHistory(
        user_id=user_id,
        total=total,
        limit=limit,
        offset=offset,
        notifications=records,
    )


@app.get("/notifications/{event_id}", response_model=DeliveryRecord, tags=["Notifications"])
def get_notification(event_id: str):
    """The delivery record for one event."""
    record = get_controller().store.get_by_event_id(event_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Notification not found: {event_id}")
    return record


# =============================================================================
# Admin operations
# =============================================================================

@app.post("/notifications/{event_id}/retry", response_model=ForceRetryResponse, tags=["Admin"])
def force_retry(event_id: str):
    """Make a RETRYING or non-terminal FAILED notification due now."""
    try:
        record = get_controller().force_retry(event_id)
    except RecordNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RetryNotAllowed as e:
        raise HTTPException(status_code=409, detail=str(e))

    logger.warning(f"Forced retry of {event_id} via API")
    return ForceRetryResponse(
        event_id=record.event_id,
        status=record.status.value,
        attempt_count=record.attempt_count,
        next_retry_at=record.next_retry_at.isoformat() if record.next_retry_at else None,
    )


@app.delete("/queue", tags=["Admin"])
def clear_queue():
    """Remove every queued event. Irreversible."""
    removed = get_controller().clear_queue()
    logger.warning(f"Queue cleared via API ({removed} entries)")
    return {"removed": removed}
