"""TALLY HTTP entrypoint: event ingestion, metrics and health."""

import logging
from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from tally.config import settings
from tally.models.events import RawEvent, utcnow
from tally.store.base import create_store
from tally.utils.logging import configure_logging

configure_logging(settings.log_level)
logger = logging.getLogger("tally.api")

app = FastAPI(
    title="TALLY",
    description="Analytics event ingestion and aggregate metrics",
    version=settings.version,
)
app.state.store = create_store(
    settings.store.store_type, settings.store.to_store_config()
)


class EventIn(BaseModel):
    userId: Optional[str] = None
    action: Optional[str] = None
    timestamp: Optional[str] = None


@app.on_event("startup")
async def startup():
    logger.info("TALLY API v%s starting", settings.version)
    logger.info("Log level: %s", settings.log_level)
    logger.info("API port: %s", settings.api_port)
    state = await app.state.store.connect()
    logger.info("Store %s: %s", app.state.store.store_type, state.value)


@app.on_event("shutdown")
async def shutdown():
    await app.state.store.disconnect()


@app.post("/api/events", status_code=201)
async def ingest_event(body: EventIn) -> dict[str, Any]:
    if not body.userId or not body.action:
        logger.warning(
            "Rejected event: userId=%s action=%s", bool(body.userId), bool(body.action)
        )
        raise HTTPException(
            status_code=400, detail="Missing required fields: userId and action"
        )

    event = RawEvent(
        user_id=body.userId,
        action=body.action,
        timestamp=body.timestamp or utcnow().isoformat(),
        created_at=utcnow(),
        processed=False,
    )
    try:
        event_id = await app.state.store.insert_event(event)
    except Exception as e:
        logger.error("Event insert failed: %s", e, exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error") from e

    logger.info(
        "Event %s recorded: user=%s action=%s", event_id, event.user_id, event.action,
        extra={"event_id": event_id},
    )
    return {
        "success": True,
        "eventId": event_id,
        "message": "Event recorded successfully",
    }


@app.get("/api/metrics")
async def get_metrics() -> dict[str, Any]:
    try:
        snapshot = await app.state.store.read_metrics_snapshot()
    except Exception as e:
        logger.error("Metrics read failed: %s", e, exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error") from e

    if snapshot is None:
        return {
            "success": True,
            "metrics": {
                "totalEvents": 0,
                "eventsByAction": {},
                "eventsByUser": {},
                "lastUpdated": None,
            },
        }
    return {
        "success": True,
        "metrics": {
            "totalEvents": snapshot.total_events,
            "eventsByAction": snapshot.events_by_action,
            "eventsByUser": snapshot.events_by_user,
            "lastUpdated": snapshot.updated_at.isoformat(),
        },
    }


@app.get("/health")
async def health():
    store = app.state.store
    try:
        reachable = await store.ping()
    except Exception as e:
        logger.warning("Store ping failed: %s", e)
        reachable = False

    body = {
        "status": "ok" if reachable else "degraded",
        "version": settings.version,
        "store": store.health().state.value,
    }
    return JSONResponse(status_code=200 if reachable else 503, content=body)
