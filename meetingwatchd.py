#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "fastapi>=0.115.0",
#     "uvicorn>=0.34.0",
#     "httpx>=0.28.0",
#     "pydantic>=2.0.0",
#     "pyyaml>=6.0.0",
# ]
# ///
"""
meetingwatchd: local meeting awareness daemon.

Keeps a Google Calendar mirror in SQLite, announces meetings as they start
and end, and watches for meetings that are not on the calendar (meeting apps
running, sustained microphone use). A desktop UI talks to it over HTTP on
loopback and listens to the /events stream.

Run with: uv run meetingwatchd.py
Config:   config.yaml (or MEETINGWATCH_CONFIG); client credentials in
          GOOGLE_CALENDAR_CLIENT_ID / GOOGLE_CALENDAR_CLIENT_SECRET

API:
  GET  /status                              Health, connection, active meeting
  POST /calendar/connect                    Browser sign-in, then full sync
  POST /calendar/disconnect                 Forget credential and calendar data
  GET  /calendar/calendars                  Known calendars
  PUT  /calendar/calendars/{id}/selection   {"selected": bool}
  GET  /calendar/events?window_minutes=N    Upcoming events
  POST /calendar/sync                       Sync now
  POST /system/wake | /system/focus         Host lifecycle hints
  GET  /detection/preferences               Detector toggles
  PUT  /detection/preferences               Update toggles
  POST /detection/{id}/respond              {"action": "start" | "dismiss"}
  POST /notifications/{id}/click|close      Relay from the UI
  GET  /events                              Server-sent events
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from calendar_oauth import AuthorizationError
from calendar_service import CalendarService
from calendar_store import CalendarStore
from config import Settings, load_config
from meeting_detection import DetectionArbiter
from notifications import NotificationBridge
from signal_sources import ProcessPresenceSource, SignalSource, SustainedAudioSource

# Logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

settings = Settings(load_config())
logging.getLogger().setLevel(settings.log_level)

SSE_KEEPALIVE_SECONDS = 15

# ---------------------------------------------------------------------------
# Services (built in the startup hook)
# ---------------------------------------------------------------------------

_store: Optional[CalendarStore] = None
_bridge: Optional[NotificationBridge] = None
_calendar: Optional[CalendarService] = None
_arbiter: Optional[DetectionArbiter] = None


def init_services(
    config: Settings,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    opener: Optional[Callable[[str], Any]] = None,
    sources: Optional[list[SignalSource]] = None,
    notifier: Optional[Callable[[str, str], Any]] = None,
) -> None:
    """Build every long-lived service. Must run inside the event loop."""
    global _store, _bridge, _calendar, _arbiter

    Path(config.database_path).parent.mkdir(parents=True, exist_ok=True)
    _store = CalendarStore(config.database_path)
    _bridge = NotificationBridge(notifier)
    _calendar = CalendarService.build(config, _store, _bridge, http_client=http_client, opener=opener)

    channel: asyncio.Queue = asyncio.Queue()
    if sources is None:
        sources = [ProcessPresenceSource(channel), SustainedAudioSource(channel)]
    else:
        for source in sources:
            source.channel = channel
    _arbiter = DetectionArbiter(
        _calendar.scheduler,
        _bridge,
        sources,
        channel,
        process_detection=config.process_detection,
        audio_detection=config.audio_detection,
        cooldown_minutes=config.cooldown_minutes,
        imminent_minutes=config.imminent_minutes,
    )


async def shutdown_services() -> None:
    global _store, _bridge, _calendar, _arbiter
    if _arbiter is not None:
        _arbiter.stop()
    if _calendar is not None:
        await _calendar.stop()
    if _store is not None:
        _store.close()
    _store = _bridge = _calendar = _arbiter = None


def _services() -> tuple[CalendarService, DetectionArbiter, NotificationBridge]:
    if _calendar is None or _arbiter is None or _bridge is None:
        raise HTTPException(status_code=503, detail="Services not started")
    return _calendar, _arbiter, _bridge


# ---------------------------------------------------------------------------
# API models
# ---------------------------------------------------------------------------


class SelectionRequest(BaseModel):
    selected: bool


class PreferencesRequest(BaseModel):
    process_detection: Optional[bool] = None
    audio_detection: Optional[bool] = None


class RespondRequest(BaseModel):
    action: str


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------

app = FastAPI(title="meetingwatchd", version="1.0.0")


@app.get("/status")
async def get_status():
    """Health check with calendar and detection state."""
    calendar, arbiter, _ = _services()
    scheduler = calendar.scheduler
    return {
        "status": "ok",
        "calendar": calendar.connection_status().model_dump(),
        "last_sync_at": calendar.engine.last_sync_at.isoformat() if calendar.engine.last_sync_at else None,
        "active_meeting": scheduler.active_meeting.model_dump(mode="json") if scheduler.active_meeting else None,
        "next_event": scheduler.next_event.model_dump(mode="json") if scheduler.next_event else None,
        "preferences": arbiter.get_preferences(),
        "detections": arbiter.get_detections(),
    }


@app.post("/calendar/connect")
async def connect_calendar():
    calendar, _, _ = _services()
    try:
        return await calendar.connect()
    except AuthorizationError as e:
        logger.warning(f"Calendar authorization failed: {e}")
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/calendar/disconnect")
async def disconnect_calendar():
    calendar, _, _ = _services()
    await calendar.disconnect()
    return {"connected": False}


@app.get("/calendar/calendars")
async def list_calendars():
    calendar, _, _ = _services()
    return [c.model_dump() for c in calendar.get_calendars()]


@app.put("/calendar/calendars/{calendar_id}/selection")
async def update_calendar_selection(calendar_id: str, req: SelectionRequest):
    calendar, _, _ = _services()
    if not await calendar.set_calendar_selection(calendar_id, req.selected):
        raise HTTPException(status_code=404, detail=f"Unknown calendar: {calendar_id}")
    return {"id": calendar_id, "selected": req.selected}


@app.get("/calendar/events")
async def list_upcoming_events(window_minutes: float = 24 * 60):
    calendar, _, _ = _services()
    if window_minutes <= 0:
        raise HTTPException(status_code=400, detail="window_minutes must be positive")
    return [e.model_dump(mode="json") for e in calendar.get_upcoming_events(window_minutes)]


@app.post("/calendar/sync")
async def sync_calendar():
    calendar, _, _ = _services()
    if not calendar.authorizer.is_connected():
        raise HTTPException(status_code=409, detail="Google Calendar is not connected")
    return {"calendars": await calendar.sync_now()}


@app.post("/system/wake")
async def system_wake():
    calendar, _, _ = _services()
    await calendar.scheduler.on_wake()
    return {"ok": True}


@app.post("/system/focus")
async def system_focus():
    calendar, _, _ = _services()
    return {"synced": await calendar.scheduler.on_focus_refresh()}


@app.get("/detection/preferences")
async def get_detection_preferences():
    _, arbiter, _ = _services()
    return arbiter.get_preferences()


@app.put("/detection/preferences")
async def update_detection_preferences(req: PreferencesRequest):
    _, arbiter, _ = _services()
    return arbiter.set_preferences(
        process_detection=req.process_detection,
        audio_detection=req.audio_detection,
    )


@app.post("/detection/{detection_id}/respond")
async def respond_to_detection(detection_id: str, req: RespondRequest):
    _, arbiter, _ = _services()
    if detection_id not in arbiter.detections:
        raise HTTPException(status_code=404, detail=f"Unknown detection: {detection_id}")
    try:
        detection = arbiter.handle_user_response(detection_id, req.action)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return detection.to_dict()


@app.post("/notifications/{notification_id}/click")
async def click_notification(notification_id: str):
    _, _, bridge = _services()
    if not bridge.click(notification_id):
        raise HTTPException(status_code=404, detail="Unknown or already handled notification")
    return {"ok": True}


@app.post("/notifications/{notification_id}/close")
async def close_notification(notification_id: str):
    _, _, bridge = _services()
    if not bridge.close(notification_id):
        raise HTTPException(status_code=404, detail="Unknown or already handled notification")
    return {"ok": True}


def format_sse(message: dict) -> str:
    return f"event: {message['channel']}\ndata: {json.dumps(message['payload'], default=str)}\n\n"


@app.get("/events")
async def stream_events():
    _, _, bridge = _services()
    queue = bridge.subscribe()

    async def event_stream():
        try:
            while True:
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield format_sse(message)
        finally:
            bridge.unsubscribe(queue)

    return StreamingResponse(event_stream(), media_type="text/event-stream")


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


@app.on_event("startup")
async def startup():
    """Build services, resume the stored calendar connection, start detectors."""
    init_services(settings)
    if not settings.client_id:
        logger.warning("GOOGLE_CALENDAR_CLIENT_ID not set, calendar connect will fail")

    await _calendar.start()
    _arbiter.start()

    logger.info(f"meetingwatchd starting on {settings.host}:{settings.port}")
    logger.info(f"  Database:     {settings.database_path}")
    logger.info(f"  Sync every:   {settings.sync_interval_seconds:.0f}s")
    logger.info(f"  Detection:    {_arbiter.get_preferences()}")


@app.on_event("shutdown")
async def shutdown():
    await shutdown_services()
    logger.info("meetingwatchd stopped")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
