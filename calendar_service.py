"""
CalendarService: the calendar-side facade used by the daemon.

Wires the authorizer, API client, sync engine and scheduler together and
exposes connect/disconnect plus the read operations the UI needs.
"""

import logging
from typing import Any, Callable, Optional

import httpx

from calendar_models import Calendar, CalendarEvent, ConnectionStatus
from calendar_oauth import OAuthAuthorizer
from calendar_store import CalendarStore
from calendar_sync import CalendarSyncEngine, GoogleCalendarClient
from config import Settings
from meeting_scheduler import MeetingScheduler
from notifications import NotificationBridge

logger = logging.getLogger(__name__)


class CalendarService:
    def __init__(
        self,
        store: CalendarStore,
        bridge: NotificationBridge,
        authorizer: OAuthAuthorizer,
        client: GoogleCalendarClient,
        engine: CalendarSyncEngine,
        scheduler: MeetingScheduler,
    ):
        self.store = store
        self.bridge = bridge
        self.authorizer = authorizer
        self.client = client
        self.engine = engine
        self.scheduler = scheduler

    @classmethod
    def build(
        cls,
        settings: Settings,
        store: CalendarStore,
        bridge: NotificationBridge,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        opener: Optional[Callable[[str], Any]] = None,
    ) -> "CalendarService":
        auth_kwargs = {"opener": opener} if opener is not None else {}
        authorizer = OAuthAuthorizer(
            store,
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            scope=settings.scope,
            timeout_seconds=settings.oauth_timeout_seconds,
            http_client=http_client,
            **auth_kwargs,
        )
        client = GoogleCalendarClient(authorizer, http_client=http_client)
        engine = CalendarSyncEngine(
            store,
            client,
            broadcast=bridge.broadcast,
            window_days=settings.sync_window_days,
            interval_seconds=settings.sync_interval_seconds,
        )
        scheduler = MeetingScheduler(
            store,
            bridge,
            sync=engine.sync_all,
            is_connected=authorizer.is_connected,
            lookahead_minutes=settings.lookahead_minutes,
            focus_throttle_seconds=settings.focus_throttle_seconds,
        )
        engine.on_synced = scheduler.reschedule_next
        return cls(store, bridge, authorizer, client, engine, scheduler)

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    async def start(self) -> None:
        """Resume a stored connection: schedule from local data, then sync."""
        if not self.authorizer.is_connected():
            logger.info("Google Calendar not connected")
            return
        self.scheduler.reschedule_next()
        try:
            await self.engine.sync_all()
        except Exception as e:
            logger.error(f"Initial calendar sync failed: {e}", exc_info=True)
        self.engine.start()

    async def stop(self) -> None:
        await self.engine.stop()
        self.scheduler.stop()
        await self.client.aclose()
        await self.authorizer.aclose()

    # -------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------

    async def connect(self) -> dict:
        """Authorize, pull calendars and events, and start periodic sync.

        Authorization failures propagate unchanged; the store is untouched.
        """
        result = await self.authorizer.begin_authorization()
        await self.engine.fetch_calendars()
        await self.engine.sync_all()
        self.engine.start()
        self.bridge.broadcast("calendar-connection-changed", {"connected": True, "email": result.get("email")})
        logger.info(f"Google Calendar connected: {result.get('email')}")
        return result

    async def disconnect(self) -> None:
        await self.engine.stop()
        self.scheduler.reset()
        self.store.clear_calendar_data()
        self.bridge.broadcast("calendar-connection-changed", {"connected": False})
        logger.info("Google Calendar disconnected")

    def connection_status(self) -> ConnectionStatus:
        return self.authorizer.connection_status()

    # -------------------------------------------------------------------
    # Calendars and events
    # -------------------------------------------------------------------

    def get_calendars(self) -> list[Calendar]:
        return self.store.get_calendars()

    def get_upcoming_events(self, window_minutes: float) -> list[CalendarEvent]:
        return self.store.get_upcoming_events(window_minutes)

    async def set_calendar_selection(self, calendar_id: str, selected: bool) -> bool:
        """Persist the toggle and resync. Returns False for an unknown calendar."""
        if not self.store.set_calendar_selection(calendar_id, selected):
            return False
        if self.authorizer.is_connected():
            await self.engine.sync_all()
        else:
            self.scheduler.reschedule_next()
        return True

    async def sync_now(self) -> dict:
        return await self.engine.sync_all()
