"""
Calendar synchronization against the Google Calendar v3 API.

Incremental sync uses Google's syncToken / nextSyncToken cursor. When the
provider answers 410 Gone the cursor has expired: it is discarded and the
calendar is pulled again over the full window. Each fetch is mapped to a
tagged result (Upserted, Invalidated, Failed) so that retry is a type check
rather than a status-code sniff.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union
from urllib.parse import quote

import httpx

from calendar_models import (
    Calendar,
    CalendarEvent,
    STATUS_CANCELLED,
    to_rfc3339,
    utc_now,
)
from calendar_oauth import OAuthAuthorizer
from calendar_store import CalendarStore

logger = logging.getLogger(__name__)

CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"
SYNC_WINDOW_DAYS = 7
SYNC_INTERVAL_SECONDS = 2 * 60
HTTP_GONE = 410


class CalendarApiError(Exception):
    def __init__(self, status_code: Optional[int], message: str):
        super().__init__(message)
        self.status_code = status_code


class CalendarSyncError(Exception):
    pass


# ---------------------------------------------------------------------------
# Tagged fetch results
# ---------------------------------------------------------------------------


class Upserted:
    """A successful pull: raw event items plus the cursor for next time."""

    def __init__(self, items: list[dict], next_cursor: Optional[str]):
        self.items = items
        self.next_cursor = next_cursor


class Invalidated:
    """The stored sync cursor was rejected by the provider (HTTP 410)."""

    def __init__(self, cursor: str):
        self.cursor = cursor


class Failed:
    def __init__(self, error: Exception):
        self.error = error


SyncResult = Union[Upserted, Invalidated, Failed]


def partition_items(items: list[dict], calendar_id: str) -> tuple[list[CalendarEvent], list[str]]:
    """Split provider items into events to upsert and ids to remove.

    Cancelled items only ever land in the removal list. Items that cannot be
    mapped (no id, no start) are skipped with a warning.
    """
    upserts: list[CalendarEvent] = []
    removals: list[str] = []
    for item in items:
        if not isinstance(item, dict) or not item.get("id"):
            continue
        if item.get("status") == STATUS_CANCELLED:
            removals.append(item["id"])
            continue
        try:
            upserts.append(CalendarEvent.from_google(item, calendar_id))
        except (ValueError, KeyError) as e:
            logger.warning(f"Skipping malformed event {item.get('id')!r} in {calendar_id}: {e}")
    return upserts, removals


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


class GoogleCalendarClient:
    def __init__(
        self,
        authorizer: OAuthAuthorizer,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: str = CALENDAR_API_BASE,
    ):
        self.authorizer = authorizer
        self.base_url = base_url
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._owns_http_client = http_client is None

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def get(self, path: str, params: Optional[dict[str, Any]] = None) -> dict:
        access_token = await self.authorizer.refresh_if_needed()
        response = await self._http_client.get(
            f"{self.base_url}{path}",
            params=params,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if response.status_code >= 400:
            message = f"API error {response.status_code}"
            try:
                message = response.json().get("error", {}).get("message") or message
            except (ValueError, AttributeError):
                pass
            raise CalendarApiError(response.status_code, message)
        try:
            payload = response.json()
        except ValueError as e:
            raise CalendarApiError(response.status_code, f"Invalid JSON response: {response.text[:200]}") from e
        if not isinstance(payload, dict):
            raise CalendarApiError(response.status_code, "Unexpected response payload shape")
        return payload

    async def list_calendars(self) -> list[dict]:
        data = await self.get("/users/me/calendarList")
        return [item for item in data.get("items") or [] if isinstance(item, dict) and item.get("id")]

    async def fetch_events(self, calendar_id: str, params: dict[str, Any]) -> SyncResult:
        """Pull one calendar's events, following pagination."""
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        items: list[dict] = []
        next_cursor: Optional[str] = None
        page_params = dict(params)

        while True:
            try:
                data = await self.get(path, page_params)
            except CalendarApiError as e:
                if e.status_code == HTTP_GONE and "syncToken" in params:
                    return Invalidated(params["syncToken"])
                return Failed(e)
            except httpx.HTTPError as e:
                return Failed(e)

            items.extend(data.get("items") or [])
            next_cursor = data.get("nextSyncToken") or next_cursor
            page_token = data.get("nextPageToken")
            if not page_token:
                break
            page_params["pageToken"] = page_token

        return Upserted(items, next_cursor)


# ---------------------------------------------------------------------------
# Sync engine
# ---------------------------------------------------------------------------


class CalendarSyncEngine:
    def __init__(
        self,
        store: CalendarStore,
        client: GoogleCalendarClient,
        *,
        broadcast: Optional[Callable[[str, dict], Any]] = None,
        on_synced: Optional[Callable[[], Any]] = None,
        window_days: int = SYNC_WINDOW_DAYS,
        interval_seconds: float = SYNC_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.client = client
        self.broadcast = broadcast
        self.on_synced = on_synced
        self.window_days = window_days
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._sync_task: Optional[asyncio.Task] = None
        self.last_sync_at: Optional[datetime] = None

    def full_window_params(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "singleEvents": "true",
            "orderBy": "startTime",
            "timeMin": to_rfc3339(now),
            "timeMax": to_rfc3339(now + timedelta(days=self.window_days)),
        }

    async def fetch_calendars(self) -> list[Calendar]:
        calendars = [Calendar.from_google(item) for item in await self.client.list_calendars()]
        self.store.upsert_calendars(calendars)
        logger.info(f"Fetched {len(calendars)} calendar(s)")
        return calendars

    async def sync_one(self, calendar: Calendar) -> dict:
        """Pull one calendar and apply the changes locally.

        Returns a small summary. A rejected cursor triggers exactly one
        full-window retry and is never surfaced; any other failure raises
        CalendarSyncError.
        """
        if calendar.sync_cursor:
            params = {"singleEvents": "true", "syncToken": calendar.sync_cursor}
            mode = "incremental"
        else:
            params = self.full_window_params()
            mode = "full"

        result = await self.client.fetch_events(calendar.id, params)

        if isinstance(result, Invalidated):
            logger.info(f"Sync cursor for {calendar.id} expired, falling back to full sync")
            self.store.set_calendar_sync_cursor(calendar.id, None)
            mode = "full"
            result = await self.client.fetch_events(calendar.id, self.full_window_params())

        if isinstance(result, Failed):
            raise CalendarSyncError(f"Sync failed for {calendar.id}: {result.error}") from result.error
        if not isinstance(result, Upserted):
            raise CalendarSyncError(f"Sync failed for {calendar.id}: cursor rejected twice")

        upserts, removals = partition_items(result.items, calendar.id)
        self.store.upsert_events(upserts)
        self.store.remove_events(removals, calendar_id=calendar.id)
        if result.next_cursor:
            self.store.set_calendar_sync_cursor(calendar.id, result.next_cursor)

        logger.info(f"Synced {calendar.id} ({mode}): {len(upserts)} upserted, {len(removals)} removed")
        return {"mode": mode, "upserted": len(upserts), "removed": len(removals)}

    async def sync_all(self) -> dict[str, dict]:
        """Sync every selected calendar in turn; one failure does not stop the rest."""
        summary: dict[str, dict] = {}
        for calendar in self.store.get_selected_calendars():
            try:
                summary[calendar.id] = await self.sync_one(calendar)
            except Exception as e:
                logger.error(f"Error syncing calendar {calendar.id}: {e}")
                summary[calendar.id] = {"error": str(e)}

        self.last_sync_at = self._clock()
        if self.broadcast:
            self.broadcast("calendar-events-synced", {"calendars": summary})
        if self.on_synced:
            self.on_synced()
        return summary

    # -------------------------------------------------------------------
    # Periodic background sync
    # -------------------------------------------------------------------

    def start(self) -> None:
        if self._sync_task and not self._sync_task.done():
            return
        self._sync_task = asyncio.create_task(self._sync_loop(), name="calendar-sync")

    async def stop(self) -> None:
        if self._sync_task is None:
            return
        self._sync_task.cancel()
        try:
            await self._sync_task
        except asyncio.CancelledError:
            pass
        self._sync_task = None

    @property
    def running(self) -> bool:
        return self._sync_task is not None and not self._sync_task.done()

    async def _sync_loop(self) -> None:
        logger.info(f"Background calendar sync started (interval={self.interval_seconds}s)")
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sync_all()
            except Exception as e:
                logger.error(f"Background calendar sync failed: {e}", exc_info=True)
