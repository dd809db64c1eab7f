"""
Meeting scheduler: turns stored calendar events into start/end transitions.

One "next meeting" slot moves Idle -> Armed (start timer) -> Active (end
timer) -> Idle. Each timer is a TimerSlot: arming always invalidates what was
armed before, so two start timers can never coexist. Timer callbacks log
their own failures; nothing scheduled here can take the process down.
"""

import asyncio
import logging
import time
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable, Optional

from calendar_models import CalendarEvent, utc_now
from calendar_store import CalendarStore

logger = logging.getLogger(__name__)

LOOKAHEAD_MINUTES = 24 * 60
REVALIDATE_WINDOW_MINUTES = 1
STATE_UPCOMING_MINUTES = 15
FOCUS_THROTTLE_SECONDS = 30


class TimerSlot:
    """A single armed timer. ``arm`` returns a token; stale tokens never fire."""

    def __init__(self, name: str):
        self.name = name
        self._token = 0
        self._handle: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()
        self.delay: Optional[float] = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    @property
    def token(self) -> int:
        return self._token

    def arm(self, delay: float, callback: Callable[[], Any]) -> int:
        self.cancel()
        token = self._token
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(max(0.0, delay), self._fire, token, callback)
        self.delay = delay
        return token

    def cancel(self) -> None:
        self._token += 1
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self.delay = None

    def _fire(self, token: int, callback: Callable[[], Any]) -> None:
        if token != self._token:
            return
        self._handle = None
        self.delay = None
        try:
            result = callback()
        except Exception as e:
            logger.error(f"{self.name} timer callback failed: {e}", exc_info=True)
            return
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"{self.name} timer task failed: {task.exception()}")


def _event_payload(event: Optional[CalendarEvent]) -> Optional[dict]:
    return event.model_dump(mode="json") if event is not None else None


class MeetingScheduler:
    def __init__(
        self,
        store: CalendarStore,
        bridge,
        *,
        sync: Optional[Callable[[], Awaitable[Any]]] = None,
        is_connected: Optional[Callable[[], bool]] = None,
        lookahead_minutes: float = LOOKAHEAD_MINUTES,
        focus_throttle_seconds: float = FOCUS_THROTTLE_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.bridge = bridge
        self._sync = sync
        self._is_connected = is_connected
        self.lookahead_minutes = lookahead_minutes
        self.focus_throttle_seconds = focus_throttle_seconds
        self._clock = clock
        self._monotonic = monotonic

        self.active_meeting: Optional[CalendarEvent] = None
        self.notified_event_ids: set[str] = set()
        self.next_event: Optional[CalendarEvent] = None
        self._start_slot = TimerSlot("meeting-start")
        self._end_slot = TimerSlot("meeting-end")
        self._last_focus_sync: Optional[float] = None

    # -------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------

    def reschedule_next(self) -> Optional[CalendarEvent]:
        """Arm the start timer for the earliest upcoming event not yet notified."""
        self._start_slot.cancel()
        now = self._clock()
        upcoming = self.store.get_upcoming_events(self.lookahead_minutes, now=now)
        self.next_event = next((e for e in upcoming if e.id not in self.notified_event_ids), None)
        if self.next_event is None:
            return None

        event = self.next_event
        delay = (event.start_time - now).total_seconds()
        if delay <= 0:
            self.on_start(event)
            return event

        self._start_slot.arm(delay, partial(self.on_start, event))
        logger.info(f"Next meeting '{event.summary}' armed in {delay:.0f}s")
        return event

    def _current_copy(self, event: CalendarEvent, now: datetime) -> Optional[CalendarEvent]:
        candidates = self.store.get_active_events(now) + self.store.get_upcoming_events(
            REVALIDATE_WINDOW_MINUTES, now=now
        )
        return next((e for e in candidates if e.id == event.id), None)

    def on_start(self, event: CalendarEvent) -> bool:
        """Commit a start transition if the event is still current. Returns whether it fired."""
        now = self._clock()
        current = self._current_copy(event, now)
        if current is None:
            logger.info(f"Meeting '{event.summary}' ({event.id}) is gone or moved, not notifying")
            self.reschedule_next()
            return False

        self.active_meeting = current
        self.notified_event_ids.add(current.id)
        payload = _event_payload(current)
        logger.info(f"Meeting starting: '{current.summary}' ({current.id})")

        self.bridge.show_native_notification(
            title=current.summary or "Meeting",
            body="Meeting starting now",
            on_click=partial(self.bridge.broadcast, "meeting-start-recording", {"event": payload}),
        )
        self.bridge.broadcast("meeting-starting", {"event": payload})

        self._end_slot.cancel()
        end_delay = (current.end_time - now).total_seconds()
        if end_delay > 0:
            self._end_slot.arm(end_delay, self.on_end)

        self.reschedule_next()
        return True

    def on_end(self) -> None:
        event = self.active_meeting
        logger.info(f"Meeting ended: '{event.summary if event else None}'")
        self.bridge.broadcast("meeting-ended", {"event": _event_payload(event)})
        self.active_meeting = None
        self._end_slot.cancel()
        self.reschedule_next()

    # -------------------------------------------------------------------
    # Host events
    # -------------------------------------------------------------------

    async def on_wake(self) -> None:
        """The host resumed from sleep: wall-clock time may have jumped."""
        logger.info("Resumed from sleep, re-evaluating meetings")
        try:
            now = self._clock()
            # The end timer runs on the monotonic clock, which may not have advanced while asleep.
            if self.active_meeting is not None and not self.active_meeting.is_active(now):
                self.on_end()
            if self.active_meeting is None:
                active = [
                    e for e in self.store.get_active_events(now)
                    if e.id not in self.notified_event_ids
                ]
                if active:
                    self.on_start(active[0])
            self.reschedule_next()
        except Exception as e:
            logger.error(f"Post-wake rescheduling failed: {e}", exc_info=True)
        await self._run_sync("Post-wake sync")

    async def on_focus_refresh(self) -> bool:
        """Opportunistic resync on window focus, at most once per throttle window."""
        if self._is_connected is not None and not self._is_connected():
            return False
        now = self._monotonic()
        if self._last_focus_sync is not None and now - self._last_focus_sync < self.focus_throttle_seconds:
            return False
        self._last_focus_sync = now
        await self._run_sync("Focus-triggered sync")
        return True

    async def _run_sync(self, label: str) -> None:
        if self._sync is None:
            return
        try:
            await self._sync()
        except Exception as e:
            logger.error(f"{label} failed: {e}")

    # -------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------

    @property
    def start_timer(self) -> TimerSlot:
        return self._start_slot

    @property
    def end_timer(self) -> TimerSlot:
        return self._end_slot

    def get_active_meeting_state(self) -> dict:
        now = self._clock()
        return {
            "active_meeting": self.active_meeting,
            "active_events": self.store.get_active_events(now),
            "upcoming_events": self.store.get_upcoming_events(STATE_UPCOMING_MINUTES, now=now),
        }

    def stop(self) -> None:
        self._start_slot.cancel()
        self._end_slot.cancel()

    def reset(self) -> None:
        """Forget everything; only used when the calendar is disconnected."""
        self.stop()
        self.active_meeting = None
        self.next_event = None
        self.notified_event_ids.clear()
