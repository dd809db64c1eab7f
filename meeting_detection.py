"""
Heuristic meeting detection.

The DetectionArbiter consumes SignalEvents from the signal sources and turns
them into at most one prompt per detection id. Calendar ground truth wins:
while a calendar meeting is active every heuristic signal is suppressed.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from functools import partial
from typing import Callable, Optional

from calendar_models import CalendarEvent, Detection, detected_subject, utc_now
from signal_sources import SignalEvent, SignalKind, SignalSource

logger = logging.getLogger(__name__)

COOLDOWN_MINUTES = 30
IMMINENT_MINUTES = 5

ACTION_START = "start"
ACTION_DISMISS = "dismiss"

# preference name -> source name
PREFERENCE_SOURCES = {
    "process_detection": "process",
    "audio_detection": "audio",
}


class DetectionArbiter:
    def __init__(
        self,
        scheduler,
        bridge,
        sources: list[SignalSource],
        channel: asyncio.Queue,
        *,
        process_detection: bool = True,
        audio_detection: bool = True,
        cooldown_minutes: float = COOLDOWN_MINUTES,
        imminent_minutes: float = IMMINENT_MINUTES,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.scheduler = scheduler
        self.bridge = bridge
        self.sources = {source.name: source for source in sources}
        self.channel = channel
        self.preferences = {
            "process_detection": process_detection,
            "audio_detection": audio_detection,
        }
        self.cooldown = timedelta(minutes=cooldown_minutes)
        self.imminent = timedelta(minutes=imminent_minutes)
        self._clock = clock

        self.detections: dict[str, Detection] = {}
        self.cooldown_until: dict[str, datetime] = {}
        self._consumer: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    def source_enabled(self, source_name: str) -> bool:
        for pref, name in PREFERENCE_SOURCES.items():
            if name == source_name:
                return self.preferences[pref]
        return True

    def start(self) -> None:
        for name, source in self.sources.items():
            if self.source_enabled(name):
                source.start()
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self.run(), name="detection-arbiter")
        logger.info(f"Meeting detection started: {self.preferences}")

    def stop(self) -> None:
        for source in self.sources.values():
            source.stop()
        if self._consumer is not None:
            self._consumer.cancel()
            self._consumer = None
        self.detections.clear()
        logger.info("Meeting detection stopped")

    async def run(self) -> None:
        while True:
            event = await self.channel.get()
            self.handle_signal(event)

    def get_preferences(self) -> dict:
        return dict(self.preferences)

    def set_preferences(
        self,
        process_detection: Optional[bool] = None,
        audio_detection: Optional[bool] = None,
    ) -> dict:
        updates = {"process_detection": process_detection, "audio_detection": audio_detection}
        for pref, value in updates.items():
            if value is None:
                continue
            self.preferences[pref] = value
            source = self.sources.get(PREFERENCE_SOURCES[pref])
            if value:
                if source is not None:
                    source.start()
                continue
            if source is not None:
                source.stop()
            self._drop_source(PREFERENCE_SOURCES[pref])
        logger.info(f"Detection preferences updated: {self.preferences}")
        return self.get_preferences()

    def _drop_source(self, source_name: str) -> None:
        for detection_id in [d for d, det in self.detections.items() if det.source == source_name]:
            del self.detections[detection_id]

    # -------------------------------------------------------------------
    # Signals
    # -------------------------------------------------------------------

    def handle_signal(self, event: SignalEvent) -> Optional[Detection]:
        try:
            if event.kind == SignalKind.ENDED:
                self.detections.pop(f"{event.source_name}:{event.key}", None)
                return None
            return self._handle_started(event)
        except Exception as e:
            logger.error(f"Failed to handle {event!r}: {e}", exc_info=True)
            return None

    def in_cooldown(self, source_name: str, now: Optional[datetime] = None) -> bool:
        until = self.cooldown_until.get(source_name)
        return until is not None and (now or self._clock()) < until

    def _handle_started(self, event: SignalEvent) -> Optional[Detection]:
        source_name, key = event.source_name, event.key
        detection_id = f"{source_name}:{key}"

        if not self.source_enabled(source_name):
            self._release(source_name)
            return None
        existing = self.detections.get(detection_id)
        if existing is not None and not existing.dismissed:
            return None
        now = self._clock()
        if self.in_cooldown(source_name, now):
            logger.debug(f"{source_name} in cooldown, ignoring {detection_id}")
            self._release(source_name)
            return None

        state = self.scheduler.get_active_meeting_state()
        if state["active_meeting"] is not None or state["active_events"]:
            logger.debug(f"Suppressing {detection_id}: calendar meeting in progress")
            self._release(source_name)
            return None

        imminent = self._find_imminent(state["upcoming_events"], now)
        app_name = event.payload.get("appName")
        if imminent is not None:
            subject = imminent.model_dump(mode="json")
        else:
            subject = detected_subject(app_name, now)

        detection = Detection(source_name, key, event.payload, subject, now)
        self.detections[detection_id] = detection
        self._prompt(detection, imminent, app_name)
        return detection

    def _release(self, source_name: str) -> None:
        """Let a momentary source fire again once its signal is consumed without a prompt."""
        source = self.sources.get(source_name)
        if source is not None and source.momentary:
            source.reset()

    def _find_imminent(self, upcoming: list[CalendarEvent], now: datetime) -> Optional[CalendarEvent]:
        return next(
            (e for e in upcoming if now < e.start_time <= now + self.imminent),
            None,
        )

    def _prompt(self, detection: Detection, imminent: Optional[CalendarEvent], app_name: Optional[str]) -> None:
        if imminent is not None:
            title = imminent.summary or "Upcoming Meeting"
            body = "Your meeting is starting. Want to take notes?"
        elif app_name:
            title = f"{app_name} Meeting Detected"
            body = "It looks like you're in a meeting. Want to take notes?"
        else:
            title = "Meeting Detected"
            body = "It sounds like you're in a meeting. Want to take notes?"

        detection_id = detection.detection_id
        logger.info(f"Meeting detected: {detection_id} ({title})")
        self.bridge.show_native_notification(
            title=title,
            body=body,
            on_click=partial(self._respond_quietly, detection_id, ACTION_START),
            on_close=partial(self._respond_quietly, detection_id, ACTION_DISMISS),
        )
        self.bridge.broadcast("meeting-detected", {
            "detectionId": detection_id,
            "source": detection.source,
            "subject": detection.subject,
        })

    # -------------------------------------------------------------------
    # User responses
    # -------------------------------------------------------------------

    def _respond_quietly(self, detection_id: str, action: str) -> None:
        try:
            self.handle_user_response(detection_id, action)
        except ValueError as e:
            logger.debug(f"Ignoring notification response: {e}")

    def handle_user_response(self, detection_id: str, action: str) -> Detection:
        detection = self.detections.get(detection_id)
        if detection is None:
            raise ValueError(f"Unknown detection: {detection_id}")

        if action == ACTION_START:
            self.bridge.broadcast("meeting-detected-start-recording", {
                "event": detection.subject,
                "source": detection.source,
                "detectionId": detection_id,
            })
            source = self.sources.get(detection.source)
            if source is not None and source.momentary:
                del self.detections[detection_id]
                source.reset()
            logger.info(f"Recording requested for {detection_id}")
        elif action == ACTION_DISMISS:
            detection.dismissed = True
            source = self.sources.get(detection.source)
            if source is not None:
                source.dismiss(detection.key)
            self.cooldown_until[detection.source] = self._clock() + self.cooldown
            logger.info(f"Detection {detection_id} dismissed")
        else:
            raise ValueError(f"Unknown action: {action}")
        return detection

    def get_detections(self) -> list[dict]:
        return [d.to_dict() for d in self.detections.values()]
