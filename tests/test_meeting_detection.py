#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "pytest>=8.0.0",
#     "pytest-asyncio>=0.24.0",
#     "pydantic>=2.0.0",
# ]
# ///
"""
Tests for the detection arbiter.

Covers:
- Suppression while a calendar meeting is active
- Imminent calendar event becomes the prompt subject, else a generic one
- One prompt per detection id; ENDED clears it
- start / dismiss responses, per-source cooldown after dismiss
- Momentary sources re-arm after a start response or a suppressed signal
- Preferences toggle sources and drop their open detections
- The channel consumer started by start()

Run with: uv run pytest tests/test_meeting_detection.py -v
"""

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))
from calendar_models import Calendar, CalendarEvent
from calendar_store import CalendarStore
from meeting_detection import DetectionArbiter
from meeting_scheduler import MeetingScheduler
from signal_sources import SignalEvent, SignalKind, SustainedAudioSource

T = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class FakeSource:
    def __init__(self, name, momentary=False):
        self.name = name
        self.momentary = momentary
        self.started = 0
        self.stopped = 0
        self.dismissed = []
        self.resets = 0

    def start(self):
        self.started += 1

    def stop(self):
        self.stopped += 1

    def dismiss(self, key=None):
        self.dismissed.append(key)

    def reset(self):
        self.resets += 1


def started(source, key, **payload):
    return SignalEvent(SignalKind.STARTED, source, key, payload)


def ended(source, key):
    return SignalEvent(SignalKind.ENDED, source, key)


def make_event(event_id, start, duration_min=30, summary=None):
    return CalendarEvent(
        id=event_id,
        calendar_id="primary",
        summary=summary or f"Meeting {event_id}",
        start_time=start,
        end_time=start + timedelta(minutes=duration_min),
    )


@pytest.fixture
def store(tmp_path):
    s = CalendarStore(str(tmp_path / "detect.db"))
    s.upsert_calendars([Calendar(id="primary", summary="Work")])
    yield s
    s.close()


@pytest.fixture
def clock():
    return Clock(T)


@pytest.fixture
def bridge():
    return mock.Mock()


@pytest.fixture
def sources():
    return {"process": FakeSource("process"), "audio": FakeSource("audio", momentary=True)}


@pytest.fixture
def arbiter(store, bridge, clock, sources):
    scheduler = MeetingScheduler(store, bridge, clock=clock)
    return DetectionArbiter(scheduler, bridge, list(sources.values()), asyncio.Queue(), clock=clock)


def broadcasts(bridge, channel):
    return [c.args[1] for c in bridge.broadcast.call_args_list if c.args[0] == channel]


class TestSuppression:
    """Calendar ground truth wins over every heuristic signal."""

    def test_active_calendar_event_suppresses(self, arbiter, store, bridge):
        store.upsert_events([make_event("now", T - timedelta(minutes=5))])

        assert arbiter.handle_signal(started("process", "zoom", appName="Zoom")) is None
        assert arbiter.handle_signal(started("audio", "sustained-audio")) is None

        bridge.show_native_notification.assert_not_called()
        assert arbiter.detections == {}

    def test_active_meeting_suppresses(self, arbiter, bridge):
        arbiter.scheduler.active_meeting = make_event("running", T - timedelta(minutes=5))
        assert arbiter.handle_signal(started("process", "zoom", appName="Zoom")) is None
        bridge.show_native_notification.assert_not_called()

    def test_all_day_event_does_not_suppress(self, arbiter, store):
        allday = make_event("holiday", T - timedelta(hours=10), duration_min=24 * 60)
        store.upsert_events([allday.model_copy(update={"is_all_day": True})])
        assert arbiter.handle_signal(started("process", "zoom", appName="Zoom")) is not None

    def test_handler_failure_is_no_signal(self, arbiter, bridge):
        arbiter.scheduler.get_active_meeting_state = mock.Mock(side_effect=RuntimeError("db locked"))
        assert arbiter.handle_signal(started("process", "zoom", appName="Zoom")) is None
        bridge.show_native_notification.assert_not_called()


class TestPromptSubject:
    def test_imminent_event_is_subject(self, arbiter, store, bridge):
        """E1 starts in 3 minutes and Zoom appears: the prompt is about E1."""
        store.upsert_events([make_event("e1", T + timedelta(minutes=3), summary="Design review")])

        detection = arbiter.handle_signal(started("process", "zoom", appName="Zoom"))

        assert detection.detection_id == "process:zoom"
        assert detection.subject["id"] == "e1"
        kwargs = bridge.show_native_notification.call_args.kwargs
        assert kwargs["title"] == "Design review"
        assert "starting" in kwargs["body"]
        (payload,) = broadcasts(bridge, "meeting-detected")
        assert payload["detectionId"] == "process:zoom"
        assert payload["subject"]["id"] == "e1"

    def test_event_beyond_threshold_is_not_imminent(self, arbiter, store):
        store.upsert_events([make_event("later", T + timedelta(minutes=10))])
        detection = arbiter.handle_signal(started("process", "zoom", appName="Zoom"))
        assert detection.subject["calendar_id"] == "__detected__"

    def test_generic_subject_for_app(self, arbiter, bridge):
        detection = arbiter.handle_signal(started("process", "zoom", appName="Zoom"))

        subject = detection.subject
        assert subject["summary"] == "Zoom Meeting"
        assert subject["id"] == f"detected-{int(T.timestamp() * 1000)}"
        assert subject["start_time"] == T.isoformat()
        assert subject["end_time"] == (T + timedelta(hours=1)).isoformat()
        assert bridge.show_native_notification.call_args.kwargs["title"] == "Zoom Meeting Detected"

    def test_generic_subject_for_audio(self, arbiter, bridge):
        detection = arbiter.handle_signal(started("audio", "sustained-audio", durationMs=10000))
        assert detection.subject["summary"] == "Detected Meeting"
        assert bridge.show_native_notification.call_args.kwargs["title"] == "Meeting Detected"


class TestDetectionLifecycle:
    def test_one_prompt_per_detection(self, arbiter, bridge):
        arbiter.handle_signal(started("process", "zoom", appName="Zoom"))
        arbiter.handle_signal(started("process", "zoom", appName="Zoom"))
        assert bridge.show_native_notification.call_count == 1
        assert list(arbiter.detections) == ["process:zoom"]

    def test_distinct_keys_prompt_separately(self, arbiter, bridge):
        arbiter.handle_signal(started("process", "zoom", appName="Zoom"))
        arbiter.handle_signal(started("process", "teams", appName="Microsoft Teams"))
        assert bridge.show_native_notification.call_count == 2

    def test_ended_clears_detection(self, arbiter, bridge):
        arbiter.handle_signal(started("process", "zoom", appName="Zoom"))
        arbiter.handle_signal(ended("process", "zoom"))
        assert arbiter.detections == {}

        arbiter.handle_signal(started("process", "zoom", appName="Zoom"))
        assert bridge.show_native_notification.call_count == 2


class TestUserResponse:
    def test_start_broadcasts_subject(self, arbiter, bridge):
        detection = arbiter.handle_signal(started("process", "zoom", appName="Zoom"))

        arbiter.handle_user_response("process:zoom", "start")

        (payload,) = broadcasts(bridge, "meeting-detected-start-recording")
        assert payload == {"event": detection.subject, "source": "process", "detectionId": "process:zoom"}
        # Process detections stay open until the app goes away.
        assert "process:zoom" in arbiter.detections

    def test_start_clears_momentary_detection(self, arbiter):
        arbiter.handle_signal(started("audio", "sustained-audio"))
        arbiter.handle_user_response("audio:sustained-audio", "start")
        assert arbiter.detections == {}

    def test_dismiss_notifies_source(self, arbiter, sources):
        arbiter.handle_signal(started("process", "zoom", appName="Zoom"))
        detection = arbiter.handle_user_response("process:zoom", "dismiss")
        assert detection.dismissed is True
        assert sources["process"].dismissed == ["zoom"]

    def test_dismiss_cooldown(self, arbiter, clock):
        """Dismissed at T: ignored at T+10 min, prompts again at T+31 min."""
        arbiter.handle_signal(started("audio", "sustained-audio"))
        arbiter.handle_user_response("audio:sustained-audio", "dismiss")

        clock.now = T + timedelta(minutes=10)
        assert arbiter.handle_signal(started("audio", "sustained-audio")) is None

        clock.now = T + timedelta(minutes=31)
        detection = arbiter.handle_signal(started("audio", "sustained-audio"))
        assert detection is not None
        assert detection.dismissed is False

    def test_cooldown_is_per_source(self, arbiter):
        arbiter.handle_signal(started("audio", "sustained-audio"))
        arbiter.handle_user_response("audio:sustained-audio", "dismiss")
        assert arbiter.handle_signal(started("process", "zoom", appName="Zoom")) is not None

    def test_unknown_detection(self, arbiter):
        with pytest.raises(ValueError):
            arbiter.handle_user_response("process:nope", "start")

    def test_unknown_action(self, arbiter):
        arbiter.handle_signal(started("process", "zoom", appName="Zoom"))
        with pytest.raises(ValueError):
            arbiter.handle_user_response("process:zoom", "snooze")

    def test_notification_click_and_close(self, arbiter, bridge, sources):
        arbiter.handle_signal(started("process", "zoom", appName="Zoom"))
        kwargs = bridge.show_native_notification.call_args.kwargs

        kwargs["on_click"]()
        assert len(broadcasts(bridge, "meeting-detected-start-recording")) == 1

        kwargs["on_close"]()
        assert sources["process"].dismissed == ["zoom"]

    def test_close_after_resolution_is_ignored(self, arbiter, bridge):
        arbiter.handle_signal(started("audio", "sustained-audio"))
        kwargs = bridge.show_native_notification.call_args.kwargs
        kwargs["on_click"]()
        kwargs["on_close"]()
        assert arbiter.cooldown_until == {}

    def test_start_resets_momentary_source(self, arbiter, sources):
        arbiter.handle_signal(started("audio", "sustained-audio"))
        arbiter.handle_user_response("audio:sustained-audio", "start")
        assert sources["audio"].resets == 1

    def test_start_leaves_process_source_alone(self, arbiter, sources):
        arbiter.handle_signal(started("process", "zoom", appName="Zoom"))
        arbiter.handle_user_response("process:zoom", "start")
        assert sources["process"].resets == 0

    def test_suppressed_momentary_signal_resets_source(self, arbiter, store, sources):
        store.upsert_events([make_event("now", T - timedelta(minutes=5))])
        arbiter.handle_signal(started("audio", "sustained-audio"))
        arbiter.handle_signal(started("process", "zoom", appName="Zoom"))
        assert sources["audio"].resets == 1
        assert sources["process"].resets == 0


class TestSustainedAudioRearm:
    """A real audio source keeps prompting for later meetings."""

    @pytest.fixture
    def audio(self):
        return SustainedAudioSource(asyncio.Queue(), probe=lambda: True, monotonic=lambda: 0.0)

    @pytest.fixture
    def audio_arbiter(self, store, bridge, clock, audio):
        scheduler = MeetingScheduler(store, bridge, clock=clock)
        return DetectionArbiter(scheduler, bridge, [audio], audio.channel, clock=clock)

    async def sustained(self, audio, polls=10):
        for _ in range(polls):
            await audio.poll()

    @pytest.mark.asyncio
    async def test_prompts_again_after_start(self, audio_arbiter, audio, clock):
        await self.sustained(audio)
        assert audio_arbiter.handle_signal(audio.channel.get_nowait()) is not None
        audio_arbiter.handle_user_response("audio:sustained-audio", "start")

        clock.now = T + timedelta(hours=3)
        await self.sustained(audio)

        assert audio.channel.qsize() == 1
        assert audio_arbiter.handle_signal(audio.channel.get_nowait()) is not None

    @pytest.mark.asyncio
    async def test_prompts_after_suppressing_meeting_ends(self, audio_arbiter, audio, store, clock, bridge):
        store.upsert_events([make_event("standup", T - timedelta(minutes=5))])
        await self.sustained(audio)
        assert audio_arbiter.handle_signal(audio.channel.get_nowait()) is None

        clock.now = T + timedelta(hours=3)
        await self.sustained(audio, polls=3)

        assert audio.channel.qsize() == 1
        assert audio_arbiter.handle_signal(audio.channel.get_nowait()) is not None
        bridge.show_native_notification.assert_called_once()


class TestPreferences:
    def test_disable_source(self, arbiter, bridge, sources):
        arbiter.handle_signal(started("process", "zoom", appName="Zoom"))

        prefs = arbiter.set_preferences(process_detection=False)

        assert prefs == {"process_detection": False, "audio_detection": True}
        assert sources["process"].stopped == 1
        assert arbiter.detections == {}
        assert arbiter.handle_signal(started("process", "teams", appName="Teams")) is None
        assert bridge.show_native_notification.call_count == 1

    def test_enable_source(self, arbiter, sources):
        arbiter.set_preferences(audio_detection=False)
        arbiter.set_preferences(audio_detection=True)
        assert sources["audio"].stopped == 1
        assert sources["audio"].started == 1

    def test_unset_values_unchanged(self, arbiter, sources):
        arbiter.set_preferences()
        assert arbiter.get_preferences() == {"process_detection": True, "audio_detection": True}
        assert sources["process"].stopped == 0


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_consumes_channel(self, store, bridge, clock, sources):
        scheduler = MeetingScheduler(store, bridge, clock=clock)
        channel = asyncio.Queue()
        arbiter = DetectionArbiter(
            scheduler, bridge, list(sources.values()), channel,
            audio_detection=False, clock=clock,
        )

        arbiter.start()
        assert sources["process"].started == 1
        assert sources["audio"].started == 0

        channel.put_nowait(started("process", "zoom", appName="Zoom"))
        for _ in range(5):
            await asyncio.sleep(0)
        assert "process:zoom" in arbiter.detections

        arbiter.stop()
        assert arbiter.detections == {}
        assert sources["process"].stopped == 1
        assert sources["audio"].stopped == 1
