"""
Heuristic meeting signal sources.

Each source polls a cheap OS probe and publishes SignalEvents on a shared
asyncio.Queue. Probes shell out (pgrep, lsof, pactl...) and run in a worker
thread so the event loop never blocks; only their boolean result comes back.
A probe that fails is logged and counts as "not active."

Probe accuracy is best-effort: the detectors only need to say "something
that looks like a meeting is happening," and the arbiter decides what to do
with that.
"""

import asyncio
import logging
import subprocess
import sys
import time
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from calendar_models import utc_now

logger = logging.getLogger(__name__)

PROCESS_POLL_SECONDS = 20
AUDIO_POLL_SECONDS = 5
SUSTAINED_THRESHOLD_CHECKS = 3
AUDIO_COOLDOWN_SECONDS = 30 * 60
PROBE_TIMEOUT = 3


class SignalKind(str, Enum):
    STARTED = "signal-started"
    ENDED = "signal-ended"


class SignalEvent:
    def __init__(
        self,
        kind: SignalKind,
        source_name: str,
        key: str,
        payload: Optional[dict] = None,
        timestamp: Optional[datetime] = None,
    ):
        self.kind = kind
        self.source_name = source_name
        self.key = key
        self.payload = payload or {}
        self.timestamp = timestamp or utc_now()

    def __repr__(self) -> str:
        return f"SignalEvent({self.kind.value}, {self.source_name}:{self.key})"


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------


def _run(cmd: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(cmd, capture_output=True, text=True, timeout=PROBE_TIMEOUT)


def has_process_exact(name: str) -> bool:
    try:
        return _run(["pgrep", "-x", name]).returncode == 0
    except (subprocess.TimeoutExpired, OSError):
        return False


def has_process(name: str) -> bool:
    try:
        if sys.platform == "win32":
            result = _run(["tasklist", "/FI", f"IMAGENAME eq {name}", "/NH"])
            return name.lower() in result.stdout.lower()
        return _run(["pgrep", "-f", name]).returncode == 0
    except (subprocess.TimeoutExpired, OSError):
        return False


def has_active_audio(app_name: str) -> bool:
    """True when the app holds CoreAudio handles. Only meaningful on macOS."""
    if sys.platform != "darwin":
        return True
    try:
        result = _run(["lsof", "-c", app_name])
        return "coreaudio" in result.stdout.lower()
    except (subprocess.TimeoutExpired, OSError):
        return False


def mic_active() -> bool:
    """Best-effort check for any process capturing from a microphone."""
    try:
        if sys.platform == "darwin":
            result = _run(["ioreg", "-l", "-w", "0"])
            return '"IOAudioEngineState" = 1' in result.stdout
        if sys.platform.startswith("linux"):
            result = _run(["pactl", "list", "source-outputs", "short"])
            return result.returncode == 0 and bool(result.stdout.strip())
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.debug(f"Mic check failed: {e}")
    return False


class MeetingApp:
    def __init__(self, process_key: str, app_name: str, check: Callable[[], bool]):
        self.process_key = process_key
        self.app_name = app_name
        self.check = check


def default_meeting_apps(platform: str = sys.platform) -> list[MeetingApp]:
    if platform == "darwin":
        return [
            # CptHost only runs while a Zoom meeting is in progress.
            MeetingApp("zoom", "Zoom", lambda: has_process_exact("CptHost")),
            MeetingApp("teams", "Microsoft Teams", lambda: has_process("MSTeams") and has_active_audio("MSTeams")),
            MeetingApp("facetime", "FaceTime", lambda: has_process_exact("FaceTime") and has_active_audio("FaceTime")),
            MeetingApp("webex", "Webex", lambda: has_process("webexmeetingsapp")),
        ]
    if platform == "win32":
        return [
            MeetingApp("zoom", "Zoom", lambda: has_process("CptHost.exe")),
            MeetingApp("teams", "Microsoft Teams", lambda: has_process("ms-teams_modulehost.exe")),
            MeetingApp("webex", "Webex", lambda: has_process("webexmeetingsapp.exe")),
        ]
    if platform.startswith("linux"):
        return [
            MeetingApp("zoom", "Zoom", lambda: has_process("zoom")),
            MeetingApp("teams", "Microsoft Teams", lambda: has_process("teams")),
        ]
    return []


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


class SignalSource:
    name = "signal"
    # Momentary sources never publish ENDED; their detection clears once handled.
    momentary = False

    def __init__(self, channel: asyncio.Queue, *, interval_seconds: float):
        self.channel = channel
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        logger.info(f"{self.name} detector started (interval={self.interval_seconds}s)")
        self._task = asyncio.create_task(self._poll_loop(), name=f"{self.name}-detector")

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.info(f"{self.name} detector stopped")
        self.reset()

    def reset(self) -> None:
        pass

    def dismiss(self, key: Optional[str] = None) -> None:
        raise NotImplementedError

    async def poll(self) -> None:
        raise NotImplementedError

    def publish(self, kind: SignalKind, key: str, payload: Optional[dict] = None) -> None:
        self.channel.put_nowait(SignalEvent(kind, self.name, key, payload))

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll()
            except Exception as e:
                logger.warning(f"{self.name} poll error: {e}")
            await asyncio.sleep(self.interval_seconds)


class ProcessPresenceSource(SignalSource):
    name = "process"

    def __init__(
        self,
        channel: asyncio.Queue,
        *,
        apps: Optional[list[MeetingApp]] = None,
        interval_seconds: float = PROCESS_POLL_SECONDS,
    ):
        super().__init__(channel, interval_seconds=interval_seconds)
        self.apps = apps if apps is not None else default_meeting_apps()
        self.detected: dict[str, datetime] = {}
        self.dismissed: set[str] = set()

    def reset(self) -> None:
        self.detected.clear()

    def dismiss(self, key: Optional[str] = None) -> None:
        if key is None:
            self.dismissed.update(self.detected)
        else:
            self.dismissed.add(key)
        logger.info(f"Process detection dismissed: {key or 'all'}")

    async def poll(self) -> None:
        for app in self.apps:
            try:
                running = await asyncio.to_thread(app.check)
            except Exception as e:
                logger.debug(f"Process check for {app.app_name} failed: {e}")
                running = False

            key = app.process_key
            if running:
                if key not in self.detected and key not in self.dismissed:
                    detected_at = utc_now()
                    self.detected[key] = detected_at
                    logger.info(f"Meeting process detected: {app.app_name}")
                    self.publish(SignalKind.STARTED, key, {
                        "processKey": key,
                        "appName": app.app_name,
                        "detectedAt": detected_at.isoformat(),
                    })
            else:
                if key in self.detected:
                    del self.detected[key]
                    logger.info(f"Meeting process ended: {app.app_name}")
                    self.publish(SignalKind.ENDED, key, {"processKey": key, "appName": app.app_name})
                # A dismissal lasts until the app goes away.
                self.dismissed.discard(key)


class SustainedAudioSource(SignalSource):
    name = "audio"
    key = "sustained-audio"
    momentary = True

    def __init__(
        self,
        channel: asyncio.Queue,
        *,
        probe: Callable[[], bool] = mic_active,
        interval_seconds: float = AUDIO_POLL_SECONDS,
        threshold_checks: int = SUSTAINED_THRESHOLD_CHECKS,
        cooldown_seconds: float = AUDIO_COOLDOWN_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        super().__init__(channel, interval_seconds=interval_seconds)
        self.probe = probe
        self.threshold_checks = threshold_checks
        self.cooldown_seconds = cooldown_seconds
        self._monotonic = monotonic
        self.consecutive_checks = 0
        self.active_since: Optional[float] = None
        self.has_prompted = False
        self.last_dismissed_at: Optional[float] = None

    def reset(self) -> None:
        self.consecutive_checks = 0
        self.active_since = None
        self.has_prompted = False

    def dismiss(self, key: Optional[str] = None) -> None:
        self.last_dismissed_at = self._monotonic()
        self.reset()
        logger.info(f"Audio detection dismissed, cooldown {self.cooldown_seconds:.0f}s")

    def in_cooldown(self) -> bool:
        return (
            self.last_dismissed_at is not None
            and self._monotonic() - self.last_dismissed_at < self.cooldown_seconds
        )

    async def poll(self) -> None:
        if self.in_cooldown() or self.has_prompted:
            return

        try:
            active = await asyncio.to_thread(self.probe)
        except Exception as e:
            logger.debug(f"Mic probe failed: {e}")
            active = False

        if not active:
            if self.consecutive_checks:
                logger.debug(f"Mic activity reset after {self.consecutive_checks} checks")
            self.consecutive_checks = 0
            self.active_since = None
            return

        now = self._monotonic()
        self.consecutive_checks += 1
        if self.active_since is None:
            self.active_since = now
        if self.consecutive_checks >= self.threshold_checks:
            self.has_prompted = True
            duration_ms = int((now - self.active_since) * 1000)
            logger.info(f"Sustained audio activity detected ({self.consecutive_checks} checks)")
            self.publish(SignalKind.STARTED, self.key, {
                "durationMs": duration_ms,
                "detectedAt": utc_now().isoformat(),
            })
