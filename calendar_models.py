"""
Data model shared by the calendar and detection services.

Persisted shapes (Credential, Calendar, CalendarEvent) are pydantic models so
they serialize straight into API responses. Detection is transient and lives
only in DetectionArbiter's memory.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

STATUS_CONFIRMED = "confirmed"
STATUS_CANCELLED = "cancelled"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(utc_now().timestamp() * 1000)


def parse_google_datetime(value: str) -> datetime:
    """Parse an RFC 3339 timestamp or a bare date into an aware UTC datetime."""
    if len(value) == 10:
        return datetime.combine(date.fromisoformat(value), datetime.min.time(), tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_rfc3339(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Credential(BaseModel):
    account_email: str
    access_token: str
    refresh_token: str
    expires_at: int  # epoch ms
    scope: str


class Calendar(BaseModel):
    id: str
    summary: str
    description: Optional[str] = None
    color: Optional[str] = None
    is_selected: bool = True
    sync_cursor: Optional[str] = None

    @classmethod
    def from_google(cls, item: dict) -> "Calendar":
        return cls(
            id=item["id"],
            summary=item.get("summary") or item["id"],
            description=item.get("description") or None,
            color=item.get("backgroundColor") or None,
        )


class CalendarEvent(BaseModel):
    id: str
    calendar_id: str
    summary: Optional[str] = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    status: str = STATUS_CONFIRMED
    hangout_link: Optional[str] = None
    conference_data: Optional[dict[str, Any]] = None
    organizer_email: Optional[str] = None
    attendees_count: int = 0
    synced_at: Optional[datetime] = None

    @classmethod
    def from_google(cls, item: dict, calendar_id: str) -> "CalendarEvent":
        """Map a Google Calendar event resource onto the local shape.

        Events without ``start.dateTime`` are all-day; they keep their date
        (midnight UTC) so they can be stored, and the scheduler skips them.
        """
        start = item.get("start") or {}
        end = item.get("end") or {}
        is_all_day = not start.get("dateTime")
        start_raw = start.get("dateTime") or start.get("date")
        end_raw = end.get("dateTime") or end.get("date") or start_raw
        if not start_raw:
            raise ValueError(f"Event {item.get('id')!r} has no start time")

        return cls(
            id=item["id"],
            calendar_id=calendar_id,
            summary=item.get("summary") or None,
            start_time=parse_google_datetime(start_raw),
            end_time=parse_google_datetime(end_raw),
            is_all_day=is_all_day,
            status=item.get("status") or STATUS_CONFIRMED,
            hangout_link=item.get("hangoutLink") or None,
            conference_data=item.get("conferenceData") or None,
            organizer_email=(item.get("organizer") or {}).get("email"),
            attendees_count=len(item.get("attendees") or []),
        )

    def is_active(self, now: datetime) -> bool:
        return self.start_time <= now < self.end_time


class Detection:
    """An open heuristic meeting signal awaiting a user response."""

    def __init__(self, source: str, key: str, payload: dict, subject: dict, detected_at: datetime):
        self.source = source
        self.key = key
        self.payload = payload
        self.subject = subject
        self.detected_at = detected_at
        self.dismissed = False

    @property
    def detection_id(self) -> str:
        return f"{self.source}:{self.key}"

    def to_dict(self) -> dict:
        return {
            "detectionId": self.detection_id,
            "source": self.source,
            "key": self.key,
            "payload": self.payload,
            "subject": self.subject,
            "detectedAt": self.detected_at.isoformat(),
            "dismissed": self.dismissed,
        }


def detected_subject(app_name: Optional[str], now: datetime) -> dict:
    """Generic prompt subject for a heuristic detection with no calendar match."""
    return {
        "id": f"detected-{int(now.timestamp() * 1000)}",
        "calendar_id": "__detected__",
        "summary": f"{app_name} Meeting" if app_name else "Detected Meeting",
        "start_time": now.isoformat(),
        "end_time": (now + timedelta(hours=1)).isoformat(),
        "is_all_day": False,
        "status": STATUS_CONFIRMED,
        "hangout_link": None,
        "conference_data": None,
        "organizer_email": None,
        "attendees_count": 0,
    }


class ConnectionStatus(BaseModel):
    connected: bool
    email: Optional[str] = None
    expiresAt: Optional[int] = Field(default=None)
