"""
SQLite persistence for credentials, calendars and calendar events.

Calls are synchronous; the daemon runs everything on one event loop so each
write completes before the next begins. Timestamps are stored as fixed-width
UTC strings so range queries can compare them lexically.
"""

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Optional

from calendar_models import Calendar, CalendarEvent, Credential, STATUS_CONFIRMED, utc_now

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS credentials (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    account_email TEXT NOT NULL,
    access_token TEXT NOT NULL,
    refresh_token TEXT NOT NULL,
    expires_at INTEGER NOT NULL,
    scope TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS calendars (
    id TEXT PRIMARY KEY,
    summary TEXT NOT NULL,
    description TEXT,
    color TEXT,
    is_selected INTEGER NOT NULL DEFAULT 1,
    sync_cursor TEXT
);

CREATE TABLE IF NOT EXISTS calendar_events (
    id TEXT NOT NULL,
    calendar_id TEXT NOT NULL,
    summary TEXT,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    is_all_day INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'confirmed',
    hangout_link TEXT,
    conference_data TEXT,
    organizer_email TEXT,
    attendees_count INTEGER NOT NULL DEFAULT 0,
    synced_at TEXT NOT NULL,
    PRIMARY KEY (calendar_id, id)
);

CREATE INDEX IF NOT EXISTS idx_calendar_events_start ON calendar_events (start_time);
"""

# Only confirmed, timed events on selected calendars count as meetings.
_SCHEDULABLE = (
    "is_all_day = 0 AND status = ? "
    "AND calendar_id IN (SELECT id FROM calendars WHERE is_selected = 1)"
)


def _ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _from_ts(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


def _row_to_event(row: sqlite3.Row) -> CalendarEvent:
    return CalendarEvent(
        id=row["id"],
        calendar_id=row["calendar_id"],
        summary=row["summary"],
        start_time=_from_ts(row["start_time"]),
        end_time=_from_ts(row["end_time"]),
        is_all_day=bool(row["is_all_day"]),
        status=row["status"],
        hangout_link=row["hangout_link"],
        conference_data=json.loads(row["conference_data"]) if row["conference_data"] else None,
        organizer_email=row["organizer_email"],
        attendees_count=row["attendees_count"],
        synced_at=_from_ts(row["synced_at"]),
    )


def _row_to_calendar(row: sqlite3.Row) -> Calendar:
    return Calendar(
        id=row["id"],
        summary=row["summary"],
        description=row["description"],
        color=row["color"],
        is_selected=bool(row["is_selected"]),
        sync_cursor=row["sync_cursor"],
    )


class CalendarStore:
    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)
        logger.info(f"Calendar store ready: {db_path}")

    def close(self) -> None:
        self._conn.close()

    # -------------------------------------------------------------------
    # Credential (singleton row)
    # -------------------------------------------------------------------

    def save_credential(self, credential: Credential) -> None:
        with self._conn:
            self._conn.execute("DELETE FROM credentials")
            self._conn.execute(
                "INSERT INTO credentials (id, account_email, access_token, refresh_token, expires_at, scope, updated_at) "
                "VALUES (1, ?, ?, ?, ?, ?, ?)",
                (
                    credential.account_email,
                    credential.access_token,
                    credential.refresh_token,
                    credential.expires_at,
                    credential.scope,
                    _ts(utc_now()),
                ),
            )

    def get_credential(self) -> Optional[Credential]:
        row = self._conn.execute("SELECT * FROM credentials LIMIT 1").fetchone()
        if row is None:
            return None
        return Credential(
            account_email=row["account_email"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            scope=row["scope"],
        )

    def delete_credential(self) -> None:
        with self._conn:
            self._conn.execute("DELETE FROM credentials")

    # -------------------------------------------------------------------
    # Calendars
    # -------------------------------------------------------------------

    def upsert_calendars(self, calendars: Iterable[Calendar]) -> None:
        """Insert or refresh calendar metadata; selection and cursor are left alone."""
        with self._conn:
            self._conn.executemany(
                "INSERT INTO calendars (id, summary, description, color) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET summary = excluded.summary, "
                "description = excluded.description, color = excluded.color",
                [(c.id, c.summary, c.description, c.color) for c in calendars],
            )

    def get_calendars(self) -> list[Calendar]:
        rows = self._conn.execute("SELECT * FROM calendars ORDER BY summary").fetchall()
        return [_row_to_calendar(r) for r in rows]

    def get_calendar(self, calendar_id: str) -> Optional[Calendar]:
        row = self._conn.execute("SELECT * FROM calendars WHERE id = ?", (calendar_id,)).fetchone()
        return _row_to_calendar(row) if row else None

    def get_selected_calendars(self) -> list[Calendar]:
        rows = self._conn.execute(
            "SELECT * FROM calendars WHERE is_selected = 1 ORDER BY summary"
        ).fetchall()
        return [_row_to_calendar(r) for r in rows]

    def set_calendar_selection(self, calendar_id: str, selected: bool) -> bool:
        with self._conn:
            cur = self._conn.execute(
                "UPDATE calendars SET is_selected = ? WHERE id = ?",
                (1 if selected else 0, calendar_id),
            )
        return cur.rowcount > 0

    def set_calendar_sync_cursor(self, calendar_id: str, cursor: Optional[str]) -> None:
        with self._conn:
            self._conn.execute(
                "UPDATE calendars SET sync_cursor = ? WHERE id = ?", (cursor, calendar_id)
            )

    # -------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------

    def upsert_events(self, events: list[CalendarEvent]) -> None:
        if not events:
            return
        synced_at = _ts(utc_now())
        with self._conn:
            self._conn.executemany(
                "INSERT OR REPLACE INTO calendar_events (id, calendar_id, summary, start_time, end_time, "
                "is_all_day, status, hangout_link, conference_data, organizer_email, attendees_count, synced_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        e.id,
                        e.calendar_id,
                        e.summary,
                        _ts(e.start_time),
                        _ts(e.end_time),
                        1 if e.is_all_day else 0,
                        e.status,
                        e.hangout_link,
                        json.dumps(e.conference_data) if e.conference_data else None,
                        e.organizer_email,
                        e.attendees_count,
                        synced_at,
                    )
                    for e in events
                ],
            )

    def remove_events(self, event_ids: list[str], calendar_id: Optional[str] = None) -> None:
        if not event_ids:
            return
        placeholders = ",".join("?" for _ in event_ids)
        sql = f"DELETE FROM calendar_events WHERE id IN ({placeholders})"
        params: list = list(event_ids)
        if calendar_id is not None:
            sql += " AND calendar_id = ?"
            params.append(calendar_id)
        with self._conn:
            self._conn.execute(sql, params)

    def get_event(self, calendar_id: str, event_id: str) -> Optional[CalendarEvent]:
        row = self._conn.execute(
            "SELECT * FROM calendar_events WHERE calendar_id = ? AND id = ?", (calendar_id, event_id)
        ).fetchone()
        return _row_to_event(row) if row else None

    def get_active_events(self, now: Optional[datetime] = None) -> list[CalendarEvent]:
        now = now or utc_now()
        rows = self._conn.execute(
            f"SELECT * FROM calendar_events WHERE start_time <= ? AND end_time > ? AND {_SCHEDULABLE} "
            "ORDER BY start_time ASC",
            (_ts(now), _ts(now), STATUS_CONFIRMED),
        ).fetchall()
        return [_row_to_event(r) for r in rows]

    def get_upcoming_events(self, window_minutes: float = 1440, now: Optional[datetime] = None) -> list[CalendarEvent]:
        now = now or utc_now()
        horizon = now + timedelta(minutes=window_minutes)
        rows = self._conn.execute(
            f"SELECT * FROM calendar_events WHERE start_time > ? AND start_time <= ? AND {_SCHEDULABLE} "
            "ORDER BY start_time ASC",
            (_ts(now), _ts(horizon), STATUS_CONFIRMED),
        ).fetchall()
        return [_row_to_event(r) for r in rows]

    def clear_calendar_data(self) -> None:
        with self._conn:
            self._conn.execute("DELETE FROM calendar_events")
            self._conn.execute("DELETE FROM calendars")
            self._conn.execute("DELETE FROM credentials")
        logger.info("Calendar data cleared")
