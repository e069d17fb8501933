"""idstitch.core.events

Event store. Append-only, with exactly one exception: `user_id` may be
rewritten when an anonymous history is stitched to a user. `distinct_id`
is what the client sent and stays that way.
"""

from __future__ import annotations

import json
import sqlite3

from idstitch.core.models import CanonicalEvent, Event, EventCategory, Platform
from idstitch.core.time import parse_dt, to_iso

IDENTIFY_EVENT = "$identify"
PROFILE_SET_EVENT = "$profile_set"

_COLUMNS = (
    "id, event_name, event_category, event_detail, distinct_id, user_id, "
    "session_id, platform, country_code, ts, properties"
)


def _row_to_event(row: sqlite3.Row) -> Event:
    return Event(
        id=int(row["id"]),
        event_name=str(row["event_name"]),
        event_category=EventCategory(row["event_category"] or EventCategory.GENERAL),
        event_detail=row["event_detail"],
        distinct_id=str(row["distinct_id"]),
        user_id=row["user_id"],
        session_id=row["session_id"],
        platform=Platform(str(row["platform"])),
        country_code=row["country_code"],
        timestamp=parse_dt(str(row["ts"])),
        properties=json.loads(row["properties"] or "{}"),
    )


class EventStore:
    """Data access for `events`, bound to one transaction's connection."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def insert(self, event: CanonicalEvent) -> int:
        cur = self._conn.execute(
            """
            INSERT INTO events (
                event_name, event_category, event_detail, distinct_id, user_id,
                session_id, platform, country_code, ts, properties
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.event_name,
                str(event.event_category),
                event.event_detail,
                event.distinct_id,
                event.user_id,
                event.session_id,
                str(event.platform),
                event.country_code,
                to_iso(event.timestamp),
                json.dumps(event.properties, sort_keys=True),
            ),
        )
        return int(cur.lastrowid)

    def get(self, record_id: int) -> Event | None:
        row = self._conn.execute(f"SELECT {_COLUMNS} FROM events WHERE id = ?", (record_id,)).fetchone()
        return None if row is None else _row_to_event(row)

    def list_for_distinct_id(self, distinct_id: str, limit: int | None = None) -> list[Event]:
        """Oldest first. With `limit`, only the most recent `limit` events."""

        if limit is None:
            rows = self._conn.execute(
                f"SELECT {_COLUMNS} FROM events WHERE distinct_id = ? ORDER BY ts ASC, id ASC",
                (distinct_id,),
            ).fetchall()
        else:
            rows = self._conn.execute(
                f"SELECT {_COLUMNS} FROM events WHERE distinct_id = ? ORDER BY ts DESC, id DESC LIMIT ?",
                (distinct_id, limit),
            ).fetchall()[::-1]
        return [_row_to_event(r) for r in rows]

    def count_restitchable(self, distinct_id: str, user_id: str) -> int:
        """Events of `distinct_id` not yet attributed to `user_id`."""

        row = self._conn.execute(
            """
            SELECT COUNT(*) FROM events
            WHERE distinct_id = ? AND (user_id IS NULL OR user_id != ?)
            """,
            (distinct_id, user_id),
        ).fetchone()
        return int(row[0])

    def relabel(self, distinct_id: str, user_id: str) -> int:
        """Point every event of `distinct_id` at `user_id`. One statement."""

        cur = self._conn.execute(
            """
            UPDATE events SET user_id = ?
            WHERE distinct_id = ? AND (user_id IS NULL OR user_id != ?)
            """,
            (user_id, distinct_id, user_id),
        )
        return int(cur.rowcount)
