"""idstitch.core.stats

Read-only views over the store: aggregate counts, recent conflicts and
per-identifier lookups.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

from idstitch.core.audit import CONFLICT_ACTION, AuditEntry, AuditLogger
from idstitch.core.database import Database
from idstitch.core.events import IDENTIFY_EVENT, EventStore
from idstitch.core.identities import IdentityStore
from idstitch.core.ingestion import resolve_user_id
from idstitch.core.mappings import MappingLedger
from idstitch.core.models import Event, Identity, IdentityMapping, IdentityState, MappingType
from idstitch.core.time import to_iso, utc_now

RECENT_WINDOW = timedelta(hours=24)


@dataclass(frozen=True)
class StoreStats:
    total_events: int
    events_last_24h: int
    identifications_last_24h: int
    events_stitched_total: int
    total_identities: int
    identities_by_state: dict[str, int] = field(default_factory=dict)
    total_mappings: int = 0
    conflicts_last_24h: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def collect_stats(db: Database, now: datetime | None = None) -> StoreStats:
    """Snapshot of store-wide counts. Raises `TransientStoreError` if the store is unreachable."""

    window_start = (now or utc_now()) - RECENT_WINDOW
    since = to_iso(window_start)
    with db.read() as conn:
        total_events = conn.execute("SELECT COUNT(*) FROM events").fetchone()[0]
        events_recent = conn.execute("SELECT COUNT(*) FROM events WHERE ts >= ?", (since,)).fetchone()[0]
        identifications = conn.execute(
            "SELECT COUNT(*) FROM events WHERE event_name = ? AND ts >= ?",
            (IDENTIFY_EVENT, since),
        ).fetchone()[0]
        stitched = conn.execute("SELECT COALESCE(SUM(events_stitched), 0) FROM identity_mappings").fetchone()[0]
        total_mappings = conn.execute("SELECT COUNT(*) FROM identity_mappings").fetchone()[0]
        rows = conn.execute("SELECT state, COUNT(*) FROM identities GROUP BY state").fetchall()
        conflicts = AuditLogger(conn).count_since(CONFLICT_ACTION, window_start)

    by_state = {str(s): 0 for s in IdentityState}
    for state, count in rows:
        by_state[str(state)] = int(count)

    return StoreStats(
        total_events=int(total_events),
        events_last_24h=int(events_recent),
        identifications_last_24h=int(identifications),
        events_stitched_total=int(stitched),
        total_identities=sum(by_state.values()),
        identities_by_state=by_state,
        total_mappings=int(total_mappings),
        conflicts_last_24h=conflicts,
    )


def recent_conflicts(db: Database, limit: int = 5) -> list[AuditEntry]:
    """Latest identify conflicts (an anonymous id re-identified as a different user)."""

    with db.read() as conn:
        return AuditLogger(conn).recent(CONFLICT_ACTION, limit=limit)


@dataclass(frozen=True)
class IdentifierReport:
    """Everything the store knows about one identifier."""

    distinct_id: str
    user_id: str | None
    identity: Identity | None
    mapping: IdentityMapping | None
    events: list[Event] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "distinct_id": self.distinct_id,
            "user_id": self.user_id,
            "identity": None if self.identity is None else self.identity.model_dump(mode="json"),
            "mapping": None if self.mapping is None else self.mapping.model_dump(mode="json"),
            "events": [e.model_dump(mode="json") for e in self.events],
        }


def lookup_identifier(db: Database, distinct_id: str, *, event_limit: int = 20) -> IdentifierReport:
    """Identity row (following promotion), canonical user, merge edge and latest events for `distinct_id`."""

    with db.read() as conn:
        identity = IdentityStore(conn).find_for_identifier(distinct_id)
        user_id = resolve_user_id(conn, distinct_id)
        mapping = None
        if user_id is not None:
            mapping = MappingLedger(conn).get(user_id, distinct_id, MappingType.DEVICE_ID)
        events = EventStore(conn).list_for_distinct_id(distinct_id, limit=event_limit)

    return IdentifierReport(
        distinct_id=distinct_id,
        user_id=user_id,
        identity=identity,
        mapping=mapping,
        events=events,
    )
