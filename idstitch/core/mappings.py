"""idstitch.core.mappings

Identity mapping ledger. One row per (canonical user, mapped id, type);
repeat merges re-affirm the row and add to `events_stitched`.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime

from idstitch.core.models import IdentityMapping, MappingType
from idstitch.core.time import parse_dt, to_iso, utc_now

IDENTIFY_SOURCE = "identify_call"


def _row_to_mapping(row: sqlite3.Row) -> IdentityMapping:
    return IdentityMapping(
        id=int(row["id"]),
        canonical_user_id=str(row["canonical_user_id"]),
        mapped_id=str(row["mapped_id"]),
        mapping_type=MappingType(str(row["mapping_type"])),
        confidence_score=float(row["confidence_score"]),
        source=str(row["source"]),
        events_stitched=int(row["events_stitched"]),
        first_seen=parse_dt(str(row["first_seen"])),
        last_seen=parse_dt(str(row["last_seen"])),
    )


class MappingLedger:
    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def record_merge(
        self,
        canonical_user_id: str,
        mapped_id: str,
        mapping_type: MappingType,
        source: str = IDENTIFY_SOURCE,
        events_stitched_delta: int = 0,
        *,
        now: datetime | None = None,
    ) -> None:
        if events_stitched_delta < 0:
            raise ValueError("events_stitched_delta must be >= 0")

        ts = to_iso(now or utc_now())
        self._conn.execute(
            """
            INSERT INTO identity_mappings (
                canonical_user_id, mapped_id, mapping_type, source, events_stitched,
                first_seen, last_seen, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (canonical_user_id, mapped_id, mapping_type) DO UPDATE SET
                events_stitched = identity_mappings.events_stitched + excluded.events_stitched,
                last_seen = excluded.last_seen,
                updated_at = excluded.updated_at
            """,
            (canonical_user_id, mapped_id, str(mapping_type), source, events_stitched_delta, ts, ts, ts, ts),
        )

    def find_latest_mapping(self, mapped_id: str, mapping_type: MappingType) -> IdentityMapping | None:
        """Highest-confidence edge for `mapped_id`; most recently seen wins ties."""

        row = self._conn.execute(
            """
            SELECT * FROM identity_mappings
            WHERE mapped_id = ? AND mapping_type = ?
            ORDER BY confidence_score DESC, last_seen DESC, id DESC
            LIMIT 1
            """,
            (mapped_id, str(mapping_type)),
        ).fetchone()
        return None if row is None else _row_to_mapping(row)

    def get(self, canonical_user_id: str, mapped_id: str, mapping_type: MappingType) -> IdentityMapping | None:
        row = self._conn.execute(
            """
            SELECT * FROM identity_mappings
            WHERE canonical_user_id = ? AND mapped_id = ? AND mapping_type = ?
            """,
            (canonical_user_id, mapped_id, str(mapping_type)),
        ).fetchone()
        return None if row is None else _row_to_mapping(row)
