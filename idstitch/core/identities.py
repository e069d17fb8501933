"""idstitch.core.identities

Identity store: one row per distinct identifier ever seen.

`device_ids` lives in `identity_devices`, whose primary key makes it a set.
Rows move from anonymous to identified and never back.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime

from idstitch.core.exceptions import InvariantViolation
from idstitch.core.models import Identity, IdentityState, ProfileFields
from idstitch.core.time import parse_dt, to_iso, utc_now

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, distinct_id, user_id, anonymous_id, state, email, first_name, last_name, "
    "properties, first_seen, last_seen, identified_at"
)


class IdentityStore:
    """Data access for `identities`, bound to one transaction's connection."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    # -----------------
    # Reads
    # -----------------

    def _row(self, distinct_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            f"SELECT {_COLUMNS} FROM identities WHERE distinct_id = ?",
            (distinct_id,),
        ).fetchone()

    def _device_ids(self, identity_id: int) -> frozenset[str]:
        rows = self._conn.execute(
            "SELECT device_id FROM identity_devices WHERE identity_id = ?",
            (identity_id,),
        ).fetchall()
        return frozenset(str(r[0]) for r in rows)

    def _row_to_identity(self, row: sqlite3.Row) -> Identity:
        state = IdentityState(str(row["state"]))
        if state is IdentityState.IDENTIFIED and not row["user_id"]:
            logger.error(
                "identity_invariant_violation",
                extra={"distinct_id": row["distinct_id"], "reason": "identified_without_user_id"},
            )
            raise InvariantViolation(f"identity {row['distinct_id']!r} is identified but has no user_id")

        return Identity(
            id=int(row["id"]),
            distinct_id=str(row["distinct_id"]),
            user_id=row["user_id"],
            anonymous_id=row["anonymous_id"],
            state=state,
            device_ids=self._device_ids(int(row["id"])),
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            properties=json.loads(row["properties"] or "{}"),
            first_seen=parse_dt(str(row["first_seen"])),
            last_seen=parse_dt(str(row["last_seen"])),
            identified_at=parse_dt(str(row["identified_at"])) if row["identified_at"] else None,
        )

    def find_by_distinct_id(self, distinct_id: str) -> Identity | None:
        row = self._row(distinct_id)
        return None if row is None else self._row_to_identity(row)

    def _promoted_id(self, distinct_id: str) -> int | None:
        """Identified row that `distinct_id` was promoted into, once it has no row of its own."""

        row = self._conn.execute(
            """
            SELECT id FROM identities
            WHERE anonymous_id = ?1 AND distinct_id != ?1
              AND NOT EXISTS (SELECT 1 FROM identities WHERE distinct_id = ?1)
            ORDER BY last_seen DESC, id DESC
            LIMIT 1
            """,
            (distinct_id,),
        ).fetchone()
        return None if row is None else int(row[0])

    def find_for_identifier(self, distinct_id: str) -> Identity | None:
        """Like `find_by_distinct_id`, but follows an anonymous id to the row it was promoted into."""

        row = self._row(distinct_id)
        if row is None:
            promoted = self._promoted_id(distinct_id)
            if promoted is not None:
                row = self._conn.execute(f"SELECT {_COLUMNS} FROM identities WHERE id = ?", (promoted,)).fetchone()
        return None if row is None else self._row_to_identity(row)

    def resolve_user_id(self, distinct_id: str) -> str | None:
        """Canonical user for an identifier, if one is known.

        Matches the row's current `distinct_id` first, then rows that were
        promoted from this identifier (`anonymous_id`).
        """

        row = self._conn.execute(
            """
            SELECT user_id FROM identities
            WHERE (distinct_id = ? OR anonymous_id = ?) AND user_id IS NOT NULL
            ORDER BY (distinct_id = ?) DESC, last_seen DESC, id DESC
            LIMIT 1
            """,
            (distinct_id, distinct_id, distinct_id),
        ).fetchone()
        return None if row is None else str(row[0])

    # -----------------
    # Writes
    # -----------------

    def _add_device(self, identity_id: int, device_id: str | None, now: str) -> None:
        if not device_id:
            return
        self._conn.execute(
            "INSERT OR IGNORE INTO identity_devices (identity_id, device_id, first_seen) VALUES (?, ?, ?)",
            (identity_id, device_id, now),
        )

    def upsert(self, distinct_id: str, device_id: str | None = None, *, now: datetime | None = None) -> int:
        """Ensure a row exists for `distinct_id`; refresh `last_seen`; union the device.

        A single insert-or-merge statement, so two concurrent first-seen events
        converge on one row.
        """

        ts = to_iso(now or utc_now())

        # An identifier that was promoted away keeps landing on the identified row.
        promoted = self._promoted_id(distinct_id)
        if promoted is not None:
            identity_id = promoted
            self._conn.execute(
                "UPDATE identities SET last_seen = max(last_seen, ?), updated_at = ? WHERE id = ?",
                (ts, ts, identity_id),
            )
            self._add_device(identity_id, device_id, ts)
            return identity_id

        row = self._conn.execute(
            """
            INSERT INTO identities (distinct_id, state, first_seen, last_seen, created_at, updated_at)
            VALUES (?, 'anonymous', ?, ?, ?, ?)
            ON CONFLICT (distinct_id) DO UPDATE SET
                last_seen = max(identities.last_seen, excluded.last_seen),
                updated_at = excluded.updated_at
            RETURNING id
            """,
            (distinct_id, ts, ts, ts, ts),
        ).fetchone()
        identity_id = int(row[0])
        self._add_device(identity_id, device_id, ts)
        return identity_id

    def promote_to_identified(
        self,
        anonymous_distinct_id: str,
        new_distinct_id: str,
        user_id: str,
        device_id: str | None = None,
        *,
        now: datetime | None = None,
    ) -> int:
        """Mark the identity identified under `new_distinct_id`, keeping its history.

        - anonymous row only: promoted in place (`distinct_id` renamed).
        - identified row only: re-affirmed (`user_id` follows the latest identify).
        - both: the anonymous row is folded into the identified row.
        - neither: a new identified row is created.

        `anonymous_id` is set once and preserved. Runs inside the caller's
        `BEGIN IMMEDIATE` transaction, so the reads below cannot go stale.
        """

        ts = to_iso(now or utc_now())
        anon = self._row(anonymous_distinct_id)
        target = None if new_distinct_id == anonymous_distinct_id else self._row(new_distinct_id)

        if anon is None and target is None:
            row = self._conn.execute(
                """
                INSERT INTO identities (
                    distinct_id, user_id, anonymous_id, state, identified_at,
                    first_seen, last_seen, created_at, updated_at
                ) VALUES (?, ?, ?, 'identified', ?, ?, ?, ?, ?)
                RETURNING id
                """,
                (new_distinct_id, user_id, anonymous_distinct_id, ts, ts, ts, ts, ts),
            ).fetchone()
            identity_id = int(row[0])

        elif target is None:
            identity_id = int(anon["id"])
            self._conn.execute(
                """
                UPDATE identities SET
                    distinct_id = ?,
                    user_id = ?,
                    anonymous_id = COALESCE(anonymous_id, ?),
                    state = 'identified',
                    identified_at = COALESCE(identified_at, ?),
                    last_seen = max(last_seen, ?),
                    updated_at = ?
                WHERE id = ?
                """,
                (new_distinct_id, user_id, anonymous_distinct_id, ts, ts, ts, identity_id),
            )

        else:
            identity_id = int(target["id"])
            if anon is not None:
                self._fold_into(anon, identity_id)
            self._conn.execute(
                """
                UPDATE identities SET
                    user_id = ?,
                    anonymous_id = COALESCE(anonymous_id, ?),
                    state = 'identified',
                    identified_at = COALESCE(identified_at, ?),
                    last_seen = max(last_seen, ?),
                    updated_at = ?
                WHERE id = ?
                """,
                (user_id, anonymous_distinct_id, ts, ts, ts, identity_id),
            )

        self._add_device(identity_id, device_id, ts)
        return identity_id

    def _fold_into(self, source: sqlite3.Row, target_id: int) -> None:
        """Move devices and missing profile fields from `source` into `target_id`, then drop `source`."""

        source_id = int(source["id"])
        self._conn.execute(
            """
            INSERT OR IGNORE INTO identity_devices (identity_id, device_id, first_seen)
            SELECT ?, device_id, first_seen FROM identity_devices WHERE identity_id = ?
            """,
            (target_id, source_id),
        )
        self._conn.execute(
            """
            UPDATE identities SET
                anonymous_id = COALESCE(anonymous_id, ?),
                email = COALESCE(email, ?),
                first_name = COALESCE(first_name, ?),
                last_name = COALESCE(last_name, ?),
                properties = json_patch(COALESCE(?, '{}'), COALESCE(properties, '{}')),
                first_seen = min(first_seen, ?)
            WHERE id = ?
            """,
            (
                source["anonymous_id"],
                source["email"],
                source["first_name"],
                source["last_name"],
                source["properties"],
                source["first_seen"],
                target_id,
            ),
        )
        self._conn.execute("DELETE FROM identities WHERE id = ?", (source_id,))

    def update_profile(self, distinct_id: str, fields: ProfileFields, *, now: datetime | None = None) -> int:
        """Last write wins per supplied field; fields that are `None` are left alone.

        Custom properties merge per key into the stored map. An identifier that
        was promoted away updates the identified row it now belongs to.
        """

        ts = to_iso(now or utc_now())
        props = json.dumps(fields.properties, sort_keys=True) if fields.properties else None

        promoted = self._promoted_id(distinct_id)
        if promoted is not None:
            self._conn.execute(
                """
                UPDATE identities SET
                    email = COALESCE(?, email),
                    first_name = COALESCE(?, first_name),
                    last_name = COALESCE(?, last_name),
                    properties = CASE
                        WHEN ? IS NULL THEN properties
                        ELSE json_patch(COALESCE(properties, '{}'), ?)
                    END,
                    last_seen = max(last_seen, ?),
                    updated_at = ?
                WHERE id = ?
                """,
                (fields.email, fields.first_name, fields.last_name, props, props, ts, ts, promoted),
            )
            return promoted

        row = self._conn.execute(
            """
            INSERT INTO identities (
                distinct_id, state, email, first_name, last_name, properties,
                first_seen, last_seen, created_at, updated_at
            ) VALUES (?, 'anonymous', ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (distinct_id) DO UPDATE SET
                email = COALESCE(excluded.email, identities.email),
                first_name = COALESCE(excluded.first_name, identities.first_name),
                last_name = COALESCE(excluded.last_name, identities.last_name),
                properties = CASE
                    WHEN excluded.properties IS NULL THEN identities.properties
                    ELSE json_patch(COALESCE(identities.properties, '{}'), excluded.properties)
                END,
                last_seen = max(identities.last_seen, excluded.last_seen),
                updated_at = excluded.updated_at
            RETURNING id
            """,
            (distinct_id, fields.email, fields.first_name, fields.last_name, props, ts, ts, ts, ts),
        ).fetchone()
        return int(row[0])
