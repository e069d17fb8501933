"""idstitch.core.audit

Database-backed audit trail for identity merges.

Written in the same transaction as the merge it describes: if the merge
rolls back, so does its audit row. Read back by `idstitch status` so an
operator can see which anonymous ids changed hands.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from idstitch.core.time import parse_dt, to_iso, utc_now

STITCH_ACTION = "identity.stitch"
CONFLICT_ACTION = "identity.conflict"


@dataclass(frozen=True, slots=True)
class AuditEntry:
    ts: datetime
    action: str
    actor: str | None
    component: str | None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ts": to_iso(self.ts),
            "action": self.action,
            "actor": self.actor,
            "component": self.component,
            "details": self.details,
        }


@dataclass
class AuditLogger:
    """Writes identity-relevant actions to the `audit_log` table."""

    conn: sqlite3.Connection
    component: str = "stitcher"

    def log_action(
        self,
        action: str,
        actor: str | None,
        details: dict[str, Any] | None = None,
        *,
        now: datetime | None = None,
    ) -> None:
        payload = json.dumps(details or {}, sort_keys=True)
        self.conn.execute(
            "INSERT INTO audit_log (ts, action, actor, component, details) VALUES (?, ?, ?, ?, ?)",
            (to_iso(now or utc_now()), action, actor, self.component, payload),
        )

    def recent(self, action: str, *, limit: int = 20) -> list[AuditEntry]:
        """Newest first."""

        rows = self.conn.execute(
            """
            SELECT ts, action, actor, component, details FROM audit_log
            WHERE action = ?
            ORDER BY ts DESC, id DESC
            LIMIT ?
            """,
            (action, limit),
        ).fetchall()
        return [
            AuditEntry(
                ts=parse_dt(str(r[0])),
                action=str(r[1]),
                actor=r[2],
                component=r[3],
                details=json.loads(r[4]) if r[4] else {},
            )
            for r in rows
        ]

    def count_since(self, action: str, since: datetime) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM audit_log WHERE action = ? AND ts >= ?",
            (action, to_iso(since)),
        ).fetchone()
        return int(row[0])
