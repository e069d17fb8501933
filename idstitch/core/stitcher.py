"""idstitch.core.stitcher

Identity stitching: an anonymous identifier meets a user id.

Order inside one transaction:
1. check the ledger for a prior owner of the anonymous id (conflict)
2. count the events about to move
3. relabel them in one statement
4. record the anonymous-id edge with that count
5. record the device edge (co-presence, zero events)
6. promote the identity row

Conflicts do not abort. The latest identify wins and the caller is told so.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime

from idstitch.core.audit import CONFLICT_ACTION, STITCH_ACTION, AuditLogger
from idstitch.core.events import EventStore
from idstitch.core.identities import IdentityStore
from idstitch.core.mappings import IDENTIFY_SOURCE, MappingLedger
from idstitch.core.models import MappingType
from idstitch.core.time import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ConflictWarning:
    """An identifier previously mapped to one user is now claimed by another."""

    mapped_id: str
    previous_user_id: str
    new_user_id: str


@dataclass(frozen=True, slots=True)
class StitchResult:
    events_stitched: int
    identity_id: int
    conflict: ConflictWarning | None = None

    @property
    def conflict_detected(self) -> bool:
        return self.conflict is not None


class IdentityStitcher:
    """Merges an anonymous identifier into a canonical user within one transaction."""

    def __init__(self, conn: sqlite3.Connection):
        self._events = EventStore(conn)
        self._identities = IdentityStore(conn)
        self._ledger = MappingLedger(conn)
        self._audit = AuditLogger(conn)

    def stitch(
        self,
        anonymous_id: str,
        user_id: str,
        device_id: str | None = None,
        *,
        distinct_id: str | None = None,
        now: datetime | None = None,
    ) -> StitchResult:
        """Attribute `anonymous_id`'s history to `user_id`.

        Args:
            anonymous_id: Identifier the client used before identification.
            user_id: Canonical user id.
            device_id: Persistent device token, if the client has one.
            distinct_id: Identifier the identity row carries afterwards. Defaults to `user_id`.
            now: Override clock for testing.
        """

        ts = now or utc_now()
        new_distinct_id = distinct_id or user_id

        conflict: ConflictWarning | None = None
        prior = self._ledger.find_latest_mapping(anonymous_id, MappingType.DEVICE_ID)
        if prior is not None and prior.canonical_user_id != user_id:
            conflict = ConflictWarning(
                mapped_id=anonymous_id,
                previous_user_id=prior.canonical_user_id,
                new_user_id=user_id,
            )
            logger.warning(
                "identity_conflict",
                extra={
                    "mapped_id": anonymous_id,
                    "previous_user_id": prior.canonical_user_id,
                    "new_user_id": user_id,
                },
            )

        events_stitched = self._events.count_restitchable(anonymous_id, user_id)
        self._events.relabel(anonymous_id, user_id)

        self._ledger.record_merge(
            user_id,
            anonymous_id,
            MappingType.DEVICE_ID,
            IDENTIFY_SOURCE,
            events_stitched,
            now=ts,
        )
        if device_id and device_id != anonymous_id:
            self._ledger.record_merge(user_id, device_id, MappingType.DEVICE_ID, IDENTIFY_SOURCE, 0, now=ts)

        identity_id = self._identities.promote_to_identified(
            anonymous_id,
            new_distinct_id,
            user_id,
            device_id,
            now=ts,
        )

        details = {
            "anonymous_id": anonymous_id,
            "user_id": user_id,
            "device_id": device_id,
            "events_stitched": events_stitched,
        }
        if conflict is not None:
            self._audit.log_action(
                CONFLICT_ACTION,
                actor=user_id,
                details={**details, "previous_user_id": conflict.previous_user_id},
                now=ts,
            )
        self._audit.log_action(STITCH_ACTION, actor=user_id, details=details, now=ts)

        return StitchResult(events_stitched=events_stitched, identity_id=identity_id, conflict=conflict)
