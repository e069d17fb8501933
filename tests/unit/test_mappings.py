from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from idstitch.core.database import Database
from idstitch.core.mappings import IDENTIFY_SOURCE, MappingLedger
from idstitch.core.models import MappingType

T0 = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)


def test_record_merge_accumulates_events_stitched(db: Database) -> None:
    with db.transaction() as conn:
        ledger = MappingLedger(conn)
        ledger.record_merge("user-9", "anon-1", MappingType.DEVICE_ID, events_stitched_delta=3, now=T0)
        ledger.record_merge(
            "user-9", "anon-1", MappingType.DEVICE_ID, events_stitched_delta=0, now=T0 + timedelta(hours=1)
        )
        ledger.record_merge(
            "user-9", "anon-1", MappingType.DEVICE_ID, events_stitched_delta=2, now=T0 + timedelta(hours=2)
        )
        edge = ledger.get("user-9", "anon-1", MappingType.DEVICE_ID)
        n_rows = conn.execute("SELECT COUNT(*) FROM identity_mappings").fetchone()[0]

    assert n_rows == 1
    assert edge is not None
    assert edge.events_stitched == 5
    assert edge.source == IDENTIFY_SOURCE
    assert edge.confidence_score == 1.0
    assert edge.first_seen == T0
    assert edge.last_seen == T0 + timedelta(hours=2)


def test_find_latest_mapping_prefers_most_recent(db: Database) -> None:
    with db.transaction() as conn:
        ledger = MappingLedger(conn)
        assert ledger.find_latest_mapping("anon-1", MappingType.DEVICE_ID) is None

        ledger.record_merge("user-9", "anon-1", MappingType.DEVICE_ID, now=T0)
        ledger.record_merge("user-42", "anon-1", MappingType.DEVICE_ID, now=T0 + timedelta(minutes=1))
        latest = ledger.find_latest_mapping("anon-1", MappingType.DEVICE_ID)
        assert latest is not None and latest.canonical_user_id == "user-42"

        ledger.record_merge("user-9", "anon-1", MappingType.DEVICE_ID, now=T0 + timedelta(minutes=2))
        latest = ledger.find_latest_mapping("anon-1", MappingType.DEVICE_ID)
        assert latest is not None and latest.canonical_user_id == "user-9"

        assert ledger.find_latest_mapping("anon-1", MappingType.EMAIL) is None


def test_negative_delta_is_rejected(db: Database) -> None:
    with db.transaction() as conn, pytest.raises(ValueError):
        MappingLedger(conn).record_merge("user-9", "anon-1", MappingType.DEVICE_ID, events_stitched_delta=-1)
