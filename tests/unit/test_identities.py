from __future__ import annotations

import sqlite3
from datetime import UTC, datetime, timedelta

import pytest

from idstitch.core.database import Database
from idstitch.core.exceptions import InvariantViolation
from idstitch.core.identities import IdentityStore
from idstitch.core.models import IdentityState, ProfileFields

T0 = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)


def test_upsert_is_idempotent_for_devices(db: Database) -> None:
    with db.transaction() as conn:
        store = IdentityStore(conn)
        first = store.upsert("anon-1", "dev-1", now=T0)
        second = store.upsert("anon-1", "dev-1", now=T0 + timedelta(minutes=5))

    assert first == second
    with db.read() as conn:
        ident = IdentityStore(conn).find_by_distinct_id("anon-1")
        n_rows = conn.execute("SELECT COUNT(*) FROM identity_devices").fetchone()[0]

    assert ident is not None
    assert ident.device_ids == frozenset({"dev-1"})
    assert n_rows == 1
    assert ident.state is IdentityState.ANONYMOUS
    assert ident.first_seen == T0
    assert ident.last_seen == T0 + timedelta(minutes=5)


def test_upsert_unions_devices_and_never_moves_last_seen_back(db: Database) -> None:
    with db.transaction() as conn:
        store = IdentityStore(conn)
        store.upsert("anon-1", "dev-1", now=T0)
        store.upsert("anon-1", "dev-2", now=T0 - timedelta(hours=1))
        store.upsert("anon-1", None, now=T0)
        ident = store.find_by_distinct_id("anon-1")

    assert ident is not None
    assert ident.device_ids == frozenset({"dev-1", "dev-2"})
    assert ident.last_seen == T0


def test_promote_in_place_keeps_row_and_history(db: Database) -> None:
    with db.transaction() as conn:
        store = IdentityStore(conn)
        anon_id = store.upsert("anon-1", "dev-1", now=T0)
        promoted = store.promote_to_identified("anon-1", "user-9", "user-9", "dev-2", now=T0 + timedelta(hours=1))
        ident = store.find_by_distinct_id("user-9")
        gone = store.find_by_distinct_id("anon-1")

    assert promoted == anon_id
    assert gone is None
    assert ident is not None
    assert ident.state is IdentityState.IDENTIFIED
    assert ident.user_id == "user-9"
    assert ident.anonymous_id == "anon-1"
    assert ident.device_ids == frozenset({"dev-1", "dev-2"})
    assert ident.first_seen == T0
    assert ident.identified_at == T0 + timedelta(hours=1)


def test_promote_creates_identified_row_when_nothing_exists(db: Database) -> None:
    with db.transaction() as conn:
        store = IdentityStore(conn)
        store.promote_to_identified("anon-1", "user-9", "user-9", "dev-1", now=T0)
        ident = store.find_by_distinct_id("user-9")

    assert ident is not None
    assert ident.state is IdentityState.IDENTIFIED
    assert ident.anonymous_id == "anon-1"
    assert ident.device_ids == frozenset({"dev-1"})


def test_promote_folds_anonymous_row_into_existing_identified_row(db: Database) -> None:
    with db.transaction() as conn:
        store = IdentityStore(conn)
        store.promote_to_identified("anon-1", "user-9", "user-9", "dev-1", now=T0)
        store.upsert("anon-2", "dev-2", now=T0 - timedelta(days=1))
        store.update_profile("anon-2", ProfileFields(email="a@example.com", properties={"plan": "free"}), now=T0)

        target = store.promote_to_identified("anon-2", "user-9", "user-9", None, now=T0 + timedelta(hours=1))
        ident = store.find_by_distinct_id("user-9")
        leftover = store.find_by_distinct_id("anon-2")
        n_rows = conn.execute("SELECT COUNT(*) FROM identities").fetchone()[0]

    assert leftover is None
    assert n_rows == 1
    assert ident is not None and ident.id == target
    assert ident.anonymous_id == "anon-1"
    assert ident.device_ids == frozenset({"dev-1", "dev-2"})
    assert ident.email == "a@example.com"
    assert ident.properties == {"plan": "free"}
    assert ident.first_seen == T0 - timedelta(days=1)


def test_promote_twice_is_stable(db: Database) -> None:
    with db.transaction() as conn:
        store = IdentityStore(conn)
        store.upsert("anon-1", "dev-1", now=T0)
        a = store.promote_to_identified("anon-1", "user-9", "user-9", "dev-1", now=T0)
        b = store.promote_to_identified("anon-1", "user-9", "user-9", "dev-1", now=T0 + timedelta(hours=2))
        ident = store.find_by_distinct_id("user-9")

    assert a == b
    assert ident is not None
    assert ident.identified_at == T0
    assert ident.device_ids == frozenset({"dev-1"})


def test_resolve_user_id_follows_anonymous_id(db: Database) -> None:
    with db.transaction() as conn:
        store = IdentityStore(conn)
        store.upsert("anon-1", None, now=T0)
        assert store.resolve_user_id("anon-1") is None

        store.promote_to_identified("anon-1", "user-9", "user-9", now=T0)
        assert store.resolve_user_id("anon-1") == "user-9"
        assert store.resolve_user_id("user-9") == "user-9"
        assert store.resolve_user_id("stranger") is None


def test_update_profile_last_write_wins_per_field(db: Database) -> None:
    with db.transaction() as conn:
        store = IdentityStore(conn)
        first = store.update_profile(
            "user-9",
            ProfileFields(email="old@example.com", first_name="Ada", properties={"plan": "free", "tz": "UTC"}),
            now=T0,
        )
        second = store.update_profile(
            "user-9",
            ProfileFields(email="new@example.com", properties={"plan": "pro"}),
            now=T0 + timedelta(minutes=1),
        )
        ident = store.find_by_distinct_id("user-9")

    assert first == second
    assert ident is not None
    assert ident.email == "new@example.com"
    assert ident.first_name == "Ada"
    assert ident.last_name is None
    assert ident.properties == {"plan": "pro", "tz": "UTC"}


def test_identified_row_without_user_id_is_an_invariant_violation(db: Database) -> None:
    with db.transaction() as conn:
        conn.execute(
            """
            INSERT INTO identities (distinct_id, state, first_seen, last_seen, created_at, updated_at)
            VALUES ('broken', 'identified', ?, ?, ?, ?)
            """,
            ("2026-01-15T12:00:00.000000+00:00",) * 4,
        )

    with db.read() as conn, pytest.raises(InvariantViolation):
        IdentityStore(conn).find_by_distinct_id("broken")


def test_distinct_id_is_unique(db: Database) -> None:
    with db.transaction() as conn:
        IdentityStore(conn).upsert("anon-1", now=T0)

    with db.transaction() as conn, pytest.raises(sqlite3.IntegrityError):
        conn.execute(
            "INSERT INTO identities (distinct_id, state, first_seen, last_seen, created_at, updated_at) "
            "VALUES ('anon-1', 'anonymous', 'a', 'a', 'a', 'a')"
        )


def test_upsert_of_promoted_identifier_lands_on_identified_row(db: Database) -> None:
    with db.transaction() as conn:
        store = IdentityStore(conn)
        original = store.upsert("anon-1", "dev-1", now=T0)
        store.promote_to_identified("anon-1", "user-9", "user-9", now=T0)

        again = store.upsert("anon-1", "dev-2", now=T0 + timedelta(days=1))
        n_rows = conn.execute("SELECT COUNT(*) FROM identities").fetchone()[0]
        ident = store.find_by_distinct_id("user-9")

    assert again == original
    assert n_rows == 1
    assert ident is not None
    assert ident.device_ids == frozenset({"dev-1", "dev-2"})
    assert ident.last_seen == T0 + timedelta(days=1)


def test_update_profile_and_lookup_follow_promotion(db: Database) -> None:
    with db.transaction() as conn:
        store = IdentityStore(conn)
        store.update_profile("anon-1", ProfileFields(properties={"plan": "free"}), now=T0)
        identified = store.promote_to_identified("anon-1", "user-9", "user-9", now=T0)

        again = store.update_profile(
            "anon-1", ProfileFields(first_name="Ada", properties={"tz": "UTC"}), now=T0 + timedelta(hours=1)
        )
        ident = store.find_for_identifier("anon-1")
        n_rows = conn.execute("SELECT COUNT(*) FROM identities").fetchone()[0]

        assert store.find_by_distinct_id("anon-1") is None
        assert store.find_for_identifier("stranger") is None

    assert again == identified
    assert n_rows == 1
    assert ident is not None and ident.id == identified
    assert ident.first_name == "Ada"
    assert ident.properties == {"plan": "free", "tz": "UTC"}
    assert ident.last_seen == T0 + timedelta(hours=1)
