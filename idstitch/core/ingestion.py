"""idstitch.core.ingestion

Ingestion coordinator. Owns the transaction boundary.

One request, one transaction:
- decode and validate (nothing is written for bad input)
- identify events go through the stitcher, plain events upsert their identity
- the normalized event is stored with whatever user id is known at write time

Anything that fails below this boundary rolls the whole request back.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import sqlite3
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from idstitch.core.database import Database
from idstitch.core.events import IDENTIFY_EVENT, PROFILE_SET_EVENT, EventStore
from idstitch.core.exceptions import InvariantViolation, TransientStoreError, ValidationError
from idstitch.core.identities import IdentityStore
from idstitch.core.mappings import MappingLedger
from idstitch.core.metrics import REGISTRY, Metric, MetricsRegistry
from idstitch.core.models import CanonicalEvent, EventCategory, MappingType, Platform, ProfileFields
from idstitch.core.normalizer import (
    extract_device_id,
    normalize,
    require_identifier,
    require_properties,
    sanitize_properties,
    str_or_none,
)
from idstitch.core.stitcher import IdentityStitcher, StitchResult
from idstitch.core.time import utc_now

logger = logging.getLogger(__name__)

# `$set` keys that land in dedicated profile columns.
PROFILE_FIELD_KEYS: dict[str, tuple[str, ...]] = {
    "email": ("$email", "email"),
    "first_name": ("$first_name", "first_name"),
    "last_name": ("$last_name", "last_name"),
}


def new_device_id() -> str:
    return str(uuid.uuid4())


def decode_payload(data: str | bytes) -> dict[str, Any]:
    """Base64 (standard or URL-safe, padding optional) wrapped JSON object.

    Raises:
        ValidationError: if `data` is not base64, not JSON, or not a JSON object.
    """

    if isinstance(data, str):
        try:
            raw = data.strip().encode("ascii")
        except UnicodeEncodeError as e:
            raise ValidationError("data is not base64") from e
    else:
        raw = data.strip()

    if not raw:
        raise ValidationError("data is required")

    # Form decoding turns '+' into ' '.
    raw = raw.replace(b" ", b"+").replace(b"-", b"+").replace(b"_", b"/")
    raw += b"=" * (-len(raw) % 4)

    try:
        decoded = base64.b64decode(raw, validate=True)
        obj = json.loads(decoded.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ValidationError("data is not base64-encoded UTF-8") from e
    except json.JSONDecodeError as e:
        raise ValidationError(f"data is not valid JSON: {e.msg}") from e
    except ValueError as e:
        # int literals past the interpreter's digit limit
        raise ValidationError(f"data is not valid JSON: {e}") from e
    except RecursionError as e:
        raise ValidationError("data is nested too deeply") from e

    if not isinstance(obj, dict):
        raise ValidationError("data must decode to a JSON object")
    return obj


def profile_fields(set_data: Mapping[str, Any]) -> ProfileFields:
    """Split a `$set` map into profile columns and custom properties."""

    columns: dict[str, str | None] = {}
    consumed: set[str] = set()
    for column, keys in PROFILE_FIELD_KEYS.items():
        value = None
        for key in keys:
            consumed.add(key)
            if value is None:
                value = str_or_none(set_data.get(key))
        columns[column] = value

    custom = {k: v for k, v in set_data.items() if k not in consumed}
    try:
        return ProfileFields(**columns, properties=custom)
    except PydanticValidationError as e:
        raise ValidationError(f"$set values are not JSON-compatible: {e.error_count()} error(s)") from e


@dataclass(frozen=True, slots=True)
class IngestResult:
    record_id: int
    device_id: str
    identity_id: int
    user_id: str | None = None
    stitch: StitchResult | None = None

    @property
    def events_stitched(self) -> int | None:
        return None if self.stitch is None else self.stitch.events_stitched

    @property
    def conflict_detected(self) -> bool | None:
        return None if self.stitch is None else self.stitch.conflict_detected


@dataclass(frozen=True, slots=True)
class ProfileUpdateResult:
    identity_id: int
    record_id: int
    created: bool


@dataclass(frozen=True, slots=True)
class _PreparedEvent:
    event: CanonicalEvent
    device_id: str
    upsert_device_id: str | None
    anonymous_id: str | None = None


def resolve_user_id(conn: sqlite3.Connection, distinct_id: str) -> str | None:
    """User id known for `distinct_id` right now: identity row first, then the ledger."""

    user_id = IdentityStore(conn).resolve_user_id(distinct_id)
    if user_id is not None:
        return user_id
    edge = MappingLedger(conn).find_latest_mapping(distinct_id, MappingType.DEVICE_ID)
    return None if edge is None else edge.canonical_user_id


@dataclass
class IngestionCoordinator:
    """Entry point for inbound payloads. Safe to share between threads."""

    db: Database
    metrics: MetricsRegistry = field(default_factory=lambda: REGISTRY)

    # -----------------
    # Events
    # -----------------

    def ingest(self, data: str | bytes, device_id_hint: str | None = None) -> IngestResult:
        try:
            payload = decode_payload(data)
        except ValidationError:
            self.metrics.counter(Metric.INGEST_REJECTED).inc()
            raise
        return self.ingest_event(payload, device_id_hint)

    def ingest_event(self, payload: Mapping[str, Any], device_id_hint: str | None = None) -> IngestResult:
        """Store one decoded `{event, properties}` payload.

        Args:
            payload: Decoded event object.
            device_id_hint: Device id supplied out-of-band (query param, cookie).
                A fresh one is generated when neither the hint nor the
                payload carries one.

        Raises:
            ValidationError: bad input; nothing was written.
            TransientStoreError: the transaction failed and was rolled back.
            InvariantViolation: stored state is inconsistent; rolled back.
        """

        try:
            prepared = self._prepare(payload, device_id_hint)
        except ValidationError as e:
            self.metrics.counter(Metric.INGEST_REJECTED).inc()
            logger.info("ingest_rejected", extra={"reason": str(e)})
            raise

        event = prepared.event
        try:
            with self.db.transaction() as conn:
                result = self._apply(conn, prepared)
        except TransientStoreError as e:
            self.metrics.counter(Metric.INGEST_FAILED).inc()
            logger.error(
                "ingest_failed",
                extra={"event_name": event.event_name, "distinct_id": event.distinct_id, "error": str(e)},
            )
            raise
        except InvariantViolation:
            self.metrics.counter(Metric.INGEST_FAILED).inc()
            logger.exception(
                "ingest_invariant_violation",
                extra={"event_name": event.event_name, "distinct_id": event.distinct_id},
            )
            raise

        self.metrics.counter(Metric.EVENTS_INGESTED).inc()
        if result.stitch is not None:
            self.metrics.counter(Metric.IDENTIFY_CALLS).inc()
            self.metrics.counter(Metric.EVENTS_STITCHED).inc(result.stitch.events_stitched)
            if result.stitch.conflict_detected:
                self.metrics.counter(Metric.IDENTITY_CONFLICTS).inc()
            logger.info(
                "identity_stitched",
                extra={
                    "anonymous_id": prepared.anonymous_id,
                    "user_id": result.user_id,
                    "events_stitched": result.stitch.events_stitched,
                    "conflict_detected": result.stitch.conflict_detected,
                },
            )
        logger.debug(
            "event_ingested",
            extra={"record_id": result.record_id, "event_name": event.event_name, "distinct_id": event.distinct_id},
        )
        return result

    def _prepare(self, payload: Mapping[str, Any], device_id_hint: str | None) -> _PreparedEvent:
        if not isinstance(payload, Mapping):
            raise ValidationError("payload must be an object")

        props = dict(require_properties(payload))
        device_id = str_or_none(props.get("$device_id")) or str_or_none(device_id_hint) or new_device_id()
        props.setdefault("$device_id", device_id)

        event = normalize({**payload, "properties": props})

        anonymous_id = None
        if event.event_name == IDENTIFY_EVENT:
            anonymous_id = require_identifier(props.get("$anon_distinct_id"), "properties.$anon_distinct_id")
            require_identifier(props.get("$user_id"), "properties.$user_id")

        return _PreparedEvent(
            event=event,
            device_id=device_id,
            upsert_device_id=extract_device_id(props),
            anonymous_id=anonymous_id,
        )

    def _apply(self, conn: sqlite3.Connection, prepared: _PreparedEvent) -> IngestResult:
        event = prepared.event
        stitch: StitchResult | None = None

        if prepared.anonymous_id is not None and event.user_id is not None:
            stitch = IdentityStitcher(conn).stitch(
                prepared.anonymous_id,
                event.user_id,
                prepared.device_id,
                distinct_id=event.distinct_id,
            )
            identity_id = stitch.identity_id
            user_id: str | None = event.user_id
        else:
            identity_id = IdentityStore(conn).upsert(event.distinct_id, prepared.upsert_device_id)
            user_id = event.user_id or resolve_user_id(conn, event.distinct_id)

        record_id = EventStore(conn).insert(event.model_copy(update={"user_id": user_id}))
        return IngestResult(
            record_id=record_id,
            device_id=prepared.device_id,
            identity_id=identity_id,
            user_id=user_id,
            stitch=stitch,
        )

    # -----------------
    # Profiles
    # -----------------

    def update_profile(self, data: str | bytes, *, now: datetime | None = None) -> ProfileUpdateResult:
        try:
            payload = decode_payload(data)
        except ValidationError:
            self.metrics.counter(Metric.INGEST_REJECTED).inc()
            raise
        return self.apply_profile_update(payload, now=now)

    def apply_profile_update(
        self,
        payload: Mapping[str, Any],
        *,
        now: datetime | None = None,
    ) -> ProfileUpdateResult:
        """Merge a `{$distinct_id, $set}` payload into the identity's profile.

        A `$profile_set` event is recorded in the same transaction.
        """

        try:
            if not isinstance(payload, Mapping):
                raise ValidationError("payload must be an object")
            distinct_id = require_identifier(payload.get("$distinct_id"), "$distinct_id")
            set_data = payload.get("$set", {})
            if not isinstance(set_data, Mapping):
                raise ValidationError("$set must be an object")
            fields = profile_fields(set_data)
            ts = now or utc_now()
            event = self._profile_event(distinct_id, set_data, ts)
        except ValidationError as e:
            self.metrics.counter(Metric.INGEST_REJECTED).inc()
            logger.info("profile_update_rejected", extra={"reason": str(e)})
            raise

        try:
            with self.db.transaction() as conn:
                identities = IdentityStore(conn)
                existing = identities.find_for_identifier(distinct_id)
                identity_id = identities.update_profile(distinct_id, fields, now=ts)
                user_id = existing.user_id if existing is not None else resolve_user_id(conn, distinct_id)
                if existing is not None:
                    event = event.model_copy(update={"event_detail": "Profile update"})
                record_id = EventStore(conn).insert(event.model_copy(update={"user_id": user_id}))
        except TransientStoreError as e:
            self.metrics.counter(Metric.INGEST_FAILED).inc()
            logger.error("profile_update_failed", extra={"distinct_id": distinct_id, "error": str(e)})
            raise
        except InvariantViolation:
            self.metrics.counter(Metric.INGEST_FAILED).inc()
            logger.exception("profile_update_invariant_violation", extra={"distinct_id": distinct_id})
            raise

        self.metrics.counter(Metric.PROFILE_UPDATES).inc()
        logger.debug(
            "profile_updated",
            extra={"identity_id": identity_id, "distinct_id": distinct_id, "profile_created": existing is None},
        )
        return ProfileUpdateResult(identity_id=identity_id, record_id=record_id, created=existing is None)

    @staticmethod
    def _profile_event(distinct_id: str, set_data: Mapping[str, Any], ts: datetime) -> CanonicalEvent:
        try:
            return CanonicalEvent(
                event_name=PROFILE_SET_EVENT,
                event_category=EventCategory.USER,
                event_detail="Profile created",
                distinct_id=distinct_id,
                platform=Platform.SERVER,
                timestamp=ts,
                properties=sanitize_properties(set_data),
            )
        except PydanticValidationError as e:
            raise ValidationError(f"$set values are not JSON-compatible: {e.error_count()} error(s)") from e
