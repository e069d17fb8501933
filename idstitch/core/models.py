"""idstitch.core.models

Core domain models.

Events are immutable except for `user_id`. Identities only ever gain devices.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field, JsonValue

# Property bags: string keys, JSON values (str | int | float | bool | None | list | nested map).
Properties = dict[str, JsonValue]


class Platform(StrEnum):
    WEB = "web"
    MOBILE = "mobile"
    SERVER = "server"
    DESKTOP = "desktop"
    UNKNOWN = "unknown"


class EventCategory(StrEnum):
    FITNESS = "fitness"
    ECOMMERCE = "ecommerce"
    NAVIGATION = "navigation"
    ERROR = "error"
    USER = "user"
    GENERAL = "general"


class IdentityState(StrEnum):
    ANONYMOUS = "anonymous"
    IDENTIFIED = "identified"


class MappingType(StrEnum):
    DEVICE_ID = "device_id"
    USER_ID = "user_id"
    EMAIL = "email"


class CanonicalEvent(BaseModel):
    """Normalized event, ready to persist."""

    event_name: str
    event_category: EventCategory
    event_detail: str | None = None
    distinct_id: str
    user_id: str | None = None
    session_id: str | None = None
    platform: Platform
    country_code: str | None = None
    timestamp: datetime
    properties: Properties = Field(default_factory=dict)

    model_config = {"frozen": True}


class Event(CanonicalEvent):
    """Stored event record."""

    id: int


class Identity(BaseModel):
    id: int
    distinct_id: str
    user_id: str | None = None
    anonymous_id: str | None = None
    state: IdentityState
    device_ids: frozenset[str] = frozenset()
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    properties: Properties = Field(default_factory=dict)
    first_seen: datetime
    last_seen: datetime
    identified_at: datetime | None = None

    model_config = {"frozen": True}


class ProfileFields(BaseModel):
    """Profile attributes from a `$set` payload. `None` means "leave untouched"."""

    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    properties: Properties = Field(default_factory=dict)

    model_config = {"frozen": True}


class IdentityMapping(BaseModel):
    """Edge in the identity graph: `mapped_id` belongs to `canonical_user_id`."""

    id: int
    canonical_user_id: str
    mapped_id: str
    mapping_type: MappingType
    confidence_score: float = Field(default=1.0, ge=0.0, le=1.0)
    source: str
    events_stitched: int = Field(default=0, ge=0)
    first_seen: datetime
    last_seen: datetime

    model_config = {"frozen": True}
