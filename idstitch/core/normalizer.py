"""idstitch.core.normalizer

Raw client payload in, canonical event out. No state, no I/O.

Category keyword sets are checked in a fixed priority order and the first
match wins: fitness > ecommerce > navigation > error > user.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from idstitch.core.exceptions import ValidationError
from idstitch.core.models import CanonicalEvent, EventCategory, Platform, Properties
from idstitch.core.time import from_epoch

CATEGORY_KEYWORDS: tuple[tuple[EventCategory, tuple[str, ...]], ...] = (
    (EventCategory.FITNESS, ("workout", "training", "exercise")),
    (EventCategory.ECOMMERCE, ("purchase", "payment", "subscription")),
    (EventCategory.NAVIGATION, ("page", "view", "navigate")),
    (EventCategory.ERROR, ("error", "crash", "fail")),
    (EventCategory.USER, ("identify", "login", "signup")),
)

# (name keywords, property keys tried in order)
DETAIL_SOURCES: tuple[tuple[tuple[str, ...], tuple[str, ...]], ...] = (
    (("error", "issue"), ("error_message", "error", "message")),
    (("workout", "training"), ("workout_name", "workout_type", "activity_type")),
    (("search",), ("search_term", "query", "search_query")),
    (("purchase", "subscription"), ("product_name", "subscription_type", "plan_name")),
)

COUNTRY_KEYS: tuple[str, ...] = ("$country_code", "country_code", "country", "mp_country_code")

DEVICE_ID_KEYS: tuple[str, ...] = ("$device_id", "device_id", "$insert_id")

# Stored in dedicated columns, on the identity row, or used only for derivation;
# never kept in `properties`.
RESERVED_PROPERTY_KEYS: frozenset[str] = frozenset(
    {
        "token",
        "distinct_id",
        "$user_id",
        "$session_id",
        "$anon_distinct_id",
        "$device_id",
        "device_id",
        "$insert_id",
        "$token",
        "mp_lib",
        "time",
        "$os",
        "$browser",
        "$browser_version",
        "$device",
        "$country_code",
        "country_code",
        "country",
        "mp_country_code",
    }
)

_MOBILE_OS = ("ios", "android")
_DESKTOP_OS = ("mac", "windows", "linux")


def str_or_none(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value if value.strip() else None
    if isinstance(value, int | float):
        return str(value)
    return None


def categorize_event(event_name: str) -> EventCategory:
    lowered = event_name.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(k in lowered for k in keywords):
            return category
    return EventCategory.GENERAL


def derive_event_detail(event_name: str, properties: Mapping[str, Any]) -> str | None:
    lowered = event_name.lower()
    for keywords, keys in DETAIL_SOURCES:
        if any(k in lowered for k in keywords):
            for key in keys:
                detail = str_or_none(properties.get(key))
                if detail is not None:
                    return detail
            return None
    return None


def detect_platform(properties: Mapping[str, Any]) -> Platform:
    """OS hint, then browser hint, then server flag, then library hint."""

    browser = properties.get("$browser")
    os_hint = properties.get("$os")
    if isinstance(os_hint, str) and os_hint:
        os_lower = os_hint.lower()
        if any(k in os_lower for k in _MOBILE_OS):
            return Platform.MOBILE
        if any(k in os_lower for k in _DESKTOP_OS):
            return Platform.WEB if browser else Platform.DESKTOP

    if browser:
        return Platform.WEB

    for key in ("Source", "source"):
        src = properties.get(key)
        if isinstance(src, str) and src.lower() == "server":
            return Platform.SERVER

    lib = properties.get("mp_lib")
    if isinstance(lib, str) and lib:
        lib_lower = lib.lower()
        if "react-native" in lib_lower:
            return Platform.MOBILE
        if "web" in lib_lower or "javascript" in lib_lower:
            return Platform.WEB
        if "node" in lib_lower:
            return Platform.SERVER

    return Platform.UNKNOWN


def extract_country_code(properties: Mapping[str, Any]) -> str | None:
    """First non-null country key; kept only if it is a 2-letter code."""

    for key in COUNTRY_KEYS:
        value = properties.get(key)
        if value is None:
            continue
        if isinstance(value, str) and len(value.strip()) == 2 and value.strip().isalpha():
            return value.strip().upper()
        return None
    return None


def extract_device_id(properties: Mapping[str, Any]) -> str | None:
    for key in DEVICE_ID_KEYS:
        device_id = str_or_none(properties.get(key))
        if device_id is not None:
            return device_id
    return None


def sanitize_properties(properties: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in properties.items() if k not in RESERVED_PROPERTY_KEYS}


def require_properties(raw: Mapping[str, Any]) -> Mapping[str, Any]:
    props = raw.get("properties")
    if not isinstance(props, Mapping):
        raise ValidationError("properties must be an object")
    return props


def require_identifier(value: Any, field: str) -> str:
    ident = str_or_none(value)
    if ident is None:
        raise ValidationError(f"{field} is required")
    return ident


def normalize(raw: Mapping[str, Any]) -> CanonicalEvent:
    """Turn a raw `{event, properties}` payload into a `CanonicalEvent`.

    Raises:
        ValidationError: if `event`, `properties.distinct_id` or a valid epoch `properties.time` is missing.
    """

    if not isinstance(raw, Mapping):
        raise ValidationError("payload must be an object")

    event_name = raw.get("event")
    if not isinstance(event_name, str) or not event_name.strip():
        raise ValidationError("event is required")

    props = require_properties(raw)
    distinct_id = require_identifier(props.get("distinct_id"), "properties.distinct_id")

    if "time" not in props:
        raise ValidationError("properties.time is required")
    try:
        timestamp = from_epoch(props["time"])
    except ValueError as e:
        raise ValidationError(f"properties.time is not a valid epoch: {e}") from e

    properties: Properties = sanitize_properties(props)
    try:
        return CanonicalEvent(
            event_name=event_name,
            event_category=categorize_event(event_name),
            event_detail=derive_event_detail(event_name, props),
            distinct_id=distinct_id,
            user_id=str_or_none(props.get("$user_id")),
            session_id=str_or_none(props.get("$session_id")),
            platform=detect_platform(props),
            country_code=extract_country_code(props),
            timestamp=timestamp,
            properties=properties,
        )
    except PydanticValidationError as e:
        raise ValidationError(f"properties are not JSON-compatible: {e.error_count()} error(s)") from e
