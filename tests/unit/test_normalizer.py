from __future__ import annotations

from datetime import UTC, datetime

import pytest

from idstitch.core.exceptions import ValidationError
from idstitch.core.models import EventCategory, Platform
from idstitch.core.normalizer import (
    RESERVED_PROPERTY_KEYS,
    categorize_event,
    derive_event_detail,
    detect_platform,
    extract_country_code,
    extract_device_id,
    normalize,
)


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("Workout Purchase Error", EventCategory.FITNESS),
        ("Start Training", EventCategory.FITNESS),
        ("Subscription Payment Failed", EventCategory.ECOMMERCE),
        ("Page View", EventCategory.NAVIGATION),
        ("App Crash", EventCategory.ERROR),
        ("User Signup", EventCategory.USER),
        ("$identify", EventCategory.USER),
        ("Button Clicked", EventCategory.GENERAL),
    ],
)
def test_categorize_event_priority(name: str, expected: EventCategory) -> None:
    assert categorize_event(name) is expected


@pytest.mark.parametrize(
    ("props", "expected"),
    [
        ({"$os": "iOS"}, Platform.MOBILE),
        ({"$os": "Android", "$browser": "Chrome"}, Platform.MOBILE),
        ({"$os": "Mac OS X", "$browser": "Safari"}, Platform.WEB),
        ({"$os": "Windows"}, Platform.DESKTOP),
        ({"$browser": "Firefox"}, Platform.WEB),
        ({"Source": "Server"}, Platform.SERVER),
        ({"source": "server"}, Platform.SERVER),
        ({"mp_lib": "react-native"}, Platform.MOBILE),
        ({"mp_lib": "web"}, Platform.WEB),
        ({"mp_lib": "node"}, Platform.SERVER),
        ({}, Platform.UNKNOWN),
    ],
)
def test_detect_platform(props: dict, expected: Platform) -> None:
    assert detect_platform(props) is expected


def test_event_detail_follows_name_family() -> None:
    assert derive_event_detail("Error Shown", {"message": "timeout"}) == "timeout"
    assert derive_event_detail("Workout Started", {"workout_type": "HIIT"}) == "HIIT"
    assert derive_event_detail("Search", {"query": "shoes"}) == "shoes"
    assert derive_event_detail("Purchase", {"plan_name": "pro"}) == "pro"
    assert derive_event_detail("Purchase", {}) is None
    assert derive_event_detail("Page View", {"message": "ignored"}) is None


def test_country_code_preference_and_shape() -> None:
    assert extract_country_code({"country": "de", "mp_country_code": "FR"}) == "DE"
    assert extract_country_code({"mp_country_code": "fr"}) == "FR"
    assert extract_country_code({"$country_code": "Germany"}) is None
    assert extract_country_code({}) is None


def test_device_id_key_order() -> None:
    assert extract_device_id({"$insert_id": "i", "device_id": "d"}) == "d"
    assert extract_device_id({"$device_id": "x", "device_id": "d"}) == "x"
    assert extract_device_id({"$device_id": ""}) is None


def test_normalize_builds_canonical_event() -> None:
    ev = normalize(
        {
            "event": "Workout Completed",
            "properties": {
                "distinct_id": "anon-1",
                "time": 1768478400,
                "$session_id": "s-1",
                "$os": "iOS",
                "country_code": "us",
                "workout_name": "Leg Day",
                "reps": 12,
            },
        }
    )
    assert ev.event_category is EventCategory.FITNESS
    assert ev.event_detail == "Leg Day"
    assert ev.distinct_id == "anon-1"
    assert ev.user_id is None
    assert ev.session_id == "s-1"
    assert ev.platform is Platform.MOBILE
    assert ev.country_code == "US"
    assert ev.timestamp == datetime(2026, 1, 15, 12, 0, tzinfo=UTC)
    assert ev.properties == {"workout_name": "Leg Day", "reps": 12}


def test_normalize_strips_every_reserved_key() -> None:
    props = {k: "x" for k in RESERVED_PROPERTY_KEYS}
    props.update({"distinct_id": "anon-1", "time": 1768478400, "plan": "pro", "nested": {"a": [1, 2]}})

    ev = normalize({"event": "Anything", "properties": props})
    assert not RESERVED_PROPERTY_KEYS & ev.properties.keys()
    assert ev.properties == {"plan": "pro", "nested": {"a": [1, 2]}}


def test_derivation_only_keys_are_used_then_dropped() -> None:
    props = {
        "distinct_id": "anon-1",
        "time": 1768478400,
        "mp_lib": "web",
        "$insert_id": "ins-1",
        "$token": "project-token",
        "plan": "pro",
    }

    ev = normalize({"event": "Page View", "properties": props})

    assert ev.platform is Platform.WEB
    assert extract_device_id(props) == "ins-1"
    assert ev.properties == {"plan": "pro"}


@pytest.mark.parametrize(
    "raw",
    [
        {"properties": {"distinct_id": "a", "time": 1}},
        {"event": "  ", "properties": {"distinct_id": "a", "time": 1}},
        {"event": "x"},
        {"event": "x", "properties": []},
        {"event": "x", "properties": {"time": 1}},
        {"event": "x", "properties": {"distinct_id": "a"}},
        {"event": "x", "properties": {"distinct_id": "a", "time": "yesterday"}},
        {"event": "x", "properties": {"distinct_id": "a", "time": 10**400}},
        {"event": "x", "properties": {"distinct_id": "a", "time": "1e999"}},
        {"event": "x", "properties": {"distinct_id": "a", "time": -5}},
        {"event": "x", "properties": {"distinct_id": "a", "time": 1, "blob": object()}},
        ["not", "an", "object"],
    ],
)
def test_normalize_rejects_malformed_payloads(raw: object) -> None:
    with pytest.raises(ValidationError):
        normalize(raw)  # type: ignore[arg-type]
