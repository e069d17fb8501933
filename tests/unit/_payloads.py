from __future__ import annotations

import base64
import json
from typing import Any

# 2026-01-15T12:00:00Z
BASE_EPOCH = 1768478400


def encode(payload: dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def track_payload(event: str, distinct_id: str, *, time: float = BASE_EPOCH, **props: Any) -> dict[str, Any]:
    return {"event": event, "properties": {"distinct_id": distinct_id, "time": time, **props}}


def identify_payload(anon_id: str, user_id: str, *, time: float = BASE_EPOCH, **props: Any) -> dict[str, Any]:
    extra = {"$anon_distinct_id": anon_id, "$user_id": user_id, **props}
    return track_payload("$identify", user_id, time=time, **extra)
