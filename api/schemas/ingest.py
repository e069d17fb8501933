from __future__ import annotations

from pydantic import BaseModel


class TrackResponse(BaseModel):
    status: int = 1
    error: None = None
    id: int
    device_id: str
    events_stitched: int | None = None
    conflict_detected: bool | None = None

    def body(self) -> dict[str, object]:
        """Wire shape: identify-only fields are omitted for plain events."""

        out = self.model_dump()
        for key in ("events_stitched", "conflict_detected"):
            if out[key] is None:
                del out[key]
        return out


class EngageResponse(BaseModel):
    status: int = 1
    error: None = None
    user_id: int
