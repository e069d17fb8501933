from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    uptime_seconds: float
    total_events: int = Field(ge=0)
    events_last_24h: int = Field(ge=0)
    identifications_last_24h: int = Field(ge=0)
    events_stitched_total: int = Field(ge=0)
    total_identities: int = Field(ge=0)
    identities_by_state: dict[str, int]
    total_mappings: int = Field(ge=0)
    conflicts_last_24h: int = Field(ge=0)


class MetricsResponse(BaseModel):
    counters: dict[str, int]
