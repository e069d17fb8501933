from api.schemas.health import HealthResponse, MetricsResponse
from api.schemas.ingest import EngageResponse, TrackResponse

__all__ = [
    "EngageResponse",
    "HealthResponse",
    "MetricsResponse",
    "TrackResponse",
]
