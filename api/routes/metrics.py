from __future__ import annotations

import hmac

from fastapi import APIRouter, Depends, Header

from api.deps import get_config, get_metrics
from api.errors import ApiError
from api.schemas.health import MetricsResponse
from idstitch.core.config import Config
from idstitch.core.metrics import MetricsRegistry


def require_metrics_token(
    authorization: str | None = Header(default=None, alias="Authorization"),
    config: Config = Depends(get_config),
) -> None:
    """Guard for the counters endpoint: `Authorization: Bearer <api.auth_token>`.

    An empty `api.auth_token` leaves the endpoint open. Ingestion routes never
    use this guard.
    """

    expected = config.api.auth_token
    if not expected:
        return

    scheme, _, token = (authorization or "").partition(" ")
    if not scheme:
        raise ApiError(code="auth.missing_token", message="Missing bearer token", status=401)
    if scheme.lower() != "bearer" or not token.strip():
        raise ApiError(code="auth.invalid_header", message="Invalid authorization header", status=401)
    if not hmac.compare_digest(token.strip().encode("utf-8"), expected.encode("utf-8")):
        raise ApiError(code="auth.invalid_token", message="Invalid bearer token", status=401)


router = APIRouter(dependencies=[Depends(require_metrics_token)])


@router.get("/metrics", response_model=MetricsResponse)
def metrics(registry: MetricsRegistry = Depends(get_metrics)) -> MetricsResponse:
    return MetricsResponse(counters=registry.snapshot())
