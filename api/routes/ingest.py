from __future__ import annotations

import json
from urllib.parse import parse_qs

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.deps import get_config, get_coordinator
from api.errors import ApiError
from api.schemas.ingest import EngageResponse, TrackResponse
from idstitch.core.config import Config
from idstitch.core.ingestion import IngestionCoordinator

router = APIRouter()

_SECONDS_PER_DAY = 86_400


async def _read_data(request: Request) -> str:
    """`data` from the query string, else from a form or JSON body."""

    data = request.query_params.get("data")
    if data:
        return data

    if request.method == "POST":
        body = await request.body()
        content_type = request.headers.get("content-type", "")
        if body and content_type.startswith("application/json"):
            try:
                obj = json.loads(body)
            except ValueError as e:
                raise ApiError(code="ingest.invalid_payload", message="Body is not valid JSON", status=400) from e
            if isinstance(obj, dict) and isinstance(obj.get("data"), str):
                return obj["data"]
        elif body:
            values = parse_qs(body.decode("latin-1")).get("data")
            if values:
                return values[0]

    raise ApiError(code="ingest.missing_data", message="Missing data", status=400)


def _device_id_hint(request: Request, config: Config) -> str | None:
    return request.query_params.get("device_id") or request.cookies.get(config.ingest.device_cookie) or None


def _set_device_cookie(response: JSONResponse, request: Request, config: Config, device_id: str) -> None:
    if request.cookies.get(config.ingest.device_cookie):
        return
    response.set_cookie(
        key=config.ingest.device_cookie,
        value=device_id,
        max_age=config.ingest.device_cookie_max_age_days * _SECONDS_PER_DAY,
        httponly=config.ingest.httponly_cookie,
        samesite="lax",
        secure=config.ingest.secure_cookie,
    )


@router.api_route("/track", methods=["GET", "POST"], tags=["ingest"])
async def track(
    request: Request,
    config: Config = Depends(get_config),
    coordinator: IngestionCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    data = await _read_data(request)
    result = await run_in_threadpool(coordinator.ingest, data, _device_id_hint(request, config))

    body = TrackResponse(
        id=result.record_id,
        device_id=result.device_id,
        events_stitched=result.events_stitched,
        conflict_detected=result.conflict_detected,
    ).body()
    response = JSONResponse(content=body)
    _set_device_cookie(response, request, config, result.device_id)
    return response


@router.api_route("/engage", methods=["GET", "POST"], tags=["ingest"], response_model=EngageResponse)
async def engage(
    request: Request,
    coordinator: IngestionCoordinator = Depends(get_coordinator),
) -> EngageResponse:
    data = await _read_data(request)
    result = await run_in_threadpool(coordinator.update_profile, data)
    return EngageResponse(user_id=result.identity_id)
