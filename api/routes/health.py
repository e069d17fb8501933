from __future__ import annotations

import logging
import time

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.deps import get_db
from api.schemas.health import HealthResponse
from idstitch import __version__
from idstitch.core.database import Database
from idstitch.core.exceptions import TransientStoreError
from idstitch.core.stats import collect_stats

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health(request: Request, db: Database = Depends(get_db)):
    started_at = float(getattr(request.app.state, "started_at", time.monotonic()))
    uptime = time.monotonic() - started_at

    try:
        stats = await run_in_threadpool(collect_stats, db)
    except TransientStoreError as e:
        logger.error("health_check_failed", extra={"error": str(e)})
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "version": __version__, "error": str(e)},
        )

    return HealthResponse(version=__version__, uptime_seconds=uptime, **stats.to_dict())
