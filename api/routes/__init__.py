from __future__ import annotations

from fastapi import APIRouter

from api.routes import health, ingest, metrics


def get_api_router() -> APIRouter:
    router = APIRouter()

    router.include_router(ingest.router)
    router.include_router(health.router, tags=["health"])
    router.include_router(metrics.router, tags=["metrics"])

    return router
