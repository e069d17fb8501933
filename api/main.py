from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.deps import load_config
from api.errors import ApiError, api_error_handler, idstitch_error_handler, unhandled_error_handler
from api.routes import get_api_router
from idstitch import __version__
from idstitch.core.config import Config
from idstitch.core.exceptions import ConfigError, IdStitchError
from idstitch.core.logging import configure_logging

logger = logging.getLogger(__name__)


def create_app(config: Config | None = None) -> FastAPI:
    start = time.monotonic()
    config = config or load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg: Config = app.state.config
        configure_logging(cfg.logging)

        from idstitch.core.database import Database

        created_db = False
        if getattr(app.state, "db", None) is None:
            app.state.db = Database(cfg.resolved_store_path(), timeout_seconds=cfg.store.timeout_seconds)
            created_db = True
        logger.info("api_started", extra={"store": str(app.state.db.db_path), "prefix": cfg.api.prefix})

        yield

        if created_db:
            app.state.db.close()
        logger.info("api_stopped")

    openapi_tags = [
        {"name": "ingest", "description": "Event and profile ingestion."},
        {"name": "health", "description": "Store statistics and liveness."},
        {"name": "metrics", "description": "In-process counters."},
    ]

    app = FastAPI(
        title="idstitch API",
        description="Analytics ingestion with anonymous-to-identified identity stitching",
        version=__version__,
        openapi_tags=openapi_tags,
        lifespan=lifespan,
    )
    app.state.started_at = start
    app.state.config = config

    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(IdStitchError, idstitch_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # CORS: only enable if origins explicitly configured
    if config.api.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.api.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    app.include_router(get_api_router(), prefix=config.api.prefix)
    return app


# Module-level app for uvicorn (e.g. `uvicorn api.main:app`).
# Guarded so test imports don't crash on a broken local config.
try:
    app = create_app()
except ConfigError:
    app = None
