from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from fastapi import Request

from idstitch.core.config import Config
from idstitch.core.database import Database
from idstitch.core.ingestion import IngestionCoordinator
from idstitch.core.metrics import REGISTRY, MetricsRegistry


@lru_cache
def _repo_root() -> Path:
    # Assume running from repo root (uvicorn started there). Fallback to parent of this file.
    here = Path(__file__).resolve()
    for p in [Path.cwd(), here.parent.parent]:
        if (p / "config" / "default.yaml").exists():
            return p
    return Path.cwd()


def load_config() -> Config:
    cfg_path = _repo_root() / "config" / "default.yaml"
    return Config.from_yaml(cfg_path) if cfg_path.exists() else Config()


def get_config(request: Request) -> Config:
    cfg = getattr(request.app.state, "config", None)
    if cfg is None:
        cfg = load_config()
        request.app.state.config = cfg
    return cfg


def get_db(request: Request) -> Database:
    db = getattr(request.app.state, "db", None)
    if db is None:
        cfg = get_config(request)
        db = Database(cfg.resolved_store_path(), timeout_seconds=cfg.store.timeout_seconds)
        request.app.state.db = db
    return db


def get_metrics(request: Request) -> MetricsRegistry:
    reg = getattr(request.app.state, "metrics", None)
    return reg or REGISTRY


def get_coordinator(request: Request) -> IngestionCoordinator:
    return IngestionCoordinator(db=get_db(request), metrics=get_metrics(request))
