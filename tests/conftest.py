from __future__ import annotations

import shutil
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

# pytest may run without installing the project; ensure repo root is importable.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from idstitch.core.config import Config  # noqa: E402
from idstitch.core.database import Database  # noqa: E402
from idstitch.core.ingestion import IngestionCoordinator  # noqa: E402
from idstitch.core.metrics import MetricsRegistry  # noqa: E402


@pytest.fixture()
def temp_dir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture()
def test_config(temp_dir: Path) -> Config:
    """Config fixture that points data_dir to a temp directory."""

    cfg_src = REPO_ROOT / "config" / "default.yaml"
    cfg_dst_dir = temp_dir / "config"
    cfg_dst_dir.mkdir(parents=True, exist_ok=True)
    shutil.copy2(cfg_src, cfg_dst_dir / "default.yaml")

    c = Config.from_yaml(cfg_dst_dir / "default.yaml")
    return c.model_copy(update={"data_dir": temp_dir / "data", "config_dir": cfg_dst_dir})


@pytest.fixture()
def db(temp_dir: Path) -> Iterator[Database]:
    d = Database(temp_dir / "idstitch.db")
    try:
        yield d
    finally:
        d.close()


@pytest.fixture()
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture()
def coordinator(db: Database, metrics: MetricsRegistry) -> IngestionCoordinator:
    return IngestionCoordinator(db=db, metrics=metrics)


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"
