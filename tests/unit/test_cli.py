from __future__ import annotations

import json
import shutil
from pathlib import Path

import pytest

from idstitch import __version__
from idstitch.cli import build_parser, main
from idstitch.core.database import Database
from idstitch.core.ingestion import IngestionCoordinator
from idstitch.core.metrics import MetricsRegistry
from tests.unit._payloads import identify_payload, track_payload


def _scaffold_repo(tmp_path: Path) -> Path:
    """Create a minimal repo root layout expected by the CLI."""

    repo_root = tmp_path
    src_root = Path(__file__).resolve().parents[2]

    (repo_root / "config").mkdir(parents=True, exist_ok=True)
    shutil.copy2(src_root / "config" / "default.yaml", repo_root / "config" / "default.yaml")
    return repo_root


def test_cli_help_includes_subcommands(capsys: pytest.CaptureFixture[str]) -> None:
    rc = main([])
    assert rc == 2
    out = capsys.readouterr().out
    assert "init-db" in out
    assert "status" in out
    assert "lookup" in out
    assert "api" in out


def test_cli_version(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--version"]) == 0
    assert __version__ in capsys.readouterr().out


def test_api_parser_accepts_host_and_port() -> None:
    args = build_parser().parse_args(["api", "--host", "0.0.0.0", "--port", "8080"])
    assert args.command == "api"
    assert args.host == "0.0.0.0"
    assert args.port == 8080


def test_init_db_then_status(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    repo_root = _scaffold_repo(tmp_path)
    monkeypatch.chdir(repo_root)

    assert main(["status"]) == 1
    assert "store missing" in capsys.readouterr().err

    assert main(["init-db"]) == 0
    db_path = repo_root / "data" / "idstitch.db"
    assert db_path.exists()

    db = Database(db_path)
    try:
        coordinator = IngestionCoordinator(db=db, metrics=MetricsRegistry())
        coordinator.ingest_event(track_payload("Page View", "anon-1"), "dev-1")
        coordinator.ingest_event(identify_payload("anon-1", "user-9"))
        coordinator.ingest_event(identify_payload("anon-1", "user-42"))
    finally:
        db.close()
    capsys.readouterr()

    assert main(["status", "--json"]) == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats["total_events"] == 3
    assert stats["events_stitched_total"] == 2
    assert stats["conflicts_last_24h"] == 1
    assert stats["recent_conflicts"][0]["details"]["previous_user_id"] == "user-9"
    assert stats["identities_by_state"]["identified"] == 2

    assert main(["status"]) == 0
    out = capsys.readouterr().out
    assert "identities: 2" in out
    assert "anon-1: user-9 -> user-42" in out

    assert main(["lookup", "anon-1", "--json"]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["user_id"] == "user-42"
    assert report["mapping"]["events_stitched"] == 1
    assert len(report["events"]) == 1

    assert main(["lookup", "anon-1"]) == 0
    out = capsys.readouterr().out
    assert "- user: user-42" in out
    assert "Page View [navigation] user=user-42" in out

    assert main(["lookup", "nobody"]) == 1
    assert "unknown identifier" in capsys.readouterr().out


def test_explicit_missing_config_is_an_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--config", str(tmp_path / "nope.yaml"), "init-db"]) == 1
    assert "Config file not found" in capsys.readouterr().err
