"""idstitch.cli

Command line interface entry point for idstitch.

Design constraints:
- argparse-based.
- Lazy imports: do not import heavy dependencies at parse time.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from idstitch.core.config import Config


@dataclass(frozen=True)
class CliContext:
    repo_root: Path
    config_path: Path | None = None


def _repo_root_from_cwd() -> Path:
    return Path.cwd()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="idstitch",
        description="Analytics event ingestion with anonymous-to-identified identity stitching.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Config file (default: config/default.yaml under the working directory).",
    )

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("init-db", help="Create the store and its schema")

    p_status = sub.add_parser("status", help="Print store statistics")
    p_status.add_argument("--json", action="store_true", help="Emit JSON instead of text.")
    p_status.add_argument("--conflicts", type=int, default=5, help="Recent identify conflicts to list.")

    p_lookup = sub.add_parser("lookup", help="Show what the store knows about one identifier")
    p_lookup.add_argument("distinct_id")
    p_lookup.add_argument("--events", type=int, default=20, help="Most recent events to list.")
    p_lookup.add_argument("--json", action="store_true", help="Emit JSON instead of text.")

    p_api = sub.add_parser("api", help="Start the ingestion API server")
    p_api.add_argument("--host", default=None)
    p_api.add_argument("--port", type=int, default=None)

    return parser


def _print_version() -> None:
    from idstitch import __version__

    print(f"idstitch v{__version__}")


def _load_config(ctx: CliContext) -> Config:
    from idstitch.core.config import Config

    if ctx.config_path is not None:
        return Config.from_yaml(ctx.config_path)
    cfg_path = ctx.repo_root / "config" / "default.yaml"
    return Config.from_yaml(cfg_path) if cfg_path.exists() else Config()


def _cmd_init_db(ctx: CliContext, args: argparse.Namespace) -> int:
    from idstitch.core.database import Database
    from idstitch.core.exceptions import IdStitchError

    try:
        config = _load_config(ctx)
        db = Database(config.resolved_store_path(), timeout_seconds=config.store.timeout_seconds)
    except IdStitchError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    db.close()
    print(f"store ready: {db.db_path}")
    return 0


def _cmd_status(ctx: CliContext, args: argparse.Namespace) -> int:
    from idstitch.core.database import Database
    from idstitch.core.exceptions import IdStitchError
    from idstitch.core.stats import collect_stats, recent_conflicts

    try:
        config = _load_config(ctx)
    except IdStitchError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    db_path = config.resolved_store_path()
    if not db_path.exists():
        print(f"store missing: {db_path} (run `idstitch init-db`)", file=sys.stderr)
        return 1

    try:
        db = Database(db_path, timeout_seconds=config.store.timeout_seconds)
        try:
            stats = collect_stats(db)
            conflicts = recent_conflicts(db, limit=args.conflicts)
        finally:
            db.close()
    except IdStitchError as e:
        print(f"store unhealthy: {e}", file=sys.stderr)
        return 1

    if args.json:
        out = {**stats.to_dict(), "recent_conflicts": [c.to_dict() for c in conflicts]}
        print(json.dumps(out, indent=2, sort_keys=True))
        return 0

    print("idstitch status")
    print(f"- store: {db_path}")
    print(f"- events: {stats.total_events} ({stats.events_last_24h} in last 24h)")
    print(f"- identifications (24h): {stats.identifications_last_24h}")
    states = ", ".join(f"{k}={v}" for k, v in sorted(stats.identities_by_state.items()))
    print(f"- identities: {stats.total_identities} ({states})")
    print(f"- mappings: {stats.total_mappings}")
    print(f"- events stitched: {stats.events_stitched_total}")
    print(f"- conflicts (24h): {stats.conflicts_last_24h}")
    for c in conflicts:
        d = c.details
        print(f"  {c.ts:%Y-%m-%d %H:%M:%S} {d.get('anonymous_id')}: {d.get('previous_user_id')} -> {c.actor}")
    return 0


def _cmd_lookup(ctx: CliContext, args: argparse.Namespace) -> int:
    from idstitch.core.database import Database
    from idstitch.core.exceptions import IdStitchError
    from idstitch.core.stats import lookup_identifier

    try:
        config = _load_config(ctx)
    except IdStitchError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    db_path = config.resolved_store_path()
    if not db_path.exists():
        print(f"store missing: {db_path} (run `idstitch init-db`)", file=sys.stderr)
        return 1

    try:
        db = Database(db_path, timeout_seconds=config.store.timeout_seconds)
        try:
            report = lookup_identifier(db, args.distinct_id, event_limit=args.events)
        finally:
            db.close()
    except IdStitchError as e:
        print(f"lookup failed: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(report.to_dict(), indent=2, sort_keys=True))
        return 0

    if report.identity is None and not report.events:
        print(f"unknown identifier: {args.distinct_id}")
        return 1

    print(f"identifier: {report.distinct_id}")
    print(f"- user: {report.user_id or '-'}")
    ident = report.identity
    if ident is not None:
        print(f"- identity: #{ident.id} {ident.state} as {ident.distinct_id}")
        print(f"- devices: {', '.join(sorted(ident.device_ids)) or '-'}")
    if report.mapping is not None:
        print(f"- merged into {report.mapping.canonical_user_id} ({report.mapping.events_stitched} events stitched)")
    print(f"- events ({len(report.events)} most recent):")
    for ev in report.events:
        print(f"  {ev.timestamp:%Y-%m-%d %H:%M:%S} {ev.event_name} [{ev.event_category}] user={ev.user_id or '-'}")
    return 0


def _cmd_api(ctx: CliContext, args: argparse.Namespace) -> int:
    from idstitch.core.exceptions import IdStitchError

    try:
        config = _load_config(ctx)
    except IdStitchError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    host = args.host or config.api.host
    port = args.port or config.api.port

    import uvicorn

    from api.main import create_app

    uvicorn.run(create_app(config=config), host=host, port=port, reload=False)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        _print_version()
        return 0

    if not args.command:
        parser.print_help()
        return 2

    ctx = CliContext(repo_root=_repo_root_from_cwd(), config_path=args.config)

    dispatch: dict[str, Callable[[CliContext, argparse.Namespace], int]] = {
        "init-db": _cmd_init_db,
        "status": _cmd_status,
        "lookup": _cmd_lookup,
        "api": _cmd_api,
    }

    fn = dispatch.get(str(args.command))
    if fn is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 2

    return int(fn(ctx, args))


if __name__ == "__main__":
    raise SystemExit(main())
