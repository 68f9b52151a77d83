"""
secretsync CLI: entry point for all operations.

Usage:
    secretsync serve            # Run the controller daemon
    secretsync validate [DIR]   # Parse manifests and report problems
    secretsync sync --once      # One pass for every descriptor, then exit
    secretsync status           # Query a running controller
    secretsync migrate          # Create the PostgreSQL store table + master key
    secretsync version          # Show version
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import replace
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="secretsync",
        description="secretsync: mirror external secrets into a local secret store.",
    )
    parser.add_argument("--version", action="store_true", help="Show version and exit")

    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the controller daemon")
    serve_parser.add_argument("--manifest-dir", type=Path, help="Manifest directory")
    serve_parser.add_argument("--port", type=int, help="Health endpoint port")
    serve_parser.add_argument("--store", choices=["memory", "postgres"], help="Destination store")
    serve_parser.add_argument("--log-level", help="Log level (default: SECRETSYNC_LOG_LEVEL)")

    # validate
    validate_parser = subparsers.add_parser("validate", help="Parse manifests and report problems")
    validate_parser.add_argument("manifest_dir", nargs="?", type=Path, help="Manifest directory")

    # sync
    sync_parser = subparsers.add_parser("sync", help="Run one pass for every descriptor")
    sync_parser.add_argument(
        "--once", action="store_true", required=True, help="Run a single pass and exit"
    )
    sync_parser.add_argument("manifest_dir", nargs="?", type=Path, help="Manifest directory")
    sync_parser.add_argument("--store", choices=["memory", "postgres"], help="Destination store")
    sync_parser.add_argument("--log-level", default="WARNING", help="Log level")

    # status
    status_parser = subparsers.add_parser("status", help="Query a running controller")
    status_parser.add_argument("--url", help="Controller base URL (default: local port)")

    # migrate
    migrate_parser = subparsers.add_parser("migrate", help="Create the PostgreSQL store table")
    migrate_parser.add_argument(
        "--dry-run", action="store_true", help="Print SQL without executing"
    )

    # version
    subparsers.add_parser("version", help="Show version")

    args = parser.parse_args(argv)

    if args.version or args.command == "version":
        from secretsync import __version__

        print(f"secretsync {__version__}")
        return 0

    if args.command == "serve":
        return _cmd_serve(args)
    elif args.command == "validate":
        return _cmd_validate(args)
    elif args.command == "sync":
        return _cmd_sync(args)
    elif args.command == "status":
        return _cmd_status(args)
    elif args.command == "migrate":
        return _cmd_migrate(args)
    else:
        parser.print_help()
        return 0


def _engine_config(args: argparse.Namespace):  # type: ignore[no-untyped-def]
    from secretsync.engine.config import EngineConfig

    config = EngineConfig.from_env()
    overrides = {}
    if getattr(args, "manifest_dir", None):
        overrides["manifest_dir"] = args.manifest_dir
    if getattr(args, "port", None):
        overrides["port"] = args.port
    if getattr(args, "store", None):
        overrides["store_backend"] = args.store
    return replace(config, **overrides) if overrides else config


def _cmd_serve(args: argparse.Namespace) -> int:
    from secretsync.engine.daemon import configure_logging, main

    configure_logging(args.log_level)
    try:
        asyncio.run(main(_engine_config(args)))
    except KeyboardInterrupt:
        pass
    return 0


def _cmd_validate(args: argparse.Namespace) -> int:
    from secretsync.engine.config import load_all_manifests, parse_manifests
    from secretsync.engine.errors import TemplateSyntaxError
    from secretsync.engine.template import validate_template

    config = _engine_config(args)
    if not config.manifest_dir.is_dir():
        print(f"Error: manifest directory not found: {config.manifest_dir}")
        return 1

    result = parse_manifests(
        load_all_manifests(config.manifest_dir),
        min_refresh_interval=config.min_refresh_interval,
    )
    problems = list(result.errors)
    for d in result.descriptors:
        if not d.template:
            continue
        for key, text in d.template.data:
            try:
                validate_template(text)
            except TemplateSyntaxError as e:
                problems.append(f"ExternalSecret {d.identity}: template key {key!r}: {e}")

    print(f"Secret stores:     {len(result.backends)}")
    print(f"External secrets:  {len(result.descriptors)}")
    if problems:
        print(f"\nProblems ({len(problems)}):")
        for p in problems:
            print(f"  - {p}")
        return 1
    print("\nAll manifests valid.")
    return 0


def _cmd_sync(args: argparse.Namespace) -> int:
    from secretsync.engine.controller import SyncController
    from secretsync.engine.daemon import configure_logging

    configure_logging(args.log_level)
    config = _engine_config(args)

    async def _run() -> int:
        controller = SyncController(config)
        try:
            summary = await controller.apply_manifests(controller.load(), schedule=False)
            results = await controller.sync_once()
        finally:
            await controller.close()

        for r in results:
            if r.ok:
                print(f"  OK     {r.identity:<40} {r.action.value:<10} {r.duration_ms}ms")
            else:
                reason = r.reason.value if r.reason else "?"
                print(f"  ERROR  {r.identity:<40} {reason:<10} {r.error}")
        failed = sum(1 for r in results if not r.ok)
        print(f"\n{len(results) - failed}/{len(results)} synced, {summary.rejected} rejected")
        return 1 if failed or summary.rejected else 0

    return asyncio.run(_run())


def _cmd_status(args: argparse.Namespace) -> int:
    import httpx

    config = _engine_config(args)
    url = (args.url or f"http://127.0.0.1:{config.port}").rstrip("/")
    try:
        resp = httpx.get(f"{url}/health", timeout=5.0)
        resp.raise_for_status()
        data = resp.json()
    except httpx.HTTPError as e:
        print(f"Error: controller not reachable at {url}: {e}")
        return 1

    print(f"secretsync v{data.get('version', '?')} ({data.get('status')})")
    print(f"  Scheduler:    {'running' if data.get('scheduler_running') else 'stopped'}")
    print(f"  Store:        {data.get('store')}")
    print(f"  Descriptors:  {data.get('descriptors', 0)}")
    for key, health in sorted((data.get("backends") or {}).items()):
        print(f"  Backend {key}: {health}")
    errored = data.get("errored") or []
    if errored:
        print(f"\n  In error ({len(errored)}):")
        for identity in errored:
            print(f"    - {identity}")
        return 1
    return 0


def _cmd_migrate(args: argparse.Namespace) -> int:
    from secretsync.store.postgres import SCHEMA_SQL

    if args.dry_run:
        print("-- Dry run: the following SQL would be executed --")
        print(SCHEMA_SQL)
        return 0

    from secretsync.config import get_config
    from secretsync.store.crypto import init_master_key
    from secretsync.store.postgres import PostgresStore

    cfg = get_config()
    key_path = init_master_key(cfg.master_key_path)
    print(f"Master key: {key_path}")
    print(f"Connecting to {cfg.db.host or 'localhost'}:{cfg.db.port}/{cfg.db.name}...")
    try:
        PostgresStore().ensure_schema()
    except Exception as e:
        print(f"Error: migration failed: {e}")
        return 1
    print("Migration completed successfully.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
