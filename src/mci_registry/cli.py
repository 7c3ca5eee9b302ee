# src/mci_registry/cli.py
"""
Command line entry point.

Usage:
    mci-registry serve
    mci-registry init-db [--reset]
    mci-registry gc [--loop]
    mci-registry install https://example.com/definitions/conn-http.json
    mci-registry resync conn-http
    mci-registry list [--type connector] [--enabled | --disabled]
"""
import argparse
import json
import logging
import sys
from typing import List, Optional

from mci_registry.config import AppSettings, load_settings
from mci_registry.errors import RegistryError
from mci_registry.logging_setup import setup_logging
from mci_registry.main import Registry, build_registry

logger = logging.getLogger(__name__)


def cmd_serve(registry: Registry, args) -> int:
    import uvicorn

    from mci_registry.server.api import create_app

    server = registry.settings.server
    app = create_app(registry, run_gc=registry.settings.gc.enabled)
    uvicorn.run(
        app,
        host=args.host or server.host,
        port=args.port or server.port,
        ssl_keyfile=server.ssl_keyfile,
        ssl_certfile=server.ssl_certfile,
        log_config=None,
    )
    return 0


def cmd_init_db(registry: Registry, args) -> int:
    from mci_registry.db.setup import initialize_database

    initialize_database(registry.engine, reset_tables=args.reset)
    print("Database initialized.")
    return 0


def cmd_gc(registry: Registry, args) -> int:
    if args.loop:
        from mci_registry.services.gc import GCThread

        thread = GCThread(registry.gc, registry.settings.gc.interval_seconds)
        thread.start()
        try:
            while thread.is_alive():
                thread.join(1.0)
        except KeyboardInterrupt:
            logger.info("GC loop interrupted")
            thread.stop(timeout=10)
        return 0

    report = registry.gc.sweep()
    print(
        f"scanned={report.scanned} deleted={report.deleted_count} "
        f"failed={len(report.failed)} purged={report.purged}"
    )
    return 1 if report.failed else 0


def cmd_install(registry: Registry, args) -> int:
    result = registry.ingestion.install(args.manifest)
    print(result.model_dump_json(indent=2))
    return 0


def cmd_resync(registry: Registry, args) -> int:
    result = registry.ingestion.resync(args.id)
    print(result.model_dump_json(indent=2))
    return 0


def cmd_list(registry: Registry, args) -> int:
    views = registry.query.list(
        type=args.type, enabled=args.enabled, query=args.query, limit=args.limit
    )
    print(json.dumps([v.model_dump(mode="json") for v in views], indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mci-registry",
        description="MCI definitions registry",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None, help="Bind address (default: from config)")
    serve.add_argument("--port", type=int, default=None, help="Port (default: from config)")
    serve.set_defaults(func=cmd_serve)

    init_db = sub.add_parser("init-db", help="Create the metadata tables")
    init_db.add_argument("--reset", action="store_true", help="Drop and recreate all tables")
    init_db.set_defaults(func=cmd_init_db)

    gc = sub.add_parser("gc", help="Run a garbage collection sweep")
    gc.add_argument("--loop", action="store_true", help="Keep sweeping on the configured interval")
    gc.set_defaults(func=cmd_gc)

    install = sub.add_parser("install", help="Install a definition from a JSON manifest")
    install.add_argument("manifest", help="Manifest URL or path")
    install.set_defaults(func=cmd_install)

    resync = sub.add_parser("resync", help="Re-fetch a definition from its source_url")
    resync.add_argument("id")
    resync.set_defaults(func=cmd_resync)

    lst = sub.add_parser("list", help="List definitions")
    lst.add_argument("--type", default=None)
    lst.add_argument("--query", "-q", default=None)
    lst.add_argument("--limit", type=int, default=None)
    gate = lst.add_mutually_exclusive_group()
    gate.add_argument("--enabled", dest="enabled", action="store_const", const=True, default=None)
    gate.add_argument("--disabled", dest="enabled", action="store_const", const=False)
    lst.set_defaults(func=cmd_list)

    return parser


def main(argv: Optional[List[str]] = None, settings: Optional[AppSettings] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings or load_settings()
    setup_logging(settings)

    registry = build_registry(settings, init_db=args.command != "init-db")
    try:
        return args.func(registry, args)
    except RegistryError as e:
        logger.error(f"{args.command} failed [{e.error_type}]: {e.message}")
        return 2
    finally:
        registry.close()


if __name__ == "__main__":
    sys.exit(main())
