"""CLI entrypoint for the BusRadar monitor."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path

from dotenv import load_dotenv

from busradar.config import FIELD_SOURCES, ConfigStore
from busradar.runner import ScanRunner
from busradar.scheduler import (
    DEFAULT_INTERVAL_SECONDS,
    DEFAULT_STARTUP_DELAY_SECONDS,
    ScanScheduler,
)
from busradar.scraper import ExtractionChain
from busradar.storage import AuditLog, RouteRepository, SnapshotStore, resolve_data_dir

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 30


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _env_int(name: str) -> int | None:
    value = (os.getenv(name) or "").strip()
    return int(value) if value else None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="BusRadar fare and seat monitor")
    parser.add_argument("--run", action="store_true", help="execute one scan and exit")
    parser.add_argument(
        "--serve",
        action="store_true",
        help="keep running and scan on a fixed interval",
    )
    parser.add_argument("--interval", type=float, default=DEFAULT_INTERVAL_SECONDS,
                        help="seconds between scheduled scans (with --serve)")
    parser.add_argument("--startup-delay", type=float, default=DEFAULT_STARTUP_DELAY_SECONDS,
                        help="seconds before the first scan (with --serve)")
    parser.add_argument("--add-route", nargs=2, metavar=("NAME", "URL"),
                        help="start tracking a route page")
    parser.add_argument("--email", help="override recipient for --add-route")
    parser.add_argument("--list-routes", action="store_true",
                        help="print routes with their last snapshot")
    parser.add_argument("--delete-route", metavar="ID", help="stop tracking a route")
    parser.add_argument("--logs", nargs="?", type=int, const=20, metavar="N",
                        help="print the N most recent activity entries")
    parser.add_argument("--show-config", action="store_true",
                        help="print notification settings (password hidden)")
    parser.add_argument("--set-config", nargs="+", metavar="KEY=VALUE",
                        help=f"persist settings; keys: {', '.join(FIELD_SOURCES)}")
    parser.add_argument("--export", metavar="PATH", type=Path,
                        help="write stored snapshots to an .xlsx file")
    parser.add_argument(
        "--max-routes",
        type=int,
        help="process at most this many routes per scan (overrides BUSRADAR_MAX_ROUTES)",
    )
    parser.add_argument("--data-dir", default=None,
                        help="directory holding the JSON documents (overrides BUSRADAR_DATA_DIR)")
    parser.add_argument("--verbose", action="store_true", help="enable debug logging")
    return parser


def _parse_assignments(pairs: list[str]) -> dict[str, str]:
    values: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep:
            raise ValueError(f"expected KEY=VALUE, got {pair!r}")
        values[key.strip()] = value.strip()
    return values


def install_signal_handlers(scheduler: ScanScheduler, shutdown: threading.Event) -> None:
    """SIGINT/SIGTERM request shutdown; SIGUSR1 requests an immediate scan."""

    def _handle_stop(signum, _frame):
        logger.info("Received signal %s; shutting down", signum)
        shutdown.set()

    def _handle_trigger(signum, _frame):
        logger.info("Received signal %s; requesting scan", signum)
        scheduler.trigger()

    signal.signal(signal.SIGINT, _handle_stop)
    signal.signal(signal.SIGTERM, _handle_stop)
    if hasattr(signal, "SIGUSR1"):
        signal.signal(signal.SIGUSR1, _handle_trigger)


def serve(scheduler: ScanScheduler) -> int:
    shutdown = threading.Event()
    install_signal_handlers(scheduler, shutdown)
    scheduler.start()
    while scheduler.alive and not shutdown.wait(1):
        pass
    if not scheduler.wait_idle(SHUTDOWN_GRACE_SECONDS):
        logger.warning("Scan still running after %ss; stopping anyway", SHUTDOWN_GRACE_SECONDS)
    scheduler.stop(timeout=5)
    return 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if args.max_routes is None:
        try:
            args.max_routes = _env_int("BUSRADAR_MAX_ROUTES")
        except ValueError:
            parser.error("BUSRADAR_MAX_ROUTES must be an integer")

    data_dir = resolve_data_dir(args.data_dir)
    routes = RouteRepository.in_dir(data_dir)
    snapshots = SnapshotStore.in_dir(data_dir)
    audit_log = AuditLog.in_dir(data_dir)
    config_store = ConfigStore.in_dir(data_dir)

    if args.add_route:
        name, url = args.add_route
        try:
            route = routes.create(name, url, args.email)
        except ValueError as exc:
            parser.error(str(exc))
        print(f"Added route {route.id}: {route.name}")
        return 0

    if args.delete_route:
        if routes.delete(args.delete_route):
            print(f"Deleted route {args.delete_route}")
            return 0
        print(f"No route with id {args.delete_route}", file=sys.stderr)
        return 1

    if args.list_routes:
        history = snapshots.load()
        for route in routes.list():
            email = f" -> {route.email}" if route.email else ""
            print(f"{route.id}  {route.name}  {route.url}{email}")
            for listing in history.get(route.id, []):
                print(f"    {listing.operator_name} | ₹{listing.price} | {listing.seats}")
        return 0

    if args.logs is not None:
        for entry in audit_log.entries(limit=args.logs):
            print(f"{entry.timestamp} [{entry.type}] {entry.message}")
        return 0

    if args.set_config:
        try:
            config_store.set(**_parse_assignments(args.set_config))
        except ValueError as exc:
            parser.error(str(exc))
        args.show_config = True

    if args.show_config:
        for key, value in config_store.public_view().items():
            print(f"{key}: {value if value is not None else ''}")
        return 0

    if args.export:
        path = snapshots.export_to_xlsx(args.export, routes.list())
        logger.info("Exported snapshots to %s", path)
        return 0

    runner = ScanRunner(
        routes=routes,
        snapshots=snapshots,
        audit_log=audit_log,
        config_store=config_store,
        extractor=ExtractionChain.default(),
        max_routes=args.max_routes,
    )

    if args.serve:
        scheduler = ScanScheduler(
            runner,
            interval_seconds=args.interval,
            startup_delay_seconds=args.startup_delay,
        )
        return serve(scheduler)

    if not args.run:
        parser.print_help()
        return 1

    summary = runner.run()
    logger.info(
        "Scan %s: %d routes, %d events, %d failed",
        summary.status,
        summary.routes_processed,
        len(summary.events),
        len(summary.routes_failed),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
