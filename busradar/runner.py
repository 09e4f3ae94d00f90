"""Core scan workflow for BusRadar."""

from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .config import ConfigStore
from .diff import diff_listings
from .errors import PersistenceError, RouteProcessingError, TransientFetchError
from .models import AuditLogEntry, Event, Listing, Route, ScanSummary
from .notifications import (
    AGGREGATE_SUBJECT,
    ROUTE_SUBJECT,
    NotificationDispatcher,
    format_events,
)
from .scraper import ExtractionChain
from .storage import AuditLog, RouteRepository, SnapshotStore

logger = logging.getLogger(__name__)

NO_CHANGES_MESSAGE = "Scan completed: no significant changes"

# called as extractor(url, on_failure=callback)
Extractor = Callable[..., List[Listing]]


@dataclass
class ScanRunner:
    """Coordinates extract, diff, notify and persistence steps for all routes."""

    routes: RouteRepository
    snapshots: SnapshotStore
    audit_log: AuditLog
    config_store: ConfigStore
    extractor: Extractor = field(default_factory=ExtractionChain.default)
    dispatcher_factory: Callable[..., NotificationDispatcher] = NotificationDispatcher
    max_routes: Optional[int] = None
    _scan_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def running(self) -> bool:
        return self._scan_lock.locked()

    def run(self) -> ScanSummary:
        """Execute one scan unless another one is already in progress."""
        executed_at = dt.datetime.now(dt.timezone.utc).isoformat()
        if not self._scan_lock.acquire(blocking=False):
            logger.info("Scan already running; ignoring trigger")
            return ScanSummary(executed_at=executed_at, status="skipped")
        try:
            return self._run_locked(executed_at)
        finally:
            self._scan_lock.release()

    def _run_locked(self, executed_at: str) -> ScanSummary:
        logger.info("Starting bus check job")
        routes = self.routes.list()
        if not routes:
            logger.info("No routes configured")
            return ScanSummary(executed_at=executed_at, status="empty")

        if self.max_routes is not None and len(routes) > self.max_routes:
            logger.info("Processing %d of %d routes this pass", self.max_routes, len(routes))
            routes = routes[: self.max_routes]

        dispatcher = self.dispatcher_factory(self.config_store.get())
        history = self.snapshots.load()
        staged: Dict[str, List[Listing]] = {}
        events: List[Event] = []
        failures: List[RouteProcessingError] = []

        for route in routes:
            try:
                route_events = self._process_route(route, history, staged, dispatcher)
            except Exception as exc:  # noqa: BLE001
                error = RouteProcessingError(route.id, route.name, exc)
                logger.exception("Failed route %s", error)
                failures.append(error)
                continue
            events.extend(route_events)

        if staged:
            merged = dict(history)
            merged.update(staged)
            try:
                self.snapshots.save(merged)
            except PersistenceError:
                logger.exception("Failed to save snapshot history")

        messages = format_events(events)
        if messages:
            dispatcher.notify(None, AGGREGATE_SUBJECT, "\n".join(messages))
        else:
            logger.info("No changes found")

        self.audit_log.extend(self._audit_entries(events, messages, failures))
        logger.info(
            "Scan finished: %d routes, %d events, %d failures",
            len(routes), len(events), len(failures),
        )
        return ScanSummary(
            executed_at=executed_at,
            status="success",
            routes_processed=len(routes),
            routes_failed=[failure.route_id for failure in failures],
            events=events,
            snapshot_updates=list(staged),
        )

    def _process_route(
        self,
        route: Route,
        history: Dict[str, List[Listing]],
        staged: Dict[str, List[Listing]],
        dispatcher: NotificationDispatcher,
    ) -> List[Event]:
        logger.info("Processing: %s", route.name)
        failed: List[Exception] = []
        current = self.extractor(
            route.url, on_failure=lambda strategy, exc: failed.append(exc))
        if not current and failed:
            raise TransientFetchError(
                f"Scrape failed for {route.url}: {failed[-1]}") from failed[-1]
        if not current:
            logger.info("No data for %s", route.name)
            return []

        route_events = diff_listings(route, history.get(route.id, []), current)
        if route_events and route.email:
            dispatcher.notify(
                route.email,
                ROUTE_SUBJECT.format(route_name=route.name),
                "\n".join(format_events(route_events)),
            )
        staged[route.id] = list(current)
        return route_events

    def _audit_entries(
        self,
        events: List[Event],
        messages: List[str],
        failures: List[RouteProcessingError],
    ) -> List[AuditLogEntry]:
        entries = [
            self.audit_log.entry(message, event.kind.audit_type)
            for event, message in zip(events, messages)
        ]
        entries.extend(
            self.audit_log.entry(f"Scan failed for {failure}", "error")
            for failure in failures
        )
        if not events:
            entries.append(self.audit_log.entry(NO_CHANGES_MESSAGE, "new"))
        # newest first: the last recorded entry goes on top
        entries.reverse()
        return entries
