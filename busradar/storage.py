"""JSON-document persistence for routes, snapshots and the audit log."""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from openpyxl import Workbook

from .errors import PersistenceError
from .models import AUDIT_TYPES, AuditLogEntry, Listing, Route

logger = logging.getLogger(__name__)

ROUTES_FILE = "bus_routes.json"
HISTORY_FILE = "bus_history.json"
LOGS_FILE = "bus_logs.json"
CONFIG_FILE = "monitor_config.json"

DEFAULT_AUDIT_CAP = 100


def resolve_data_dir(data_dir: str | os.PathLike | None = None) -> Path:
    """Translate BUSRADAR_DATA_DIR (or an explicit value) into an absolute path."""
    raw = data_dir or os.getenv("BUSRADAR_DATA_DIR") or "data"
    path = Path(raw)
    if not path.is_absolute():
        path = Path.cwd() / path
    return path.expanduser().resolve()


@dataclass
class JsonDocument:
    """A JSON file that reads as a default value when missing or corrupt."""

    path: Path

    def read(self, default: Any) -> Any:
        if not self.path.exists():
            return default
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable document %s: %s", self.path, exc)
            return default

    def write(self, payload: Any) -> None:
        """Replace the document atomically; durable once this returns."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(payload, handle, indent=2, ensure_ascii=False)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as exc:
            raise PersistenceError(f"failed to write {self.path}: {exc}") from exc


@dataclass
class SnapshotStore:
    """Last successfully scraped listings per route id."""

    document: JsonDocument

    @classmethod
    def in_dir(cls, data_dir: Path) -> "SnapshotStore":
        return cls(JsonDocument(data_dir / HISTORY_FILE))

    def load(self) -> Dict[str, List[Listing]]:
        raw = self.document.read(default={})
        if not isinstance(raw, dict):
            logger.warning("Snapshot document %s is not a mapping; starting fresh",
                           self.document.path)
            return {}

        snapshots: Dict[str, List[Listing]] = {}
        for route_id, rows in raw.items():
            if not isinstance(rows, list):
                continue
            listings: List[Listing] = []
            for row in rows:
                try:
                    listings.append(Listing.from_dict(row))
                except (AttributeError, KeyError, TypeError, ValueError):
                    logger.debug("Dropping malformed snapshot row for %s: %r",
                                 route_id, row)
            snapshots[str(route_id)] = listings
        return snapshots

    def save(self, snapshots: Mapping[str, Sequence[Listing]]) -> None:
        payload = {
            route_id: [listing.to_dict() for listing in listings]
            for route_id, listings in snapshots.items()
        }
        self.document.write(payload)

    def export_to_xlsx(self, path: Path, routes: Iterable[Route] = ()) -> Path:
        """Write every stored listing to a spreadsheet for offline review."""
        names = {route.id: route.name for route in routes}
        workbook = Workbook()
        sheet = workbook.active
        sheet.title = "snapshots"
        sheet.append(["route_id", "route_name", "operator", "price", "seats"])
        for route_id, listings in sorted(self.load().items()):
            for listing in listings:
                sheet.append([
                    route_id,
                    names.get(route_id, ""),
                    listing.operator_name,
                    listing.price,
                    listing.seats,
                ])
        path.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(path)
        return path


def _utcnow_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


@dataclass
class AuditLog:
    """Bounded, most-recent-first activity journal."""

    document: JsonDocument
    cap: int = DEFAULT_AUDIT_CAP
    clock: Callable[[], str] = field(default=_utcnow_iso)

    @classmethod
    def in_dir(cls, data_dir: Path, cap: int = DEFAULT_AUDIT_CAP) -> "AuditLog":
        return cls(JsonDocument(data_dir / LOGS_FILE), cap=cap)

    def entries(self, limit: Optional[int] = None) -> List[AuditLogEntry]:
        raw = self.document.read(default=[])
        if not isinstance(raw, list):
            return []
        entries = [
            AuditLogEntry.from_dict(item) for item in raw if isinstance(item, dict)
        ]
        return entries[:limit] if limit is not None else entries

    def entry(self, message: str, type: str) -> AuditLogEntry:
        if type not in AUDIT_TYPES:
            raise ValueError(f"unknown audit entry type: {type!r}")
        return AuditLogEntry(timestamp=self.clock(), message=message, type=type)

    def log_activity(self, message: str, type: str = "new") -> None:
        self.extend([self.entry(message, type)])

    def extend(self, new_entries: Sequence[AuditLogEntry]) -> None:
        """Prepend a batch (first element ends up on top) and truncate to the cap."""
        if not new_entries:
            return
        combined = list(new_entries) + self.entries()
        try:
            self.document.write([entry.to_dict() for entry in combined[: self.cap]])
        except PersistenceError:
            logger.exception("Failed to write to activity log")


@dataclass
class RouteRepository:
    """Route list persisted as a JSON array."""

    document: JsonDocument
    clock: Callable[[], float] = field(default=time.time)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def in_dir(cls, data_dir: Path) -> "RouteRepository":
        return cls(JsonDocument(data_dir / ROUTES_FILE))

    def list(self) -> List[Route]:
        raw = self.document.read(default=[])
        if not isinstance(raw, list):
            return []
        routes: List[Route] = []
        for item in raw:
            try:
                routes.append(Route.from_dict(item))
            except (KeyError, TypeError):
                logger.debug("Skipping malformed route entry %r", item)
        return routes

    def get(self, route_id: str) -> Optional[Route]:
        for route in self.list():
            if route.id == route_id:
                return route
        return None

    def create(self, name: str, url: str, email: Optional[str] = None) -> Route:
        name = (name or "").strip()
        url = (url or "").strip()
        if not name or not url:
            raise ValueError("Name and URL required")

        with self._lock:
            routes = self.list()
            route = Route(
                id=self._next_id(routes),
                name=name,
                url=url,
                email=(email or "").strip() or None,
            )
            routes.append(route)
            self.document.write([item.to_dict() for item in routes])
        logger.info("Added route %s (%s)", route.name, route.id)
        return route

    def delete(self, route_id: str) -> bool:
        with self._lock:
            routes = self.list()
            remaining = [route for route in routes if route.id != route_id]
            if len(remaining) == len(routes):
                return False
            self.document.write([item.to_dict() for item in remaining])
        logger.info("Deleted route %s", route_id)
        return True

    def _next_id(self, routes: Sequence[Route]) -> str:
        candidate = int(self.clock() * 1000)
        numeric_ids = [int(route.id) for route in routes if route.id.isdigit()]
        if numeric_ids and candidate <= max(numeric_ids):
            candidate = max(numeric_ids) + 1
        return str(candidate)
