"""BusRadar package initialization."""

from .config import ConfigStore
from .diff import diff_listings
from .models import (
    AuditLogEntry,
    Event,
    EventKind,
    Listing,
    MonitorConfig,
    Route,
    ScanSummary,
)
from .runner import ScanRunner
from .scheduler import ScanScheduler
from .scraper import ExtractionChain
from .storage import AuditLog, RouteRepository, SnapshotStore

__all__ = [
    "AuditLog",
    "AuditLogEntry",
    "ConfigStore",
    "Event",
    "EventKind",
    "ExtractionChain",
    "Listing",
    "MonitorConfig",
    "Route",
    "RouteRepository",
    "ScanRunner",
    "ScanScheduler",
    "ScanSummary",
    "SnapshotStore",
    "diff_listings",
]
