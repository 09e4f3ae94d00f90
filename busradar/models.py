"""Core data models for BusRadar."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

UNKNOWN_SEATS = "Unknown"


@dataclass(frozen=True)
class Listing:
    """Represents one bus operator offering scraped from a route page."""

    operator_name: str
    price: int
    seats: str = UNKNOWN_SEATS

    def to_dict(self) -> dict:
        return {"name": self.operator_name, "price": self.price, "seats": self.seats}

    @classmethod
    def from_dict(cls, payload: dict) -> "Listing":
        name = str(payload.get("name") or "").strip()
        price = payload.get("price")
        if not name:
            raise ValueError("listing name must not be empty")
        if isinstance(price, bool) or not isinstance(price, int) or price <= 0:
            raise ValueError(f"invalid listing price: {price!r}")
        seats = payload.get("seats")
        return cls(
            operator_name=name,
            price=price,
            seats=UNKNOWN_SEATS if seats is None else str(seats),
        )


@dataclass(frozen=True)
class Route:
    """A tracked bus route page."""

    id: str
    name: str
    url: str
    email: Optional[str] = None

    def to_dict(self) -> dict:
        payload = {"id": self.id, "name": self.name, "url": self.url}
        if self.email:
            payload["email"] = self.email
        return payload

    @classmethod
    def from_dict(cls, payload: dict) -> "Route":
        return cls(
            id=str(payload["id"]),
            name=str(payload["name"]),
            url=str(payload["url"]),
            email=payload.get("email") or None,
        )


class EventKind(str, Enum):
    PRICE_DROP = "price_drop"
    SEATS_AVAILABLE = "seats_available"
    NEW_LISTING = "new_listing"

    @property
    def audit_type(self) -> str:
        return _AUDIT_TYPES[self]


_AUDIT_TYPES = {
    EventKind.PRICE_DROP: "price",
    EventKind.SEATS_AVAILABLE: "seats",
    EventKind.NEW_LISTING: "new",
}


@dataclass(frozen=True)
class Event:
    """A classified change for one listing on one route."""

    kind: EventKind
    route_id: str
    route_name: str
    operator_name: str
    old_price: Optional[int] = None
    new_price: Optional[int] = None
    seats: Optional[str] = None
    price: Optional[int] = None


AUDIT_TYPES = ("price", "seats", "new", "error")


@dataclass(frozen=True)
class AuditLogEntry:
    """One line of the bounded activity journal."""

    timestamp: str
    message: str
    type: str

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp, "message": self.message, "type": self.type}

    @classmethod
    def from_dict(cls, payload: dict) -> "AuditLogEntry":
        return cls(
            timestamp=str(payload.get("timestamp", "")),
            message=str(payload.get("message", "")),
            type=str(payload.get("type", "new")),
        )


@dataclass
class MonitorConfig:
    """Resolved notification settings."""

    sender_email: Optional[str] = None
    sender_password: Optional[str] = None
    notification_email: Optional[str] = None
    email_service: str = "gmail"
    smtp_host: Optional[str] = None
    smtp_port: Optional[int] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.sender_email and self.sender_password)


@dataclass
class ScanSummary:
    """Aggregated result returned by a scan invocation."""

    executed_at: str
    status: str
    routes_processed: int = 0
    routes_failed: List[str] = field(default_factory=list)
    events: List[Event] = field(default_factory=list)
    snapshot_updates: List[str] = field(default_factory=list)
