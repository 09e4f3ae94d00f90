"""Diff utilities for comparing scraped listing snapshots."""

from __future__ import annotations

from typing import Dict, Iterable, List, Sequence

from .models import Event, EventKind, Listing, Route


def seats_unavailable(seats: str | None) -> bool:
    """Lexical heuristic: empty text, a zero digit or "sold" means no seats."""
    if not seats:
        return True
    return "0" in seats or "sold" in seats.lower()


def seats_available(seats: str | None) -> bool:
    return not seats_unavailable(seats)


def _index_by_name(listings: Iterable[Listing]) -> Dict[str, Listing]:
    index: Dict[str, Listing] = {}
    for listing in listings:
        # first match wins on duplicate operator names
        index.setdefault(listing.operator_name, listing)
    return index


def diff_listings(
    route: Route,
    old_listings: Sequence[Listing],
    new_listings: Sequence[Listing],
) -> List[Event]:
    """Classify the changes between the stored and the freshly scraped listings."""
    previous = _index_by_name(old_listings)
    events: List[Event] = []

    for listing in new_listings:
        old = previous.get(listing.operator_name)
        if old is None:
            events.append(
                Event(
                    kind=EventKind.NEW_LISTING,
                    route_id=route.id,
                    route_name=route.name,
                    operator_name=listing.operator_name,
                    price=listing.price,
                ))
            continue

        if listing.price < old.price:
            events.append(
                Event(
                    kind=EventKind.PRICE_DROP,
                    route_id=route.id,
                    route_name=route.name,
                    operator_name=listing.operator_name,
                    old_price=old.price,
                    new_price=listing.price,
                ))
        if seats_unavailable(old.seats) and seats_available(listing.seats):
            events.append(
                Event(
                    kind=EventKind.SEATS_AVAILABLE,
                    route_id=route.id,
                    route_name=route.name,
                    operator_name=listing.operator_name,
                    seats=listing.seats,
                ))

    return events
