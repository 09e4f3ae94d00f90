"""Listing extraction for bus route pages.

Extraction is an ordered chain of strategies. The cheap HTTP strategy parses
server-rendered markup with BeautifulSoup and the search API strategy asks the
site's JSON endpoint directly. The browser strategy drives a headless Chromium
through Playwright and is only consulted when everything before it came back
empty.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, List, Mapping, Optional, Protocol, Sequence
from urllib.parse import parse_qs, urlsplit

import requests
from bs4 import BeautifulSoup
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeout
from playwright.sync_api import sync_playwright

from .errors import ListingParseError, TransientFetchError
from .models import UNKNOWN_SEATS, Listing

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

BROWSER_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "Upgrade-Insecure-Requests": "1",
}

SEARCH_API_URL = "https://www.redbus.in/search/getBusesFromSearchResults"
API_RESULT_LIMIT = 20

MOBILE_DEVICE = "iPhone 13 Pro Max"
# Bangalore
DEVICE_GEOLOCATION = {"longitude": 77.5946, "latitude": 12.9716}
BLOCKED_RESOURCE_TYPES = frozenset({"image", "font", "media"})
BLOCKED_HOST_MARKERS = ("google-analytics", "facebook", "doubleclick")
CHROMIUM_ARGS = [
    "--disable-http2",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-gpu",
    "--disable-dev-shm-usage",
]

_NON_DIGITS = re.compile(r"\D")
_EMBEDDED_BUSES = re.compile(r"\{[\s\S]*\"buses\"[\s\S]*\}")


def parse_price(text: str | None) -> Optional[int]:
    """Strip every non-digit and parse the rest; None when nothing usable remains."""
    if text is None:
        return None
    digits = _NON_DIGITS.sub("", str(text))
    if not digits:
        return None
    value = int(digits)
    return value if value > 0 else None


def build_listing(name: str | None, price_text: str | None, seats: str | None) -> Listing:
    """Normalize raw field text into a Listing or raise ListingParseError."""
    name = (name or "").strip()
    if not name:
        raise ListingParseError("missing operator name")
    price = parse_price(price_text)
    if price is None:
        raise ListingParseError(f"no digits in price text {price_text!r} for {name}")
    seats = (seats or "").strip() or UNKNOWN_SEATS
    return Listing(operator_name=name, price=price, seats=seats)


def _first_present(record: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = record.get(key)
        if value not in (None, ""):
            return value
    return None


def _fare_text(value: Any) -> Optional[str]:
    """Numeric fares are truncated to whole rupees; text goes through parse_price."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(int(value))
    return None if value is None else str(value)


def listings_from_buses(buses: Sequence[Any]) -> List[Listing]:
    """Map JSON bus records (page state or search API) onto listings."""
    listings: List[Listing] = []
    for bus in buses:
        if not isinstance(bus, dict):
            continue
        seats = _first_present(bus, "availableSeats", "seatsAvailable")
        try:
            listings.append(
                build_listing(
                    _first_present(bus, "travels", "operatorName"),
                    _fare_text(_first_present(bus, "fare", "minFare")),
                    None if seats is None else str(seats),
                ))
        except ListingParseError as exc:
            logger.debug("Skipping bus entry: %s", exc)
    return listings


@dataclass(frozen=True)
class SelectorSet:
    """CSS selector alternatives for each logical listing field."""

    container: str
    operator: str
    price: str
    seats: str


HTTP_SELECTORS = SelectorSet(
    container=(
        'li[class*="bus-item"], div[class*="bus-item"], .bus-items li, '
        'li[class*="tupleWrapper"]'
    ),
    operator='[class*="travels"], [class*="operator-name"], .travels-name',
    price='[class*="fare"], [class*="price"], .fare, .price',
    seats='[class*="seat"], .seats-available',
)

BROWSER_SELECTORS = SelectorSet(
    container='li[class*="tupleWrapper"]',
    operator='div[class*="travelsName"], div[class*="travels"], .travels',
    price=(
        'div[class*="fareWrapper"] span, div[class*="fareWrapper"], '
        'p[class*="price"], .fare'
    ),
    seats='div[class*="seatsWrap"], .seat-left, .column-eight p, div[class*="seats"]',
)


class ListingStrategy(Protocol):
    """Fetch a route URL and return a best-effort listing list."""

    name: str

    def fetch(self, url: str) -> List[Listing]:
        ...


def parse_listings_html(html_text: str, selectors: SelectorSet = HTTP_SELECTORS) -> List[Listing]:
    """Extract listings from server-rendered markup, skipping malformed items."""
    soup = BeautifulSoup(html_text, "html.parser")
    listings: List[Listing] = []
    containers = soup.select(selectors.container)
    logger.debug("Found %d potential listing elements", len(containers))

    for item in containers:
        name_el = item.select_one(selectors.operator)
        price_el = item.select_one(selectors.price)
        seats_el = item.select_one(selectors.seats)
        try:
            listings.append(
                build_listing(
                    name_el.get_text(" ", strip=True) if name_el else None,
                    price_el.get_text(" ", strip=True) if price_el else None,
                    seats_el.get_text(" ", strip=True) if seats_el else None,
                ))
        except ListingParseError as exc:
            logger.debug("Skipping listing element: %s", exc)

    if not listings:
        listings = parse_embedded_json(soup)
    return listings


def parse_embedded_json(soup: BeautifulSoup) -> List[Listing]:
    """Look for a JSON blob with a ``buses`` array inside inline scripts."""
    for script in soup.find_all("script"):
        content = script.string or script.get_text()
        if not content or ("busData" not in content and "buses" not in content):
            continue
        match = _EMBEDDED_BUSES.search(content)
        if not match:
            continue
        try:
            payload = json.loads(match.group(0))
        except ValueError:
            logger.debug("Embedded bus data is not valid JSON")
            continue
        buses = payload.get("buses") if isinstance(payload, dict) else None
        if not isinstance(buses, list):
            continue

        listings = listings_from_buses(buses)
        if listings:
            logger.info("Found embedded JSON data with %d buses", len(listings))
            return listings
    return []


class HttpListingStrategy:
    """Plain HTTP GET plus HTML parsing. Uses tens of MB instead of a browser."""

    name = "http"

    def __init__(self, session: requests.Session | None = None, timeout: int = 30,
                 selectors: SelectorSet = HTTP_SELECTORS):
        self.session = session or requests.Session()
        self.session.headers.update(BROWSER_HEADERS)
        self.session.max_redirects = 5
        self.timeout = timeout
        self.selectors = selectors

    def fetch(self, url: str) -> List[Listing]:
        logger.debug("Fetching %s over HTTP", url)
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise TransientFetchError(f"GET {url} failed: {exc}") from exc

        if not response.encoding or response.encoding.lower() == "iso-8859-1":
            response.encoding = response.apparent_encoding or "utf-8"
        listings = parse_listings_html(response.text, self.selectors)
        logger.info("HTTP strategy extracted %d listings from %s", len(listings), url)
        return listings


def search_params(url: str, today: Optional[dt.date] = None) -> Optional[dict]:
    """Derive source, destination and travel date from a ``<src>-to-<dst>`` route URL."""
    parts = urlsplit(url)
    slug = parts.path.rstrip("/").rsplit("/", 1)[-1]
    source, sep, destination = slug.partition("-to-")
    if not sep or not source or not destination:
        return None
    onward = parse_qs(parts.query).get("onward")
    if onward:
        date = onward[0]
    else:
        date = (today or dt.datetime.now(dt.timezone.utc).date()).isoformat()
    return {"source": source, "destination": destination, "onwardDate": date}


class ApiListingStrategy:
    """POST the route's search parameters to the site's JSON search endpoint."""

    name = "api"

    def __init__(self, session: requests.Session | None = None, timeout: int = 15,
                 endpoint: str = SEARCH_API_URL, limit: int = API_RESULT_LIMIT):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.endpoint = endpoint
        self.limit = limit

    def fetch(self, url: str) -> List[Listing]:
        params = search_params(url)
        if params is None:
            logger.debug("No <src>-to-<dst> slug in %s; skipping search API", url)
            return []
        logger.debug("Querying search API for %s", params)
        try:
            response = self.session.post(
                self.endpoint,
                json=params,
                headers={
                    "User-Agent": USER_AGENT,
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise TransientFetchError(f"POST {self.endpoint} failed for {url}: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            logger.info("Search API answered %s with a non-JSON body", url)
            return []
        buses = payload.get("buses") if isinstance(payload, dict) else None
        if not isinstance(buses, list):
            return []
        listings = listings_from_buses(buses[: self.limit])
        logger.info("Search API returned %d listings for %s", len(listings), url)
        return listings


def _should_block(resource_type: str, url: str) -> bool:
    if resource_type in BLOCKED_RESOURCE_TYPES:
        return True
    return any(marker in url for marker in BLOCKED_HOST_MARKERS)


def _block_heavy_resources(route) -> None:
    request = route.request
    if _should_block(request.resource_type, request.url):
        route.abort()
    else:
        route.continue_()


def _element_text(element, selector: str) -> Optional[str]:
    found = element.query_selector(selector)
    return found.inner_text() if found else None


class BrowserListingStrategy:
    """Headless mobile Chromium for pages that only render client-side."""

    name = "browser"

    def __init__(
        self,
        playwright_factory: Callable = sync_playwright,
        selectors: SelectorSet = BROWSER_SELECTORS,
        navigation_timeout_ms: int = 90_000,
        wait_timeout_ms: int = 40_000,
        retry_settle_ms: int = 5_000,
        scroll_settle_ms: int = 2_000,
        deadline_seconds: Optional[float] = None,
    ):
        self.playwright_factory = playwright_factory
        self.selectors = selectors
        self.navigation_timeout_ms = navigation_timeout_ms
        self.wait_timeout_ms = wait_timeout_ms
        self.retry_settle_ms = retry_settle_ms
        self.scroll_settle_ms = scroll_settle_ms
        self.deadline_seconds = deadline_seconds

    def _bounded(self, timeout_ms: int) -> int:
        if self.deadline_seconds is None:
            return timeout_ms
        return min(timeout_ms, int(self.deadline_seconds * 1000))

    def fetch(self, url: str) -> List[Listing]:
        logger.info("Launching Chromium for %s", url)
        try:
            with self.playwright_factory() as playwright:
                browser = playwright.chromium.launch(headless=True, args=CHROMIUM_ARGS)
                try:
                    device = {
                        key: value
                        for key, value in playwright.devices[MOBILE_DEVICE].items()
                        if key != "default_browser_type"
                    }
                    context = browser.new_context(
                        **device,
                        locale="en-IN",
                        geolocation=DEVICE_GEOLOCATION,
                        permissions=["geolocation"],
                    )
                    try:
                        if self.deadline_seconds is not None:
                            context.set_default_timeout(self._bounded(self.wait_timeout_ms))
                        page = context.new_page()
                        try:
                            return self._scrape_page(page, url)
                        finally:
                            page.close()
                    finally:
                        context.close()
                finally:
                    browser.close()
        except PlaywrightTimeout as exc:
            raise TransientFetchError(f"browser timed out on {url}: {exc}") from exc
        except PlaywrightError as exc:
            raise TransientFetchError(f"browser failed on {url}: {exc}") from exc

    def _scrape_page(self, page, url: str) -> List[Listing]:
        page.route("**/*", _block_heavy_resources)
        page.goto(url, wait_until="domcontentloaded",
                  timeout=self._bounded(self.navigation_timeout_ms))

        container = self.selectors.container
        try:
            page.wait_for_selector(container, timeout=self._bounded(self.wait_timeout_ms))
        except PlaywrightTimeout:
            logger.info("Timeout waiting for listings on %s; attempting scroll", url)
            page.mouse.wheel(0, 1000)
            page.wait_for_timeout(self.retry_settle_ms)
            if page.query_selector(container) is None:
                logger.info("No listings found even after scroll. Title: %s", page.title())
                return []

        # one more scroll to trigger lazy-loaded rows
        page.mouse.wheel(0, 800)
        page.wait_for_timeout(self.scroll_settle_ms)

        elements = page.query_selector_all(container)
        logger.info("Browser found %d listing elements", len(elements))
        listings: List[Listing] = []
        for element in elements:
            try:
                listings.append(
                    build_listing(
                        _element_text(element, self.selectors.operator),
                        _element_text(element, self.selectors.price),
                        _element_text(element, self.selectors.seats),
                    ))
            except (ListingParseError, PlaywrightError) as exc:
                logger.debug("Skipping listing element: %s", exc)
        return listings


FailureCallback = Callable[[str, Exception], None]


@dataclass
class ExtractionChain:
    """Try each strategy in order until one yields listings."""

    strategies: Sequence[ListingStrategy] = field(default_factory=list)

    @classmethod
    def default(cls, deadline_seconds: Optional[float] = None) -> "ExtractionChain":
        return cls(strategies=[
            HttpListingStrategy(),
            ApiListingStrategy(),
            BrowserListingStrategy(deadline_seconds=deadline_seconds),
        ])

    def extract(self, url: str, on_failure: Optional[FailureCallback] = None) -> List[Listing]:
        """Return listings for ``url``; never raises.

        ``on_failure`` is called with the strategy name and the exception for
        every strategy that failed outright, so callers can record it.
        """
        for strategy in self.strategies:
            name = getattr(strategy, "name", type(strategy).__name__)
            try:
                listings = list(strategy.fetch(url))
            except TransientFetchError as exc:
                logger.warning("Strategy %s failed for %s: %s", name, url, exc)
                if on_failure is not None:
                    on_failure(name, exc)
                continue
            except Exception as exc:  # noqa: BLE001
                logger.exception("Strategy %s crashed for %s", name, url)
                if on_failure is not None:
                    on_failure(name, exc)
                continue
            if listings:
                return listings
            logger.info("Strategy %s found no listings for %s", name, url)

        logger.warning("All extraction strategies came back empty for %s", url)
        return []

    __call__ = extract
