"""Exception hierarchy shared across BusRadar components."""


class BusRadarError(Exception):
    """Base class for all BusRadar errors."""


class TransientFetchError(BusRadarError):
    """Network failure or timeout while fetching a route page."""


class ListingParseError(BusRadarError):
    """A single listing element could not be turned into a Listing."""


class PersistenceError(BusRadarError):
    """A JSON document could not be written."""


class NotificationError(BusRadarError):
    """Notification transport is misconfigured or delivery failed."""


class RouteProcessingError(BusRadarError):
    """Any failure escaping the processing of a single route."""

    def __init__(self, route_id: str, route_name: str, cause: BaseException):
        super().__init__(f"{route_name} ({route_id}): {cause}")
        self.route_id = route_id
        self.route_name = route_name
        self.cause = cause
