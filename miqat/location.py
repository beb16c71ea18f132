"""Location resolution: automatic position lookup with a manual city fallback."""

import enum
import logging
from dataclasses import dataclass

import requests

from miqat.errors import LocationUnavailable
from miqat.tasks import TaskRunner

logger = logging.getLogger(__name__)

IPAPI_URL = "http://ip-api.com/json/"

# Upper bound for a single position request, in seconds.
POSITION_TIMEOUT = 10.0


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float

    def __post_init__(self):
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude out of range: {self.longitude}")


@dataclass(frozen=True)
class PlaceName:
    city: str
    country: str


class LocationStatus(enum.Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    GRANTED = "granted"
    DENIED = "denied"
    MANUAL = "manual"


@dataclass(frozen=True)
class LocationSnapshot:
    """One immutable view of the resolver. ``location`` is a Coordinates or PlaceName."""

    status: LocationStatus = LocationStatus.IDLE
    location: object = None
    error: LocationUnavailable = None


# ──────────────────────────────────────────────────────────────────────────────
# Position providers
# ──────────────────────────────────────────────────────────────────────────────
class PositionOutcome(enum.Enum):
    SUCCESS = "success"
    DENIED = "denied"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class PositionResult:
    outcome: PositionOutcome
    coordinates: Coordinates = None
    message: str = ""


class GeoPositionProvider:
    """One-shot "where am I" lookup. Implementations block and never raise."""

    def get_current_position(self, timeout: float = POSITION_TIMEOUT) -> PositionResult:
        raise NotImplementedError


class IpGeoPositionProvider(GeoPositionProvider):
    """Position from IP geolocation (ip-api.com)."""

    def __init__(self, url: str = IPAPI_URL, enabled: bool = True):
        self.url = url
        self.enabled = enabled

    def get_current_position(self, timeout: float = POSITION_TIMEOUT) -> PositionResult:
        if not self.enabled:
            return PositionResult(PositionOutcome.DENIED, message="automatic lookup disabled")
        try:
            resp = requests.get(
                self.url,
                params={"fields": "lat,lon,status,message"},
                timeout=timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except requests.Timeout:
            return PositionResult(PositionOutcome.TIMEOUT, message="position request timed out")
        except (requests.RequestException, ValueError) as exc:
            return PositionResult(PositionOutcome.UNAVAILABLE, message=str(exc))

        if data.get("status") != "success":
            return PositionResult(PositionOutcome.UNAVAILABLE, message=data.get("message", "lookup failed"))
        try:
            coords = Coordinates(float(data["lat"]), float(data["lon"]))
        except (KeyError, TypeError, ValueError) as exc:
            return PositionResult(PositionOutcome.UNAVAILABLE, message=f"bad coordinates: {exc}")
        return PositionResult(PositionOutcome.SUCCESS, coordinates=coords)


class FixedPositionProvider(GeoPositionProvider):
    """Always answers with the same coordinates (e.g. given on the command line)."""

    def __init__(self, latitude: float, longitude: float):
        self.coordinates = Coordinates(latitude, longitude)

    def get_current_position(self, timeout: float = POSITION_TIMEOUT) -> PositionResult:
        return PositionResult(PositionOutcome.SUCCESS, coordinates=self.coordinates)


# ──────────────────────────────────────────────────────────────────────────────
# Resolver
# ──────────────────────────────────────────────────────────────────────────────
class LocationResolver:
    """
    Small state machine over automatic lookup and manual entry.

    Every transition replaces ``snapshot`` with a new LocationSnapshot and
    calls each listener with ``(new, previous)``. Failures are absorbed into
    DENIED; nothing is raised to the caller and nothing is retried.
    """

    def __init__(self, provider: GeoPositionProvider, runner: TaskRunner = None,
                 timeout: float = POSITION_TIMEOUT):
        self.provider = provider
        self.runner = runner or TaskRunner(threaded=False)
        self.timeout = timeout
        self.snapshot = LocationSnapshot()
        self._listeners = []
        self._token = 0

    @property
    def status(self) -> LocationStatus:
        return self.snapshot.status

    @property
    def location(self):
        return self.snapshot.location

    def add_listener(self, listener) -> None:
        self._listeners.append(listener)

    def request_automatic(self) -> None:
        """Start one position request; its outcome lands in ``snapshot`` later."""
        self._token += 1
        token = self._token
        self._replace(LocationSnapshot(LocationStatus.RESOLVING, self.snapshot.location))
        self.runner.submit(
            lambda: self.provider.get_current_position(self.timeout),
            lambda result, error: self._on_position(token, result, error),
        )

    def submit_manual(self, city: str, country: str) -> bool:
        """Switch to a manual place. Returns False (and changes nothing) on blank input."""
        city = (city or "").strip()
        country = (country or "").strip()
        if not city or not country:
            logger.warning("Manual location rejected: city and country are both required")
            return False
        # Any in-flight automatic request is now stale.
        self._token += 1
        self._replace(LocationSnapshot(LocationStatus.MANUAL, PlaceName(city, country)))
        return True

    def _on_position(self, token: int, result: PositionResult, error: Exception) -> None:
        if token != self._token:
            logger.debug("Discarding stale position result")
            return
        if error is None and result is not None and result.outcome is PositionOutcome.SUCCESS:
            logger.info(
                "Location granted: %.4f, %.4f",
                result.coordinates.latitude,
                result.coordinates.longitude,
            )
            self._replace(LocationSnapshot(LocationStatus.GRANTED, result.coordinates))
            return

        if error is not None:
            reason = str(error)
        else:
            reason = result.message or result.outcome.value
        logger.warning("Automatic location failed: %s", reason)
        self._replace(LocationSnapshot(LocationStatus.DENIED, None, LocationUnavailable(reason)))

    def _replace(self, snapshot: LocationSnapshot) -> None:
        previous = self.snapshot
        self.snapshot = snapshot
        for listener in list(self._listeners):
            listener(snapshot, previous)
