"""Fetch daily prayer timing tables and Hijri date from the Aladhan API."""

import datetime
import enum
import logging
import time
from dataclasses import dataclass

import pytz
import requests

from miqat.errors import FetchError
from miqat.location import Coordinates, PlaceName

logger = logging.getLogger(__name__)

ALADHAN_BASE = "https://api.aladhan.com/v1"

REQUEST_TIMEOUT = 10
CACHE_TTL_SECONDS = 60 * 60

# Provider-defined calculation method IDs. 4 = Umm al-Qura, Makkah.
CALC_METHODS = {
    0: "Shia Ithna-Ashari",
    1: "University of Islamic Sciences, Karachi",
    2: "Islamic Society of North America (ISNA)",
    3: "Muslim World League",
    4: "Umm Al-Qura University, Makkah",
    5: "Egyptian General Authority of Survey",
    7: "Institute of Geophysics, University of Tehran",
    8: "Gulf Region",
    9: "Kuwait",
    10: "Qatar",
    11: "Majlis Ugama Islam Singapura",
    12: "Union Organization Islamic de France",
    13: "Diyanet Isleri Baskanligi, Turkey",
    14: "Spiritual Administration of Muslims of Russia",
    15: "Moonsighting Committee Worldwide",
}
DEFAULT_METHOD = 4


class EventKind(enum.Enum):
    FAJR = "Fajr"
    SUNRISE = "Sunrise"
    DHUHR = "Dhuhr"
    ASR = "Asr"
    MAGHRIB = "Maghrib"
    ISHA = "Isha"

    @property
    def display_name(self) -> str:
        return self.value

    @property
    def arabic_name(self) -> str:
        return _ARABIC_NAMES[self]


_ARABIC_NAMES = {
    EventKind.FAJR: "الفجر",
    EventKind.SUNRISE: "الشروق",
    EventKind.DHUHR: "الظهر",
    EventKind.ASR: "العصر",
    EventKind.MAGHRIB: "المغرب",
    EventKind.ISHA: "العشاء",
}

# Canonical order; Enum iteration preserves it.
PRAYER_ORDER = tuple(EventKind)


@dataclass(frozen=True)
class HijriDate:
    day: int
    month: int
    month_name: str
    month_ar: str
    year: int


@dataclass(frozen=True)
class DailyTimingTable:
    """
    The six canonical events for one calendar day, in canonical order.

    ``timings`` is a tuple of (EventKind, datetime.time). ``timezone`` is the
    IANA zone the clock times are expressed in; ``coordinates`` is the position
    the provider computed for (echoed back even for city lookups).
    """

    date: datetime.date
    timings: tuple
    timezone: str = "UTC"
    hijri: HijriDate = None
    weekday: str = ""
    coordinates: Coordinates = None

    @property
    def tz(self):
        return pytz.timezone(self.timezone)

    def time_of(self, kind: EventKind) -> datetime.time:
        for k, t in self.timings:
            if k is kind:
                return t
        raise KeyError(kind)

    def as_strings(self) -> dict:
        """{"Fajr": "HH:MM", ...}"""
        return {kind.value: t.strftime("%H:%M") for kind, t in self.timings}


def parse_clock(raw: str) -> datetime.time:
    """Parse 'HH:MM' (optionally followed by ' (TZ)') into a time."""
    clean = raw.strip().split(" ")[0]
    hour, minute = map(int, clean.split(":")[:2])
    return datetime.time(hour, minute)


def _section(obj, key: str) -> dict:
    """Return ``obj[key]`` when both are JSON objects, else an empty dict."""
    value = obj.get(key) if isinstance(obj, dict) else None
    return value if isinstance(value, dict) else {}


def build_table(data: dict, date: datetime.date) -> DailyTimingTable:
    """Turn the provider's ``data`` object into a DailyTimingTable. Raises FetchError."""
    try:
        raw_timings = data["timings"]
        timings = tuple((kind, parse_clock(raw_timings[kind.value])) for kind in PRAYER_ORDER)
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise FetchError(f"Malformed timings in Aladhan response: {exc}") from exc

    # Everything up to Maghrib must be ordered; Isha alone may wrap past midnight.
    clock = [t for _, t in timings[:-1]]
    if any(a > b for a, b in zip(clock, clock[1:])):
        raise FetchError(f"Aladhan timings out of order: {raw_timings}")

    date_info = _section(data, "date")
    hijri = None
    try:
        hijri_data = date_info["hijri"]
        month = _section(hijri_data, "month")
        hijri = HijriDate(
            day=int(hijri_data["day"]),
            month=int(month["number"]),
            month_name=month["en"],
            month_ar=month.get("ar", ""),
            year=int(hijri_data["year"]),
        )
    except (KeyError, TypeError, ValueError):
        logger.debug("Could not parse Hijri date from Aladhan response")

    weekday = _section(_section(date_info, "gregorian"), "weekday").get("en", "")
    if not isinstance(weekday, str):
        weekday = ""

    meta = _section(data, "meta")
    tz_name = meta.get("timezone")
    if not isinstance(tz_name, str) or not tz_name:
        tz_name = "UTC"
    try:
        pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        logger.warning("Unknown timezone %r from provider, using UTC", tz_name)
        tz_name = "UTC"

    coordinates = None
    try:
        coordinates = Coordinates(float(meta["latitude"]), float(meta["longitude"]))
    except (KeyError, TypeError, ValueError):
        pass

    return DailyTimingTable(
        date=date,
        timings=timings,
        timezone=tz_name,
        hijri=hijri,
        weekday=weekday,
        coordinates=coordinates,
    )


def build_request(location, method: int, date: datetime.date):
    """Return (url, params) for the coordinate or place-name endpoint."""
    date_str = date.strftime("%d-%m-%Y")
    if isinstance(location, Coordinates):
        url = f"{ALADHAN_BASE}/timings/{date_str}"
        params = {"latitude": location.latitude, "longitude": location.longitude, "method": method}
    elif isinstance(location, PlaceName):
        url = f"{ALADHAN_BASE}/timingsByCity/{date_str}"
        params = {"city": location.city, "country": location.country, "method": method}
    else:
        raise TypeError(f"Unsupported location: {location!r}")
    return url, params


class ScheduleCache:
    """In-memory tables keyed by (location, date, method), each kept for ``ttl`` seconds."""

    def __init__(self, ttl: float = CACHE_TTL_SECONDS, monotonic=time.monotonic):
        self.ttl = ttl
        self.monotonic = monotonic
        self._entries = {}

    def get(self, key):
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, table = entry
        if self.monotonic() - stored_at >= self.ttl:
            del self._entries[key]
            return None
        return table

    def put(self, key, table: DailyTimingTable) -> None:
        # Only one (location, date, method) is ever current.
        self._entries = {key: (self.monotonic(), table)}

    def invalidate(self, location=None) -> None:
        if location is None:
            self._entries.clear()
            return
        self._entries = {k: v for k, v in self._entries.items() if k[0] != location}

    def __len__(self):
        return len(self._entries)


class PrayerScheduleClient:
    """Fetches a DailyTimingTable for a resolved location and calculation method."""

    def __init__(self, cache: ScheduleCache = None, timeout: float = REQUEST_TIMEOUT, today=None):
        self.cache = cache if cache is not None else ScheduleCache()
        self.timeout = timeout
        self.today = today or datetime.date.today

    def fetch(self, location, method: int = DEFAULT_METHOD, date: datetime.date = None) -> DailyTimingTable:
        """
        Fetch the timing table for ``location`` on ``date`` (default: today).

        Raises FetchError on transport failure, non-success status, or a
        malformed payload. Callers are expected to retry explicitly.
        """
        if date is None:
            date = self.today()
        key = (location, date, method)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Timing table cache hit for %s", key)
            return cached

        url, params = build_request(location, method, date)
        try:
            resp = requests.get(url, params=params, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except requests.RequestException as exc:
            raise FetchError(f"Aladhan request failed: {exc}") from exc
        except ValueError as exc:
            raise FetchError(f"Aladhan returned invalid JSON: {exc}") from exc

        if not isinstance(body, dict) or body.get("code") != 200:
            status = body.get("status") if isinstance(body, dict) else body
            raise FetchError(f"Aladhan API error: {status}")
        data = body.get("data")
        if not isinstance(data, dict):
            raise FetchError("Aladhan response has no data object")

        table = build_table(data, date)
        self.cache.put(key, table)
        logger.info("Fetched timings for %s on %s (method %s)", location, date.isoformat(), method)
        return table
