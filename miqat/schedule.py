"""Next-event selection and the once-a-second countdown."""

import datetime
import logging
import threading
from dataclasses import dataclass

import pytz

from miqat.prayer_api import DailyTimingTable, EventKind

logger = logging.getLogger(__name__)

TICK_INTERVAL = 1.0  # seconds


@dataclass(frozen=True)
class NextEvent:
    kind: EventKind
    scheduled_time: datetime.datetime
    milliseconds_remaining: int


@dataclass(frozen=True)
class Countdown:
    next_event: NextEvent
    remaining: str
    now: datetime.datetime


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(pytz.utc)


def _localize(tz, day: datetime.date, clock: datetime.time) -> datetime.datetime:
    # Non-existent local times (spring forward) take the standard-time offset.
    return tz.normalize(tz.localize(datetime.datetime.combine(day, clock), is_dst=False))


def event_instants(table: DailyTimingTable, day: datetime.date) -> list:
    """[(kind, aware datetime)] for ``day``; an Isha earlier than Maghrib falls on the next day."""
    tz = table.tz
    instants = []
    maghrib = table.time_of(EventKind.MAGHRIB)
    for kind, clock in table.timings:
        event_day = day
        if kind is EventKind.ISHA and clock < maghrib:
            event_day = day + datetime.timedelta(days=1)
        instants.append((kind, _localize(tz, event_day, clock)))
    return instants


def select_next(table: DailyTimingTable, now: datetime.datetime) -> NextEvent:
    """
    Return the first event strictly after ``now``.

    "Today" is ``now``'s calendar date in the table's time zone. Once every
    event has passed, the answer is Fajr on the following calendar day.
    """
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")
    today = now.astimezone(table.tz).date()

    for kind, instant in event_instants(table, today):
        if instant > now:
            return _next(kind, instant, now)

    tomorrow = today + datetime.timedelta(days=1)
    fajr = _localize(table.tz, tomorrow, table.time_of(EventKind.FAJR))
    return _next(EventKind.FAJR, fajr, now)


def _next(kind, instant, now) -> NextEvent:
    remaining = instant - now
    return NextEvent(kind, instant, int(remaining.total_seconds() * 1000))


def format_countdown(milliseconds: int) -> str:
    """Format milliseconds as an HH:MM:SS countdown string."""
    if milliseconds < 0:
        return "00:00:00"
    seconds = milliseconds // 1000
    h = seconds // 3600
    m = (seconds % 3600) // 60
    s = seconds % 60
    return f"{h:02d}:{m:02d}:{s:02d}"


class CountdownTicker:
    """
    Recomputes the next event from the wall clock once per ``interval``.

    Nothing is decremented between ticks, so clock adjustments correct
    themselves on the following tick. ``on_tick`` receives a Countdown.
    Ticks are handed to ``dispatch`` so they run on the owner's loop.
    """

    def __init__(self, on_tick, clock=utc_now, interval: float = TICK_INTERVAL,
                 dispatch=None, timer_factory=threading.Timer):
        self.on_tick = on_tick
        self.clock = clock
        self.interval = interval
        if dispatch is None and timer_factory is threading.Timer:
            raise ValueError("a threaded CountdownTicker needs a dispatch onto the owning loop")
        self.dispatch = dispatch or (lambda fn: fn())
        self.timer_factory = timer_factory
        self.table = None
        self._timer = None
        self._generation = 0

    @property
    def running(self) -> bool:
        return self.table is not None

    def start(self, table: DailyTimingTable) -> None:
        """(Re)start against ``table``, ticking immediately."""
        self.stop()
        self.table = table
        generation = self._generation
        logger.debug("Countdown started for %s", table.date)
        self.tick()
        self._arm(generation)

    def stop(self) -> None:
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self.table is not None:
            logger.debug("Countdown stopped")
        self.table = None

    def tick(self):
        """Run one recomputation and report it. Returns the Countdown, or None if stopped."""
        table = self.table
        if table is None:
            return None
        now = self.clock()
        nxt = select_next(table, now)
        countdown = Countdown(nxt, format_countdown(nxt.milliseconds_remaining), now)
        self.on_tick(countdown)
        return countdown

    def _arm(self, generation: int) -> None:
        if generation != self._generation:
            return
        t = self.timer_factory(self.interval, self._fire, args=(generation,))
        t.daemon = True
        self._timer = t
        t.start()

    def _fire(self, generation: int) -> None:
        self.dispatch(lambda: self._on_timer(generation))

    def _on_timer(self, generation: int) -> None:
        if generation != self._generation:
            return
        self.tick()
        self._arm(generation)
