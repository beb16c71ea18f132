"""
Ritual timing and orientation engine.

Wires location resolution, schedule fetching, the countdown and the qibla
needle together behind one owned state cell. Every change produces a new
EngineState which is handed to ``on_update``.
"""

import logging
import threading
from dataclasses import dataclass, field, replace

from miqat.errors import ScheduleFetchFailed, SensorUnsupported
from miqat.heading import HeadingSensorAdapter, HeadingState, OrientationSource
from miqat.location import Coordinates, LocationResolver, LocationSnapshot, LocationStatus, PlaceName
from miqat.notifier import ReminderTracker
from miqat.prayer_api import DEFAULT_METHOD, DailyTimingTable, PrayerScheduleClient
from miqat.qibla import QiblaState, bearing
from miqat.schedule import Countdown, CountdownTicker, utc_now
from miqat.tasks import TaskRunner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineState:
    location: LocationSnapshot = field(default_factory=LocationSnapshot)
    method: int = DEFAULT_METHOD
    table: DailyTimingTable = None
    loading: bool = False
    schedule_error: ScheduleFetchFailed = None
    countdown: Countdown = None
    qibla: QiblaState = field(default_factory=QiblaState)
    heading_state: HeadingState = HeadingState.UNCHECKED
    heading_error: SensorUnsupported = None

    @property
    def location_error(self):
        return self.location.error


def _qibla_for(location, table: DailyTimingTable = None):
    if isinstance(location, Coordinates):
        return bearing(location.latitude, location.longitude)
    if isinstance(location, PlaceName) and table is not None and table.coordinates is not None:
        return bearing(table.coordinates.latitude, table.coordinates.longitude)
    return None


class CompanionEngine:
    def __init__(
        self,
        resolver: LocationResolver,
        client: PrayerScheduleClient,
        orientation: OrientationSource = None,
        method: int = DEFAULT_METHOD,
        runner: TaskRunner = None,
        clock=utc_now,
        timer_factory=threading.Timer,
        reminders: ReminderTracker = None,
        on_update=None,
    ):
        self.resolver = resolver
        self.client = client
        if runner is None:
            raise ValueError("CompanionEngine needs a TaskRunner; pass TaskRunner(dispatch=...)")
        if timer_factory is threading.Timer and not runner.marshals:
            raise ValueError("countdown timers need a runner that dispatches onto the owning loop")
        self.runner = runner
        self.clock = clock
        self.reminders = reminders
        self.on_update = on_update or (lambda state: None)
        self.active = False
        self.state = EngineState(location=resolver.snapshot, method=method)
        self._refreshed_for = None

        self.ticker = CountdownTicker(
            self._on_tick,
            clock=clock,
            dispatch=self.runner.dispatch,
            timer_factory=timer_factory,
        )
        self.heading = None
        if orientation is not None:
            self.heading = HeadingSensorAdapter(
                orientation,
                on_heading=self._on_heading,
                on_state=self._on_heading_state,
                runner=self.runner,
            )
        resolver.add_listener(self._on_location)

    # ──────────────────────────────────────────────────────────────────────
    # Caller actions
    # ──────────────────────────────────────────────────────────────────────
    def activate(self) -> None:
        """Start (or resume) the engine for a visible screen."""
        self.active = True
        snapshot = self.resolver.snapshot
        if snapshot.location is None and snapshot.status is LocationStatus.IDLE:
            self.resolver.request_automatic()
        elif self.state.table is not None:
            self.ticker.start(self.state.table)
        elif snapshot.location is not None and not self.state.loading:
            self._fetch()
        if self.heading is not None:
            self.heading.activate()

    def deactivate(self) -> None:
        """Cancel the countdown and release the orientation listener."""
        self.active = False
        self.ticker.stop()
        if self.heading is not None:
            self.heading.deactivate()
        self._set(countdown=None)

    def request_location(self) -> None:
        self.resolver.request_automatic()

    def submit_manual(self, city: str, country: str) -> bool:
        return self.resolver.submit_manual(city, country)

    def set_method(self, method: int) -> None:
        if method == self.state.method:
            return
        logger.info("Calculation method changed to %s", method)
        self.client.cache.invalidate()
        self._set(method=method)
        if self.state.location.location is not None:
            self._fetch()

    def retry(self) -> None:
        """Re-issue the schedule fetch for the current location, if any."""
        if self.state.location.location is not None:
            self._fetch()

    # ──────────────────────────────────────────────────────────────────────
    # Location → schedule
    # ──────────────────────────────────────────────────────────────────────
    def _current_key(self):
        return (self.state.location.location, self.state.method)

    def _on_location(self, snapshot: LocationSnapshot, previous: LocationSnapshot) -> None:
        self._set(location=snapshot)
        if snapshot.location == previous.location:
            return
        if previous.location is not None:
            self.client.cache.invalidate(previous.location)

        self._refreshed_for = None
        if snapshot.location is None:
            self.ticker.stop()
            self._set(
                table=None,
                countdown=None,
                loading=False,
                qibla=replace(self.state.qibla, bearing_to_target=None),
            )
            return

        self.ticker.stop()
        self._set(
            table=None,
            countdown=None,
            qibla=replace(self.state.qibla, bearing_to_target=_qibla_for(snapshot.location)),
        )
        self._fetch()

    def _fetch(self, date=None) -> None:
        key = self._current_key()
        location, method = key
        self._set(loading=True, schedule_error=None)
        self.runner.submit(
            lambda: self.client.fetch(location, method, date),
            lambda table, error: self._on_table(key, table, error),
        )

    def _on_table(self, key, table: DailyTimingTable, error: Exception) -> None:
        if key != self._current_key():
            logger.debug("Discarding timings for superseded request %s", key)
            return

        if error is not None:
            if not isinstance(error, ScheduleFetchFailed):
                error = ScheduleFetchFailed(str(error))
            logger.warning("Could not load prayer times: %s", error)
            self.ticker.stop()
            self._set(table=None, countdown=None, loading=False, schedule_error=error)
            return

        qibla = self.state.qibla
        if qibla.bearing_to_target is None:
            qibla = replace(qibla, bearing_to_target=_qibla_for(key[0], table))
        self._set(table=table, loading=False, schedule_error=None, qibla=qibla)
        if self.active:
            self.ticker.start(table)

    def _on_tick(self, countdown: Countdown) -> None:
        self._set(countdown=countdown)
        if self.reminders is not None:
            self.reminders.observe(countdown)

        table = self.state.table
        if table is None:
            return
        local_day = countdown.now.astimezone(table.tz).date()
        if local_day > table.date and self._refreshed_for != local_day:
            logger.info("New day %s, refreshing prayer times", local_day.isoformat())
            self._refreshed_for = local_day
            self._fetch(local_day)

    # ──────────────────────────────────────────────────────────────────────
    # Heading
    # ──────────────────────────────────────────────────────────────────────
    def _on_heading(self, heading: float) -> None:
        self._set(qibla=replace(self.state.qibla, device_heading=heading))

    def _on_heading_state(self, state: HeadingState) -> None:
        qibla = replace(
            self.state.qibla,
            permission_granted=state is HeadingState.SUBSCRIBED,
            sensor_supported=state not in (HeadingState.UNSUPPORTED, HeadingState.DENIED),
        )
        if state is not HeadingState.SUBSCRIBED:
            qibla = replace(qibla, device_heading=None)
        self._set(heading_state=state, heading_error=self.heading.error, qibla=qibla)

    def _set(self, **changes) -> None:
        self.state = replace(self.state, **changes)
        self.on_update(self.state)
