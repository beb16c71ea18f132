"""Tests for the engine module."""

import datetime
import queue
import threading
import time
import unittest
from unittest.mock import MagicMock

import pytz

from miqat.engine import CompanionEngine
from miqat.errors import FetchError, LocationUnavailable, ScheduleFetchFailed, SensorUnsupported
from miqat.heading import CallbackOrientationSource, HeadingState, OrientationEvent
from miqat.location import (
    Coordinates,
    FixedPositionProvider,
    GeoPositionProvider,
    LocationResolver,
    LocationStatus,
    PlaceName,
    PositionOutcome,
    PositionResult,
)
from miqat.prayer_api import DailyTimingTable, EventKind, ScheduleCache
from miqat.qibla import bearing
from miqat.tasks import TaskRunner

DAY = datetime.date(2025, 3, 1)
LONDON = Coordinates(51.5074, -0.1278)
RIYADH = PlaceName("Riyadh", "Saudi Arabia")

TIMINGS = {
    "Fajr": "04:30",
    "Sunrise": "05:55",
    "Dhuhr": "12:00",
    "Asr": "15:30",
    "Maghrib": "18:15",
    "Isha": "19:30",
}


def make_table(date=DAY, coordinates=None, asr="15:30"):
    values = dict(TIMINGS, Asr=asr)
    parsed = tuple(
        (kind, datetime.datetime.strptime(values[kind.value], "%H:%M").time())
        for kind in EventKind
    )
    return DailyTimingTable(date=date, timings=parsed, timezone="UTC", coordinates=coordinates)


class FakeTimer:
    def __init__(self, interval, fn, args=()):
        self.fn = fn
        self.args = args
        self.cancelled = False
        self.daemon = False

    def start(self):
        pass

    def cancel(self):
        self.cancelled = True


class DeferredRunner(TaskRunner):
    def __init__(self):
        super().__init__(threaded=False)
        self.pending = []

    def submit(self, work, on_done):
        self.pending.append((work, on_done))

    def release(self, index=0):
        work, on_done = self.pending.pop(index)
        self._run(work, on_done)


class StubProvider(GeoPositionProvider):
    def __init__(self, outcome):
        self.outcome = outcome

    def get_current_position(self, timeout=10.0):
        return PositionResult(self.outcome)


class EngineTestCase(unittest.TestCase):
    def setUp(self):
        self.now = pytz.utc.localize(datetime.datetime(2025, 3, 1, 12, 0))
        self.client = MagicMock()
        self.client.cache = ScheduleCache()
        self.client.fetch.side_effect = lambda location, method, date=None: make_table()
        self.updates = []

    def make_engine(self, provider=None, runner=None, orientation=None, resolver_runner=None):
        runner = runner or TaskRunner(threaded=False)
        resolver = LocationResolver(
            provider or FixedPositionProvider(LONDON.latitude, LONDON.longitude),
            runner=resolver_runner or runner,
        )
        engine = CompanionEngine(
            resolver,
            self.client,
            orientation=orientation,
            method=4,
            runner=runner,
            clock=lambda: self.now,
            timer_factory=FakeTimer,
            on_update=self.updates.append,
        )
        return engine


class TestScheduleFlow(EngineTestCase):
    def test_activate_resolves_and_starts_countdown(self):
        engine = self.make_engine()
        engine.activate()
        state = engine.state
        self.assertEqual(state.location.status, LocationStatus.GRANTED)
        self.client.fetch.assert_called_once_with(LONDON, 4, None)
        self.assertIsNotNone(state.table)
        self.assertFalse(state.loading)
        self.assertEqual(state.countdown.next_event.kind, EventKind.ASR)
        self.assertEqual(state.countdown.remaining, "03:30:00")
        self.assertAlmostEqual(state.qibla.bearing_to_target, bearing(LONDON.latitude, LONDON.longitude))
        self.assertTrue(engine.ticker.running)

    def test_denied_location_is_state_not_exception(self):
        engine = self.make_engine(provider=StubProvider(PositionOutcome.DENIED))
        engine.activate()
        self.assertEqual(engine.state.location.status, LocationStatus.DENIED)
        self.assertIsInstance(engine.state.location_error, LocationUnavailable)
        self.assertIsNone(engine.state.table)
        self.client.fetch.assert_not_called()

    def test_manual_after_denied_fetches_by_city(self):
        engine = self.make_engine(provider=StubProvider(PositionOutcome.TIMEOUT))
        engine.activate()
        self.assertTrue(engine.submit_manual("Riyadh", "Saudi Arabia"))
        self.client.fetch.assert_called_once_with(RIYADH, 4, None)
        self.assertEqual(engine.state.location.status, LocationStatus.MANUAL)
        self.assertIsNotNone(engine.state.countdown)

    def test_blank_manual_input_changes_nothing(self):
        engine = self.make_engine()
        engine.activate()
        before = engine.state
        self.assertFalse(engine.submit_manual("", "X"))
        self.assertIs(engine.state, before)

    def test_fetch_error_stops_countdown(self):
        engine = self.make_engine()
        engine.activate()
        self.client.fetch.side_effect = FetchError("HTTP 500")
        engine.retry()
        state = engine.state
        self.assertIsInstance(state.schedule_error, ScheduleFetchFailed)
        self.assertIsNone(state.table)
        self.assertIsNone(state.countdown)
        self.assertFalse(engine.ticker.running)

    def test_unexpected_error_is_wrapped(self):
        self.client.fetch.side_effect = RuntimeError("boom")
        engine = self.make_engine()
        engine.activate()
        self.assertIsInstance(engine.state.schedule_error, ScheduleFetchFailed)

    def test_retry_after_error_restarts_countdown(self):
        self.client.fetch.side_effect = FetchError("offline")
        engine = self.make_engine()
        engine.activate()
        self.client.fetch.side_effect = lambda location, method, date=None: make_table()
        engine.retry()
        self.assertIsNone(engine.state.schedule_error)
        self.assertTrue(engine.ticker.running)

    def test_method_change_refetches(self):
        engine = self.make_engine()
        engine.activate()
        engine.set_method(2)
        self.assertEqual(self.client.fetch.call_args[0], (LONDON, 2, None))
        self.assertEqual(engine.state.method, 2)
        engine.set_method(2)
        self.assertEqual(self.client.fetch.call_count, 2)

    def test_location_change_invalidates_cache_for_prior_location(self):
        engine = self.make_engine()
        self.client.cache.put((LONDON, DAY, 4), make_table())
        engine.activate()
        engine.submit_manual("Riyadh", "Saudi Arabia")
        self.assertEqual(len(self.client.cache), 0)

    def test_place_name_qibla_comes_from_provider_coordinates(self):
        mecca_area = Coordinates(24.7136, 46.6753)
        self.client.fetch.side_effect = lambda location, method, date=None: make_table(coordinates=mecca_area)
        engine = self.make_engine(provider=StubProvider(PositionOutcome.DENIED))
        engine.activate()
        self.assertIsNone(engine.state.qibla.bearing_to_target)
        engine.submit_manual("Riyadh", "Saudi Arabia")
        self.assertAlmostEqual(engine.state.qibla.bearing_to_target, bearing(24.7136, 46.6753))


class TestStaleResponses(EngineTestCase):
    def test_late_response_for_old_location_is_discarded(self):
        runner = DeferredRunner()
        tables = {LONDON: make_table(asr="15:30"), RIYADH: make_table(asr="14:00")}
        self.client.fetch.side_effect = lambda location, method, date=None: tables[location]
        engine = self.make_engine(runner=runner, resolver_runner=TaskRunner(threaded=False))
        engine.activate()  # fetch for London is now in flight
        engine.submit_manual("Riyadh", "Saudi Arabia")  # fetch for Riyadh in flight

        runner.release(1)  # Riyadh answers first
        self.assertIs(engine.state.table, tables[RIYADH])
        runner.release(0)  # London arrives late
        self.assertIs(engine.state.table, tables[RIYADH])
        self.assertEqual(engine.state.countdown.remaining, "02:00:00")

    def test_late_response_alone_does_not_install_table(self):
        runner = DeferredRunner()
        engine = self.make_engine(runner=runner, resolver_runner=TaskRunner(threaded=False))
        engine.activate()
        engine.submit_manual("Riyadh", "Saudi Arabia")
        runner.release(0)
        self.assertIsNone(engine.state.table)
        self.assertTrue(engine.state.loading)

    def test_late_response_for_old_method_is_discarded(self):
        runner = DeferredRunner()
        engine = self.make_engine(runner=runner, resolver_runner=TaskRunner(threaded=False))
        engine.activate()
        engine.set_method(3)
        runner.release(0)
        self.assertIsNone(engine.state.table)
        runner.release(0)
        self.assertIsNotNone(engine.state.table)


class TestLifecycle(EngineTestCase):
    def test_deactivate_stops_ticker_and_unsubscribes(self):
        source = CallbackOrientationSource()
        engine = self.make_engine(orientation=source)
        engine.activate()
        self.assertEqual(len(source.listeners), 1)
        timer = engine.ticker._timer
        engine.deactivate()
        self.assertTrue(timer.cancelled)
        self.assertFalse(engine.ticker.running)
        self.assertEqual(source.listeners, [])
        self.assertIsNone(engine.state.countdown)

    def test_reactivate_resumes_without_refetch(self):
        engine = self.make_engine()
        engine.activate()
        engine.deactivate()
        engine.activate()
        self.assertTrue(engine.ticker.running)
        self.assertEqual(self.client.fetch.call_count, 1)

    def test_table_arriving_while_inactive_does_not_start_ticker(self):
        runner = DeferredRunner()
        engine = self.make_engine(runner=runner, resolver_runner=TaskRunner(threaded=False))
        engine.activate()
        engine.deactivate()
        runner.release()
        self.assertIsNotNone(engine.state.table)
        self.assertFalse(engine.ticker.running)

    def test_new_day_triggers_single_refresh(self):
        engine = self.make_engine()
        engine.activate()
        tomorrow = DAY + datetime.timedelta(days=1)
        self.client.fetch.side_effect = lambda location, method, date=None: make_table(date=tomorrow)
        self.now = pytz.utc.localize(datetime.datetime(2025, 3, 2, 0, 0, 5))
        engine.ticker.tick()
        self.assertEqual(self.client.fetch.call_args[0], (LONDON, 4, tomorrow))
        self.assertEqual(engine.state.table.date, tomorrow)
        engine.ticker.tick()
        self.assertEqual(self.client.fetch.call_count, 2)

    def test_failed_day_refresh_is_not_repeated_every_tick(self):
        engine = self.make_engine()
        engine.activate()
        self.client.fetch.side_effect = FetchError("offline")
        self.now = pytz.utc.localize(datetime.datetime(2025, 3, 2, 0, 0, 5))
        engine.ticker.tick()
        self.assertIsInstance(engine.state.schedule_error, ScheduleFetchFailed)
        self.assertIsNone(engine.ticker.tick())
        self.assertEqual(self.client.fetch.call_count, 2)


class TestHeadingIntegration(EngineTestCase):
    def test_live_heading_rotates_indicator(self):
        source = CallbackOrientationSource(provides_compass_heading=True)
        engine = self.make_engine(orientation=source)
        engine.activate()
        self.assertEqual(engine.state.heading_state, HeadingState.SUBSCRIBED)
        self.assertTrue(engine.state.qibla.permission_granted)
        source.emit(OrientationEvent(compass_heading=100.0))
        qibla = engine.state.qibla
        self.assertEqual(qibla.device_heading, 100.0)
        self.assertTrue(qibla.rotation.live)
        self.assertAlmostEqual(qibla.rotation.degrees, (qibla.bearing_to_target - 100.0) % 360)

    def test_unsupported_sensor_degrades_to_static_bearing(self):
        engine = self.make_engine(orientation=CallbackOrientationSource(available=False))
        engine.activate()
        state = engine.state
        self.assertEqual(state.heading_state, HeadingState.UNSUPPORTED)
        self.assertIsInstance(state.heading_error, SensorUnsupported)
        self.assertFalse(state.qibla.sensor_supported)
        self.assertFalse(state.qibla.rotation.live)
        self.assertAlmostEqual(state.qibla.rotation.degrees, state.qibla.bearing_to_target)

    def test_refused_permission(self):
        source = CallbackOrientationSource(requires_permission=True, grant=False)
        engine = self.make_engine(orientation=source)
        engine.activate()
        self.assertEqual(engine.state.heading_state, HeadingState.DENIED)
        self.assertFalse(engine.state.qibla.permission_granted)


class TestOwnerThread(unittest.TestCase):
    def test_threaded_runner_requires_dispatch(self):
        with self.assertRaises(ValueError):
            TaskRunner()

    def test_engine_requires_runner(self):
        resolver = LocationResolver(FixedPositionProvider(LONDON.latitude, LONDON.longitude))
        with self.assertRaises(ValueError):
            CompanionEngine(resolver, MagicMock())

    def test_real_timers_need_a_marshalling_runner(self):
        resolver = LocationResolver(FixedPositionProvider(LONDON.latitude, LONDON.longitude))
        with self.assertRaises(ValueError):
            CompanionEngine(resolver, MagicMock(), runner=TaskRunner(threaded=False))

    def test_every_update_runs_on_owner_thread(self):
        events = queue.Queue()
        runner = TaskRunner(dispatch=events.put)
        resolver = LocationResolver(
            FixedPositionProvider(LONDON.latitude, LONDON.longitude), runner=runner,
        )
        client = MagicMock()
        client.cache = ScheduleCache()
        client.fetch.side_effect = lambda location, method, date=None: make_table()
        now = pytz.utc.localize(datetime.datetime(2025, 3, 1, 12, 0))
        threads = []
        engine = CompanionEngine(
            resolver,
            client,
            runner=runner,
            clock=lambda: now,
            on_update=lambda state: threads.append(threading.current_thread()),
        )

        engine.activate()
        deadline = time.monotonic() + 1.6
        while time.monotonic() < deadline:
            try:
                fn = events.get(timeout=0.1)
            except queue.Empty:
                continue
            fn()
        engine.deactivate()

        self.assertIsNotNone(engine.state.table)
        # six updates reach the first countdown; anything beyond came from a timer tick
        self.assertGreaterEqual(len(threads), 7)
        for thread in threads:
            self.assertIs(thread, threading.main_thread())

if __name__ == "__main__":
    unittest.main()
