#!/usr/bin/env python3
"""
Miqat terminal companion
Shows, for the current or a chosen location:
  - Date (Gregorian + Hijri) and the day's six prayer times
  - Live countdown to the next prayer, recomputed every second
  - Qibla bearing, fused with a compass heading when one is supplied
  - Desktop reminders before each prayer and an alert when it arrives
"""

import argparse
import logging
import queue
import sys
from dataclasses import replace

from miqat.engine import CompanionEngine
from miqat.heading import CallbackOrientationSource, HeadingState, OrientationEvent
from miqat.location import FixedPositionProvider, IpGeoPositionProvider, LocationResolver
from miqat.notifier import ReminderTracker
from miqat.prayer_api import CALC_METHODS, PrayerScheduleClient
from miqat.settings import clear_manual_place, load_settings, save_settings
from miqat.tasks import TaskRunner

REFRESH_S = 1.0  # how long the loop waits for work before redrawing


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Prayer times countdown and qibla direction.")
    parser.add_argument("--city", help="manual city (requires --country)")
    parser.add_argument("--country", help="manual country (requires --city)")
    parser.add_argument("--lat", type=float, help="latitude, skips automatic lookup")
    parser.add_argument("--lon", type=float, help="longitude, skips automatic lookup")
    parser.add_argument(
        "--method",
        type=int,
        choices=sorted(CALC_METHODS),
        help="calculation method id (default: saved or Umm al-Qura)",
    )
    parser.add_argument("--heading", type=float, help="fixed compass heading in degrees")
    parser.add_argument("--save", action="store_true", help="remember --city/--country and --method")
    parser.add_argument("--forget", action="store_true", help="forget the saved manual place")
    parser.add_argument("--once", action="store_true", help="print the schedule and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    args = parser.parse_args(argv)

    if (args.lat is None) != (args.lon is None):
        parser.error("--lat and --lon must be given together")
    if args.lat is not None and not -90.0 <= args.lat <= 90.0:
        parser.error(f"--lat must be between -90 and 90, got {args.lat}")
    if args.lon is not None and not -180.0 <= args.lon <= 180.0:
        parser.error(f"--lon must be between -180 and 180, got {args.lon}")
    return args


# ──────────────────────────────────────────────────────────────────────────────
# Rendering
# ──────────────────────────────────────────────────────────────────────────────
def render_header(state) -> str:
    table = state.table
    lines = []
    hijri = table.hijri
    date_line = f"{table.weekday} {table.date.strftime('%d %B %Y')}".strip()
    if hijri:
        date_line += f"  ◆  {hijri.day} {hijri.month_name} {hijri.year} AH"
    lines.append(date_line)
    lines.append(f"Method: {CALC_METHODS.get(state.method, state.method)}  ({table.timezone})")
    for kind, clock in table.timings:
        lines.append(f"  {kind.display_name:<8} {kind.arabic_name:>7}  {clock.strftime('%H:%M')}")
    qibla = state.qibla
    if qibla.bearing_to_target is not None:
        lines.append(f"Qibla: {qibla.bearing_to_target:.1f}° from true north")
    return "\n".join(lines)


def render_status(state) -> str:
    countdown = state.countdown
    if countdown is None:
        return ""
    nxt = countdown.next_event
    text = f"Next: {nxt.kind.display_name} at {nxt.scheduled_time.strftime('%H:%M')}  in {countdown.remaining}"
    rotation = state.qibla.rotation
    if rotation is not None and rotation.live:
        text += f"  |  turn {rotation.degrees:.0f}° to face qibla"
    return text


class TerminalApp:
    def __init__(self, args, settings):
        self.args = args
        self.settings = settings
        self.events = queue.Queue()
        self._shown_table = None
        self._shown_errors = set()

        runner = TaskRunner(dispatch=self.events.put)
        if args.lat is not None and args.lon is not None:
            provider = FixedPositionProvider(args.lat, args.lon)
        else:
            provider = IpGeoPositionProvider(enabled=settings.auto_location)
        resolver = LocationResolver(provider, runner=runner)

        self.orientation = None
        if args.heading is not None:
            self.orientation = CallbackOrientationSource(provides_compass_heading=True)

        self.engine = CompanionEngine(
            resolver,
            PrayerScheduleClient(),
            orientation=self.orientation,
            method=settings.method,
            runner=runner,
            reminders=ReminderTracker(settings.reminder_minutes, callback=self._on_notification),
            on_update=self._on_update,
        )

    def _on_notification(self, title: str, message: str):
        sys.stdout.write(f"\n🔔 {title}\n   {message}\n")

    def _on_update(self, state):
        if state.heading_state is HeadingState.SUBSCRIBED and state.qibla.device_heading is None:
            self.orientation.emit(OrientationEvent(compass_heading=self.args.heading))

        for error in (state.location_error, state.schedule_error, state.heading_error):
            if error is not None and id(error) not in self._shown_errors:
                self._shown_errors.add(id(error))
                sys.stdout.write(f"\n⚠ {type(error).__name__}: {error}\n")

        if state.table is not None and state.table is not self._shown_table:
            self._shown_table = state.table
            sys.stdout.write("\n" + render_header(state) + "\n")
            if state.qibla.bearing_to_target is not None and not state.qibla.sensor_supported:
                sys.stdout.write("(no compass: bearing shown from true north)\n")
        if not self.args.once:
            status = render_status(state)
            if status:
                sys.stdout.write("\r" + status.ljust(78))
        sys.stdout.flush()

    def start(self):
        if self.settings.has_manual_place:
            self.engine.submit_manual(self.settings.city, self.settings.country)
        self.engine.activate()

    def run(self) -> int:
        self.start()
        try:
            while True:
                try:
                    fn = self.events.get(timeout=REFRESH_S)
                except queue.Empty:
                    continue
                fn()
                state = self.engine.state
                if self.args.once and state.table is not None and not state.loading:
                    return 0
                if state.location_error is not None and state.table is None:
                    sys.stdout.write("Use --city/--country to set a location manually.\n")
                    return 1
                if self.args.once and state.schedule_error is not None:
                    return 1
        except KeyboardInterrupt:
            sys.stdout.write("\n")
            return 0
        finally:
            self.engine.deactivate()


def main(argv=None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if bool(args.city) != bool(args.country):
        sys.stderr.write("--city and --country must be given together\n")
        return 2

    if args.forget:
        clear_manual_place()
    settings = load_settings()
    if args.city:
        settings = replace(settings, city=args.city.strip(), country=args.country.strip())
    if args.method is not None:
        settings = replace(settings, method=args.method)
    if args.save:
        save_settings(settings)

    return TerminalApp(args, settings).run()


if __name__ == "__main__":
    sys.exit(main())
