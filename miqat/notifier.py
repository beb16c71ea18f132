"""Desktop notifications for upcoming and arriving prayer times."""

import logging

from plyer import notification as plyer_notification

from miqat.prayer_api import EventKind

logger = logging.getLogger(__name__)

APP_NAME = "Miqat"
APP_ICON = ""  # Path to icon file; empty = default

DEFAULT_LEADS = (10, 5)  # minutes before each prayer


def _send_plyer(title: str, message: str, timeout: int = 10) -> None:
    """Send a desktop notification via plyer (cross-platform)."""
    kwargs = dict(
        app_name=APP_NAME,
        title=title,
        message=message,
        timeout=timeout,
    )
    if APP_ICON:
        kwargs["app_icon"] = APP_ICON
    try:
        plyer_notification.notify(**kwargs)
    except Exception as exc:
        # No notification backend on this desktop; reminders still reach the callback.
        logger.warning("Desktop notification failed: %s", exc)


def notify_reminder(event, minutes: int, callback=None) -> None:
    """Announce ``event`` (a NextEvent) ``minutes`` ahead; ``callback(title, message)`` also gets it."""
    kind = event.kind
    title = f"{kind.display_name} in {minutes} min"
    message = (
        f"{kind.display_name} ({kind.arabic_name}) is at "
        f"{event.scheduled_time.strftime('%H:%M')}, {minutes} minutes from now."
    )
    _send_plyer(title, message, timeout=15)
    if callback:
        callback(title, message)


def notify_arrival(event, callback=None) -> None:
    title = f"{event.kind.display_name} has begun"
    message = (
        f"{event.kind.arabic_name} · {event.kind.display_name} time began at "
        f"{event.scheduled_time.strftime('%H:%M')}."
    )
    _send_plyer(title, message, timeout=30)
    if callback:
        callback(title, message)


class ReminderTracker:
    """
    Watches successive countdowns and fires each reminder at most once.

    A reminder fires on the first tick whose remaining time is at or below
    the lead; the arrival alert fires when the tracked event drops out as
    "next" because its time has come. Sunrise is not a prayer and is skipped.
    """

    def __init__(self, leads=DEFAULT_LEADS, callback=None):
        self.leads = tuple(sorted(leads, reverse=True))
        self.callback = callback
        self._fired = set()
        self._current = None

    def observe(self, countdown) -> None:
        nxt = countdown.next_event
        previous = self._current
        self._current = nxt

        if previous is not None and previous.scheduled_time != nxt.scheduled_time:
            if countdown.now >= previous.scheduled_time and previous.kind is not EventKind.SUNRISE:
                notify_arrival(previous, self.callback)
            # Forget reminders for events that are behind us.
            self._fired = {f for f in self._fired if f[0] == nxt.scheduled_time}

        if nxt.kind is EventKind.SUNRISE:
            return
        for minutes in self.leads:
            key = (nxt.scheduled_time, minutes)
            if key in self._fired:
                continue
            if 0 < nxt.milliseconds_remaining <= minutes * 60 * 1000:
                self._fired.add(key)
                # Only the tightest lead is announced when several are crossed at once.
                if not any(
                    0 < nxt.milliseconds_remaining <= m * 60 * 1000 and m < minutes
                    for m in self.leads
                ):
                    notify_reminder(nxt, minutes, self.callback)

    def reset(self) -> None:
        self._fired.clear()
        self._current = None
