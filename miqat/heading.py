"""Device heading: capability negotiation and the two reporting conventions."""

import enum
import logging
from dataclasses import dataclass

from miqat.errors import SensorUnsupported
from miqat.tasks import TaskRunner

logger = logging.getLogger(__name__)


class HeadingState(enum.Enum):
    UNCHECKED = "unchecked"
    REQUESTING_PERMISSION = "requesting_permission"
    SUBSCRIBED = "subscribed"
    UNSUPPORTED = "unsupported"
    DENIED = "denied"


@dataclass(frozen=True)
class OrientationEvent:
    """One sensor reading. Platforms fill one of the two fields."""

    compass_heading: float = None  # degrees clockwise from true north
    alpha: float = None  # degrees counter-clockwise, device frame


class OrientationSource:
    """
    Platform orientation capability.

    ``available``: the platform has an orientation sensor at all.
    ``requires_permission``: an explicit user grant is needed before events flow.
    ``provides_compass_heading``: events carry ``compass_heading`` rather than ``alpha``.
    """

    available = False
    requires_permission = False
    provides_compass_heading = False

    def request_permission(self) -> bool:
        """Block until the user answers. True means granted."""
        return True

    def subscribe(self, listener):
        """Start delivering OrientationEvents to ``listener``; return an unsubscribe callable."""
        raise NotImplementedError


class CallbackOrientationSource(OrientationSource):
    """A source fed by the host through ``emit``. Used by front ends and tests."""

    def __init__(self, available: bool = True, requires_permission: bool = False,
                 provides_compass_heading: bool = False, grant: bool = True):
        self.available = available
        self.requires_permission = requires_permission
        self.provides_compass_heading = provides_compass_heading
        self.grant = grant
        self.listeners = []

    def request_permission(self) -> bool:
        return self.grant

    def subscribe(self, listener):
        self.listeners.append(listener)

        def unsubscribe():
            if listener in self.listeners:
                self.listeners.remove(listener)

        return unsubscribe

    def emit(self, event: OrientationEvent) -> None:
        for listener in list(self.listeners):
            listener(event)


class CompassHeadingReader:
    """Platforms that report an absolute compass heading; alpha-only events still count."""

    def read(self, event: OrientationEvent):
        if event.compass_heading is None:
            return AlphaHeadingReader().read(event)
        return event.compass_heading % 360.0


class AlphaHeadingReader:
    """Platforms that only report the raw alpha angle."""

    def read(self, event: OrientationEvent):
        if event.alpha is None:
            return None
        return (360.0 - event.alpha) % 360.0


def reader_for(source: OrientationSource):
    if source.provides_compass_heading:
        return CompassHeadingReader()
    return AlphaHeadingReader()


class HeadingSensorAdapter:
    """
    Turns an OrientationSource into a stream of true-north headings.

    ``on_heading(heading)`` is called for each usable event while subscribed.
    ``on_state(state)`` is called on every state change. ``deactivate`` always
    drops the subscription.
    """

    def __init__(self, source: OrientationSource, on_heading=None, on_state=None,
                 runner: TaskRunner = None):
        self.source = source
        self.on_heading = on_heading or (lambda heading: None)
        self.on_state = on_state or (lambda state: None)
        self.runner = runner or TaskRunner(threaded=False)
        self.reader = reader_for(source)
        self.state = HeadingState.UNCHECKED
        self.heading = None
        self.error = None
        self._unsubscribe = None
        self._token = 0

    @property
    def supported(self) -> bool:
        return self.state not in (HeadingState.UNSUPPORTED, HeadingState.DENIED)

    def activate(self) -> None:
        if self.state in (HeadingState.SUBSCRIBED, HeadingState.REQUESTING_PERMISSION):
            return
        self._token += 1
        token = self._token

        if not self.source.available:
            self._fail(HeadingState.UNSUPPORTED, "no orientation sensor")
            return

        if self.source.requires_permission:
            self._set_state(HeadingState.REQUESTING_PERMISSION)
            self.runner.submit(
                self.source.request_permission,
                lambda granted, error: self._on_permission(token, granted, error),
            )
            return

        self._subscribe()

    def deactivate(self) -> None:
        self._token += 1
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
            logger.info("Orientation listener removed")
        self.heading = None
        if self.state in (HeadingState.SUBSCRIBED, HeadingState.REQUESTING_PERMISSION):
            self._set_state(HeadingState.UNCHECKED)

    def _on_permission(self, token: int, granted, error) -> None:
        if token != self._token:
            logger.debug("Ignoring permission answer for an inactive adapter")
            return
        if error is not None or not granted:
            self._fail(HeadingState.DENIED, "orientation permission refused")
            return
        self._subscribe()

    def _subscribe(self) -> None:
        self._unsubscribe = self.source.subscribe(self._on_event)
        self.error = None
        logger.info("Orientation listener attached (%s)", type(self.reader).__name__)
        self._set_state(HeadingState.SUBSCRIBED)

    def _on_event(self, event: OrientationEvent) -> None:
        if self.state is not HeadingState.SUBSCRIBED:
            return
        heading = self.reader.read(event)
        if heading is None:
            return
        self.heading = heading
        self.on_heading(heading)

    def _fail(self, state: HeadingState, reason: str) -> None:
        logger.warning("Heading unavailable: %s", reason)
        self.error = SensorUnsupported(reason)
        self._set_state(state)

    def _set_state(self, state: HeadingState) -> None:
        self.state = state
        self.on_state(state)
