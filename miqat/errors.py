"""Failure kinds surfaced by the engine as state rather than raised faults."""


class MiqatError(Exception):
    """Base class for recoverable engine failures."""


class LocationUnavailable(MiqatError):
    """Position lookup was refused, timed out, or is not supported."""


class ScheduleFetchFailed(MiqatError):
    """The timing provider answered badly or not at all."""


# Name used by the schedule client contract.
FetchError = ScheduleFetchFailed


class SensorUnsupported(MiqatError):
    """No orientation capability, or the user refused access to it."""
