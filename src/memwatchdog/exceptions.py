"""Exception hierarchy for Memory Watchdog."""


class WatchdogError(Exception):
    """Base class for all watchdog errors."""


class ConfigError(WatchdogError):
    """Invalid settings or configuration."""


class MeasurementError(WatchdogError):
    """A resource metric could not be sampled on this platform."""


class HandlerError(WatchdogError):
    """The corrective action could not be carried out."""


class ReporterError(WatchdogError):
    """An event could not be delivered to its sink."""
