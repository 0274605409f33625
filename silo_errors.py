"""
Silo Monitor - Error Taxonomy

None of these are fatal. Each one maps to a degraded mode:
skip the cycle, keep the last good value, or report insufficient data.
"""

from typing import Iterable, List


class SiloMonitorError(Exception):
    """Base class for all Silo Monitor errors."""


class SensorReadError(SiloMonitorError):
    """The sensor could not produce a sample this cycle."""


class DeliveryError(SiloMonitorError):
    """A reading could not be delivered to the aggregation service."""


class ReadingRejectedError(DeliveryError):
    """The aggregation service refused a reading (4xx). It is never retried."""


class ConfigFetchError(SiloMonitorError):
    """The thresholds configuration could not be fetched."""


class ConfigValidationError(SiloMonitorError):
    """
    A configuration document violates one or more invariants.
    Carries every violation, not just the first one found.
    """

    def __init__(self, errors: Iterable[str]):
        self.errors: List[str] = list(errors)
        super().__init__("Invalid configuration: " + "; ".join(self.errors))


class InsufficientDataError(SiloMonitorError):
    """
    Not enough samples for a meaningful evaluation.
    This is a terminal classification, not a failure.
    """

    def __init__(self, status: str = "INSUFFICIENT_DATA",
                 message: str = "Need at least 3 data points for meaningful analysis"):
        self.status = status
        self.message = message
        super().__init__(message)
