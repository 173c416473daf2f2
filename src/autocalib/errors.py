"""
Exception hierarchy for calibration workflows.
"""

from __future__ import annotations


class CalibrationError(Exception):
    """Base class for every failure raised by a calibration phase."""


class FrameTimeoutError(CalibrationError, TimeoutError):
    """No qualifying frame arrived within the allotted time."""


class StartupTimeoutError(FrameTimeoutError):
    """The firmware never signalled the start of a calibration phase."""


class StreamStartError(CalibrationError):
    """Streams could not be started even after the settle-and-retry attempt."""


class FirmwareError(CalibrationError):
    """The device reported a negative status code."""

    def __init__(self, code: int, source: str = "device"):
        self.code = code
        self.source = source
        super().__init__(f"Firmware error ({code}) from {source}!")


class InsufficientDataError(CalibrationError):
    """Fewer valid samples were captured than the computation needs."""


class DegenerateInputError(CalibrationError):
    """Input geometry makes a least-squares solve ill-conditioned."""
