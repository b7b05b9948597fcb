"""
Calibration Errors
Exception hierarchy shared by the range model, evaluators and controller
"""


class CalibrationError(Exception):
    """Base class for calibration errors"""


class RangeError(CalibrationError):
    """A channel range cannot be used for position mapping"""

    def __init__(self, message: str, channel: str = None):
        super().__init__(message)
        self.channel = channel


class RangeUnavailableError(RangeError):
    """The device did not report a capability range for a channel"""


class EmptyIntersectionError(RangeError):
    """Practical and device ranges do not overlap"""


class DegenerateRangeError(RangeError):
    """Zero-width range, every position maps to the same value"""


class FrameTimeoutError(CalibrationError):
    """No fresh frame (or no frame score) within the allowed wait"""


class InvalidFrameError(CalibrationError):
    """Frame is missing or has zero area"""


class ControlsLockedError(CalibrationError):
    """Manual control change attempted while a calibration run holds the controls"""


class CalibrationConfigError(CalibrationError):
    """Structural misuse of the calibration controller"""
