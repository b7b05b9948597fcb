"""
Range Mapping for Capture Channels
Conversion between normalized control positions (0-100) and device values
"""

import logging
import math
from typing import Optional

from .errors import DegenerateRangeError, EmptyIntersectionError, RangeUnavailableError
from .value_range import ContinuousRange, DiscreteRange, describe_range

logger = logging.getLogger(__name__)

POSITION_MIN = 0
POSITION_MAX = 100

# Discrete lookup divides by 101 so position 100 stays inside the value list
DISCRETE_DIVISOR = 101


def clamp_position(position: int) -> int:
    """Clamp a control position into 0-100"""
    return min(POSITION_MAX, max(POSITION_MIN, int(position)))


def intersect(a: Optional[ContinuousRange], b: Optional[ContinuousRange]) -> Optional[ContinuousRange]:
    """
    Intersect two continuous ranges

    Returns:
        [max(lower), min(upper)], or None when either input is missing

    Raises:
        EmptyIntersectionError: the ranges do not overlap
    """
    if a is None or b is None:
        return None

    lower = max(a.lower, b.lower)
    upper = min(a.upper, b.upper)
    if lower > upper:
        raise EmptyIntersectionError(
            f"Ranges {describe_range(a)} and {describe_range(b)} do not overlap")
    return ContinuousRange(lower, upper)


def to_value(effective, device, position: int):
    """
    Map a control position to a concrete device value

    Continuous ranges map linearly into the effective range and the result is
    clamped again into the device range. Discrete ranges index the sorted
    value list with a 101 divisor so positions 0 and 100 select the first and
    last values.

    Args:
        effective: Effective (intersected) range
        device: Raw device range
        position: Control position, clamped into 0-100

    Returns:
        Concrete value, or None when either range is missing
    """
    if effective is None or device is None:
        return None

    position = clamp_position(position)

    if isinstance(effective, ContinuousRange):
        if not isinstance(device, ContinuousRange):
            raise TypeError(f"Continuous effective range needs a continuous device range, "
                            f"got {type(device).__name__}")
        value = effective.lower + effective.width * position // POSITION_MAX
        return device.clamp(value)

    if isinstance(effective, DiscreteRange):
        if not isinstance(device, DiscreteRange):
            raise TypeError(f"Discrete effective range needs a discrete device range, "
                            f"got {type(device).__name__}")
        index = int(position / DISCRETE_DIVISOR * len(effective))
        return effective.values[index]

    raise TypeError(f"Unknown range type: {type(effective).__name__}")


def to_position(value, effective) -> Optional[int]:
    """
    Map a concrete value back to a control position

    Continuous ranges use abs(value - lower) * 100 / width, truncated. Discrete
    ranges return the index of the exact match in the sorted values.

    Returns:
        Position, or None when the range is missing, zero width, the position
        would exceed 100, or no discrete value matches
    """
    if effective is None or value is None:
        return None

    if isinstance(effective, ContinuousRange):
        if effective.width == 0:
            return None
        offset = abs(value - effective.lower)
        if isinstance(offset, float):
            position = math.floor(offset * POSITION_MAX / effective.width)
        else:
            position = offset * POSITION_MAX // effective.width
        if position > POSITION_MAX:
            return None
        return int(position)

    if isinstance(effective, DiscreteRange):
        for index, candidate in enumerate(effective.values):
            if candidate == value:
                return index
        return None

    raise TypeError(f"Unknown range type: {type(effective).__name__}")


def effective_range(device, practical):
    """
    Reconcile a device range with a practical range

    Raises:
        RangeUnavailableError: the device range (or, for a continuous device
            range, the practical range) is missing
        EmptyIntersectionError: the ranges do not overlap
    """
    if device is None:
        raise RangeUnavailableError("Device did not report a range")

    if isinstance(device, ContinuousRange):
        if practical is None:
            raise RangeUnavailableError("Continuous channel has no practical range")
        if not isinstance(practical, ContinuousRange):
            raise TypeError(f"Continuous device range needs a continuous practical range, "
                            f"got {type(practical).__name__}")
        return intersect(device, practical)

    if isinstance(device, DiscreteRange):
        if practical is None:
            return device
        if isinstance(practical, ContinuousRange):
            kept = [v for v in device.values if practical.contains(v)]
            if not kept:
                raise EmptyIntersectionError(
                    f"No value of {describe_range(device)} lies in {describe_range(practical)}")
            return DiscreteRange(kept)
        if isinstance(practical, DiscreteRange):
            kept = [v for v in device.values if v in practical.values]
            if not kept:
                raise EmptyIntersectionError(
                    f"{describe_range(device)} and {describe_range(practical)} share no value")
            return DiscreteRange(kept)
        raise TypeError(f"Unknown range type: {type(practical).__name__}")

    raise TypeError(f"Unknown range type: {type(device).__name__}")


class ChannelRanges:
    """Device, practical and effective range of one channel"""

    def __init__(self, name: str, channel, practical=None):
        """
        Args:
            name: Channel identifier, e.g. 'sensitivity'
            channel: ParamChannel the device range is read from
            practical: Application-chosen usable range, or None
        """
        self.name = name
        self.channel = channel
        self.practical = practical
        self._device = None
        self._device_loaded = False

    @property
    def device(self):
        """Device range, queried from the channel once and cached"""
        if not self._device_loaded:
            self._device = self.channel.capability_range()
            self._device_loaded = True
            logger.info(f"{self.name} device range: {describe_range(self._device)}")
        return self._device

    @property
    def effective(self):
        """
        Effective range used for all position mapping

        Raises:
            RangeUnavailableError, EmptyIntersectionError
        """
        try:
            return effective_range(self.device, self.practical)
        except (RangeUnavailableError, EmptyIntersectionError) as e:
            e.channel = self.name
            raise

    def is_usable(self) -> bool:
        try:
            self.effective
        except (RangeUnavailableError, EmptyIntersectionError):
            return False
        return True

    def is_degenerate(self) -> bool:
        """True when every position maps to the same value"""
        effective = self.effective
        if isinstance(effective, ContinuousRange):
            return effective.width == 0
        return len(effective) == 1

    def require_searchable(self):
        """
        Check the channel has more than one value to search over

        Raises:
            RangeUnavailableError, EmptyIntersectionError
            DegenerateRangeError: every position maps to the same value
        """
        if self.is_degenerate():
            raise DegenerateRangeError(
                f"{self.name} range {describe_range(self.effective)} is a single value", self.name)

    def to_value(self, position: int):
        return to_value(self.effective, self.device, position)

    def to_position(self, value) -> Optional[int]:
        return to_position(value, self.effective)

    def control_position(self, value) -> Optional[int]:
        """
        Control position that selects value

        Same as to_position for continuous ranges, but None outside the range.
        For discrete ranges this is the lowest position whose lookup lands on
        the matching value, not the value's index.
        """
        effective = self.effective
        if isinstance(effective, ContinuousRange):
            if not effective.contains(value):
                return None
            return to_position(value, effective)

        index = to_position(value, effective)
        if index is None:
            return None
        for position in range(POSITION_MIN, POSITION_MAX + 1):
            if to_value(effective, self.device, position) == effective.values[index]:
                return position
        return None
