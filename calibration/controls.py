"""
Channel Controls
Manual control surface: normalized positions mapped to device values and applied
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

from .errors import ControlsLockedError, RangeError
from .range_mapper import ChannelRanges, clamp_position
from .value_range import ContinuousRange, DiscreteRange

logger = logging.getLogger(__name__)


def to_value_range(entry):
    """Turn a config entry (None, (lower, upper) or a ValueRange) into a ValueRange"""
    if entry is None or isinstance(entry, (ContinuousRange, DiscreteRange)):
        return entry
    if isinstance(entry, (tuple, list)) and len(entry) == 2:
        return ContinuousRange.from_pair(entry)
    raise ValueError(f"Cannot build a range from {entry!r}")


class ChannelControls:
    """Holds one control per channel and pushes mapped values to the channels"""

    def __init__(self, channels: Dict, channel_settings: Optional[Dict] = None):
        """
        Args:
            channels: Channel name -> ParamChannel
            channel_settings: Channel name -> settings dict (practical_range,
                initial_value, label, tag), usually Config.CHANNELS
        """
        channel_settings = channel_settings or {}
        self._lock = threading.RLock()
        self._owner = None
        self._listeners: List[Callable] = []
        self.settings: Dict[str, Dict] = {}
        self.ranges: Dict[str, ChannelRanges] = {}
        self._positions: Dict[str, Optional[int]] = {}
        self._values: Dict[str, object] = {}

        for name, channel in channels.items():
            settings = dict(channel_settings.get(name, {}))
            self.settings[name] = settings
            self.ranges[name] = ChannelRanges(
                name, channel, to_value_range(settings.get('practical_range')))
            self._positions[name] = None
            self._values[name] = channel.current_value()

    def names(self) -> List[str]:
        return list(self.ranges.keys())

    def channel(self, name: str):
        return self.ranges[name].channel

    def add_listener(self, listener: Callable):
        """listener(channel, position, value) is called after every applied change"""
        self._listeners.append(listener)

    # Locking

    def lock(self, owner) -> bool:
        """Reserve the controls for owner, False when someone else holds them"""
        with self._lock:
            if self._owner is not None and self._owner is not owner:
                return False
            self._owner = owner
            return True

    def unlock(self, owner):
        with self._lock:
            if self._owner is owner:
                self._owner = None

    @property
    def locked(self) -> bool:
        return self._owner is not None

    def _check_owner(self, owner):
        if self._owner is not None and self._owner is not owner:
            raise ControlsLockedError("Controls are held by a calibration run")

    # Changing values

    def set_position(self, name: str, position: int, owner=None):
        """
        Map a position to a value and apply it

        Returns:
            The applied value

        Raises:
            ControlsLockedError: a calibration run holds the controls
            RangeError: the channel has no usable range
        """
        with self._lock:
            self._check_owner(owner)
            ranges = self.ranges[name]
            value = ranges.to_value(position)
            if value is None:
                raise RangeError(f"{name} has no usable range", name)
            self._apply(name, clamp_position(position), value)
            return value

    def set_value(self, name: str, value, owner=None):
        """
        Project a concrete value onto its position and apply the mapped value

        The applied value is the one the position maps to, so discrete values
        round trip exactly.
        """
        with self._lock:
            self._check_owner(owner)
            position = self.ranges[name].control_position(value)
            if position is None:
                raise ValueError(f"{value} is outside the {name} range")
            return self.set_position(name, position, owner)

    def restore_value(self, name: str, value, owner=None):
        """Apply a concrete value as-is, e.g. the value in effect before a run"""
        with self._lock:
            self._check_owner(owner)
            if value is None:
                return
            try:
                position = self.ranges[name].control_position(value)
            except RangeError:
                position = None
            self._apply(name, position, value)

    def _apply(self, name: str, position: Optional[int], value):
        self.ranges[name].channel.apply(value)
        self._positions[name] = position
        self._values[name] = value
        for listener in self._listeners:
            try:
                listener(name, position, value)
            except Exception as e:
                logger.error(f"Control listener failed for {name}: {e}")

    # Reading values

    def position(self, name: str) -> Optional[int]:
        return self._positions[name]

    def value(self, name: str):
        return self._values[name]

    def positions(self) -> Dict[str, Optional[int]]:
        with self._lock:
            return dict(self._positions)

    def values(self) -> Dict[str, object]:
        with self._lock:
            return dict(self._values)

    def label(self, name: str) -> str:
        """Display text for a control, e.g. 'Iso 350'"""
        title = self.settings[name].get('label', name.capitalize())
        return f"{title} {self._values[name]}"

    def initial_value(self, name: str):
        """Configured seed value, or the first value of a discrete range"""
        seed = self.settings[name].get('initial_value')
        if seed is not None:
            return seed
        device = self.ranges[name].device
        if isinstance(device, DiscreteRange):
            return device.first
        return None

    def get_status(self) -> Dict:
        """Positions, values and effective ranges of every control"""
        status = {}
        for name, ranges in self.ranges.items():
            try:
                effective = ranges.effective
            except RangeError:
                effective = None
            status[name] = {
                'position': self._positions[name],
                'value': self._values[name],
                'label': self.label(name),
                'usable': effective is not None,
                'discrete': isinstance(effective, DiscreteRange)
            }
        status['locked'] = self.locked
        return status
