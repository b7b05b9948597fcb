"""
Value Ranges for Capture Channels
A channel range is either a continuous integer interval or a discrete set of values
"""

from dataclasses import dataclass
from typing import Tuple, Union


@dataclass(frozen=True)
class ContinuousRange:
    """Closed integer interval, e.g. nanoseconds for exposure or ISO for sensitivity"""
    lower: int
    upper: int

    def __post_init__(self):
        if self.lower > self.upper:
            raise ValueError(f"Inverted range: lower={self.lower} > upper={self.upper}")

    @property
    def width(self) -> int:
        return self.upper - self.lower

    def clamp(self, value):
        """Clamp a value into the interval"""
        return min(self.upper, max(self.lower, value))

    def contains(self, value) -> bool:
        return self.lower <= value <= self.upper

    @classmethod
    def from_pair(cls, pair) -> 'ContinuousRange':
        """Build from a (lower, upper) pair, None stays None"""
        if pair is None:
            return None
        lower, upper = pair
        return cls(int(lower), int(upper))


@dataclass(frozen=True)
class DiscreteRange:
    """Set of legal values, e.g. supported apertures. Stored sorted ascending."""
    values: Tuple[float, ...]

    def __post_init__(self):
        ordered = tuple(sorted(float(v) for v in self.values))
        if not ordered:
            raise ValueError("Discrete range needs at least one value")
        object.__setattr__(self, 'values', ordered)

    def __len__(self) -> int:
        return len(self.values)

    @property
    def first(self) -> float:
        return self.values[0]

    @property
    def last(self) -> float:
        return self.values[-1]


ValueRange = Union[ContinuousRange, DiscreteRange]


def describe_range(value_range) -> str:
    """Human readable form used in log lines"""
    if value_range is None:
        return 'unavailable'
    if isinstance(value_range, ContinuousRange):
        return f"[{value_range.lower}, {value_range.upper}]"
    if isinstance(value_range, DiscreteRange):
        return '{' + ', '.join(f"{v:g}" for v in value_range.values) + '}'
    raise TypeError(f"Unknown range type: {type(value_range).__name__}")
