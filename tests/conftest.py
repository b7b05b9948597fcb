"""Shared pytest configuration and fixtures for the calibrator test suite."""

import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from calibration.channels import FrameSource, ParamChannel  # noqa: E402
from calibration.value_range import ContinuousRange, DiscreteRange  # noqa: E402


# =============================================================================
# Test Doubles
# =============================================================================

class FakeChannel(ParamChannel):
    """Channel with a fixed capability range that records applied values."""

    def __init__(self, name, value_range, current=None):
        self.name = name
        self.value_range = value_range
        self.current = current
        self.applied = []

    def capability_range(self):
        return self.value_range

    def apply(self, value):
        self.applied.append(value)
        self.current = value

    def current_value(self):
        return self.current


class ScriptedFrameSource(FrameSource):
    """Frame source whose frames come from a callable, one call per frame."""

    def __init__(self, frame_fn):
        self.frame_fn = frame_fn
        self.calls = 0

    def next_frame(self, timeout):
        self.calls += 1
        return self.frame_fn()


def dispersion_frame(score, size=8):
    """Grayscale frame whose RMS deviation around its mean equals score."""
    frame = np.full((size, size), 128.0)
    frame[: size // 2, :] += score
    frame[size // 2:, :] -= score
    return frame


def saturation_frame(saturated_rows=0, size=10):
    """RGB frame with the given number of fully saturated red rows."""
    frame = np.full((size, size, 3), 100, dtype=np.uint8)
    frame[:saturated_rows, :, 0] = 255
    return frame


# Settings that make a controller run without waiting
FAST_SETTINGS = {
    'settling_delay_ms': 0,
    'frame_delay_ms': 0,
    'frame_timeout': 0.5,
    'evaluation_timeout': 2.0,
    'pixel_stride': 1,
    'use_green_channel_only': False,
    'metric': 'dispersion',
}


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def sensitivity_channel():
    """ISO channel reporting [50, 6400], currently at 400."""
    return FakeChannel('sensitivity', ContinuousRange(50, 6400), current=400)


@pytest.fixture
def exposure_channel():
    """Exposure channel reporting [100000, 100000000] ns."""
    return FakeChannel('exposure', ContinuousRange(100000, 100000000), current=20000000)


@pytest.fixture
def aperture_channel():
    """Fixed-stop lens with three apertures."""
    return FakeChannel('aperture', DiscreteRange((2.8, 1.8, 2.2)), current=1.8)


@pytest.fixture
def channel_settings():
    """Practical ranges and seeds matching the shipped configuration."""
    return {
        'sensitivity': {'label': 'Iso', 'tag': 'iso', 'practical_range': (100, 3200),
                        'initial_value': 350},
        'exposure': {'label': 'Exposure', 'tag': 'exp', 'practical_range': (3000000, 50090000),
                     'initial_value': 15000000},
        'aperture': {'label': 'Aperture', 'tag': 'aper', 'practical_range': None,
                     'initial_value': None},
    }
