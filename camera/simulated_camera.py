"""
Simulated Camera for the Exposure Calibrator
Synthetic scene whose brightness follows sensitivity, exposure and aperture
"""

import logging
import threading
import time
from typing import Dict, Optional, Sequence, Tuple

import cv2
import numpy as np

from calibration.channels import FrameSource, ParamChannel
from calibration.errors import FrameTimeoutError
from calibration.value_range import ContinuousRange, DiscreteRange

logger = logging.getLogger(__name__)

# Settings at which the scene renders at its nominal brightness
REFERENCE_SENSITIVITY = 100
REFERENCE_EXPOSURE_NS = 10000000
REFERENCE_APERTURE = 1.8


class SimulatedChannel(ParamChannel):
    """One control of a SimulatedCamera"""

    def __init__(self, camera: 'SimulatedCamera', name: str):
        self.camera = camera
        self.name = name

    def capability_range(self):
        return self.camera.capability_range(self.name)

    def apply(self, value):
        self.camera.set_control(self.name, value)

    def current_value(self):
        return self.camera.get_control(self.name)


class SimulatedCamera(FrameSource):
    """Renders a fixed synthetic scene under the current capture settings"""

    def __init__(self, resolution: Tuple[int, int] = (160, 120),
                 sensitivity_range: Optional[Tuple[int, int]] = (50, 6400),
                 exposure_range: Optional[Tuple[int, int]] = (100000, 100000000),
                 apertures: Optional[Sequence[float]] = (1.8, 2.2, 2.8),
                 scene_seed: int = 7, framerate: float = 0):
        """
        Args:
            resolution: (width, height) of rendered frames
            sensitivity_range: ISO range reported by the device, None for no control
            exposure_range: Exposure range in nanoseconds, None for no control
            apertures: Available apertures, None for a fixed lens
            scene_seed: Seed of the synthetic scene
            framerate: Frames per second to pace next_frame(), 0 renders immediately
        """
        self.resolution = resolution
        self.framerate = framerate
        self._ranges = {
            'sensitivity': ContinuousRange.from_pair(sensitivity_range),
            'exposure': ContinuousRange.from_pair(exposure_range),
            'aperture': DiscreteRange(apertures) if apertures else None
        }
        self._controls = {
            'sensitivity': REFERENCE_SENSITIVITY,
            'exposure': REFERENCE_EXPOSURE_NS,
            'aperture': self._ranges['aperture'].first if self._ranges['aperture'] else None
        }
        self._lock = threading.Lock()
        self._frame_count = 0
        self._scene = self._build_scene(scene_seed)
        logger.info(f"Simulated camera initialized at {resolution[0]}x{resolution[1]}")

    def _build_scene(self, seed: int) -> np.ndarray:
        """Reflectance in [0, 1]: a lit gradient, a few bright patches and sensor noise"""
        width, height = self.resolution
        rng = np.random.default_rng(seed)
        x = np.linspace(0.05, 0.6, width, dtype=np.float32)
        y = np.linspace(0.8, 1.0, height, dtype=np.float32)
        base = np.outer(y, x)

        scene = np.stack([base * 0.9, base, base * 0.8], axis=2)
        for _ in range(4):
            cx, cy = rng.integers(0, width), rng.integers(0, height)
            radius = int(rng.integers(3, max(4, min(width, height) // 6)))
            tint = rng.uniform(0.6, 1.0, size=3).tolist()
            cv2.circle(scene, (int(cx), int(cy)), radius, tint, -1)

        scene += rng.normal(0.0, 0.01, size=scene.shape).astype(np.float32)
        return np.clip(scene, 0.0, 1.0)

    def capability_range(self, name: str):
        return self._ranges.get(name)

    def set_control(self, name: str, value):
        if self._ranges.get(name) is None:
            raise ValueError(f"Simulated camera has no {name} control")
        with self._lock:
            self._controls[name] = value
        logger.debug(f"Simulated {name} set to {value}")

    def get_control(self, name: str):
        with self._lock:
            return self._controls.get(name)

    def channels(self) -> Dict[str, SimulatedChannel]:
        """Channels for every control the simulated device reports"""
        return {name: SimulatedChannel(self, name)
                for name, value_range in self._ranges.items() if value_range is not None}

    def exposure_factor(self) -> float:
        """Brightness multiplier of the current settings relative to the reference"""
        with self._lock:
            sensitivity = self._controls['sensitivity']
            exposure = self._controls['exposure']
            aperture = self._controls['aperture'] or REFERENCE_APERTURE
        return ((sensitivity / REFERENCE_SENSITIVITY)
                * (exposure / REFERENCE_EXPOSURE_NS)
                * (REFERENCE_APERTURE / aperture) ** 2)

    def render(self) -> np.ndarray:
        """RGB uint8 frame of the scene under the current settings, clipped at 255"""
        frame = self._scene * (128.0 * self.exposure_factor())
        return np.clip(frame, 0, 255).astype(np.uint8)

    def next_frame(self, timeout: float) -> np.ndarray:
        if self.framerate > 0:
            interval = 1.0 / self.framerate
            if interval > timeout:
                time.sleep(timeout)
                raise FrameTimeoutError(f"No frame within {timeout:.2f}s at {self.framerate} fps")
            time.sleep(interval)
        with self._lock:
            self._frame_count += 1
        return self.render()

    def get_stats(self) -> dict:
        return {
            'resolution': self.resolution,
            'framerate': self.framerate,
            'frames': self._frame_count,
            'controls': dict(self._controls)
        }
