"""
Capture Channel Interfaces
What the calibration core needs from the capture pipeline
"""

from typing import Optional

import numpy as np


class ParamChannel:
    """One independently controllable capture parameter"""

    name = 'channel'

    def capability_range(self):
        """Hardware-reported ValueRange, or None when the device has no such control"""
        raise NotImplementedError

    def apply(self, value):
        """Push a concrete value into the live capture pipeline"""
        raise NotImplementedError

    def current_value(self):
        """Value currently in effect, or None when unknown"""
        return None


class FrameSource:
    """Produces decoded frames on demand"""

    def next_frame(self, timeout: float) -> Optional[np.ndarray]:
        """
        Return the next frame captured after this call

        Args:
            timeout: Seconds to wait for a fresh frame

        Returns:
            H x W x 3 RGB (or H x W) pixel buffer

        Raises:
            FrameTimeoutError: no fresh frame arrived in time
        """
        raise NotImplementedError
