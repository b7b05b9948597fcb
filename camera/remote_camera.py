"""
Remote Capture Backend for the Exposure Calibrator
Controls a camera service over HTTP and pulls frames from a frame service

Expected endpoints:
    GET  {camera_service_url}/api/camera_settings/<camera_type>  current exposure_time (us) and gain
    POST {camera_service_url}/api/camera_settings/<camera_type>  JSON settings to apply
    GET  {camera_service_url}/api/camera_limits/<camera_type>    {"exposure_time": [min, max], "gain": [min, max]}
    GET  {frame_service_url}/<camera_type>_frame                 latest JPEG, Last-Modified changes per frame

The camera_limits endpoint is not served by the stock camera service and has to be added there.
"""

import logging
import time
from typing import Dict, Optional

import cv2
import numpy as np
import requests

from calibration.channels import FrameSource, ParamChannel
from calibration.errors import FrameTimeoutError
from calibration.value_range import ContinuousRange

logger = logging.getLogger(__name__)

NS_PER_US = 1000
ISO_PER_GAIN = 100


class RemoteExposureChannel(ParamChannel):
    """Exposure in nanoseconds, sent as exposure_time microseconds"""

    name = 'exposure'

    def __init__(self, camera: 'RemoteCamera'):
        self.camera = camera

    def capability_range(self):
        limits = self.camera.get_limits().get('exposure_time')
        if not limits:
            return None
        return ContinuousRange(int(limits[0]) * NS_PER_US, int(limits[1]) * NS_PER_US)

    def apply(self, value):
        if not self.camera.set_camera_settings({"exposure_time": int(value) // NS_PER_US}):
            raise RuntimeError(f"Camera service rejected exposure {value}")

    def current_value(self):
        exposure_us = self.camera.get_camera_settings().get('exposure_time')
        return None if exposure_us is None else int(exposure_us) * NS_PER_US


class RemoteSensitivityChannel(ParamChannel):
    """Sensitivity as ISO, sent as gain (ISO 100 = gain 1.0)"""

    name = 'sensitivity'

    def __init__(self, camera: 'RemoteCamera'):
        self.camera = camera

    def capability_range(self):
        limits = self.camera.get_limits().get('gain')
        if not limits:
            return None
        return ContinuousRange(int(round(limits[0] * ISO_PER_GAIN)), int(round(limits[1] * ISO_PER_GAIN)))

    def apply(self, value):
        if not self.camera.set_camera_settings({"gain": float(value) / ISO_PER_GAIN}):
            raise RuntimeError(f"Camera service rejected sensitivity {value}")

    def current_value(self):
        gain = self.camera.get_camera_settings().get('gain')
        return None if gain is None else int(round(gain * ISO_PER_GAIN))


class RemoteCamera(FrameSource):
    """Camera driven through the camera and frame HTTP services"""

    def __init__(self, camera_type: str = 'ir', camera_service_url: str = "http://localhost:5001",
                 frame_service_url: str = "http://localhost:5002", request_timeout: float = 5,
                 poll_interval: float = 0.1):
        self.camera_type = camera_type
        self.camera_service_url = camera_service_url
        self.frame_service_url = frame_service_url
        self.request_timeout = request_timeout
        self.poll_interval = poll_interval
        self._auto_exposure_disabled = False
        self._limits: Optional[Dict] = None
        self._last_frame_stamp: Optional[str] = None

    @property
    def settings_url(self) -> str:
        return f"{self.camera_service_url}/api/camera_settings/{self.camera_type}"

    def channels(self) -> Dict[str, ParamChannel]:
        return {
            'sensitivity': RemoteSensitivityChannel(self),
            'exposure': RemoteExposureChannel(self)
        }

    def get_limits(self) -> Dict:
        """Control limits from the camera service, fetched once"""
        if self._limits is not None:
            return self._limits
        try:
            response = requests.get(f"{self.camera_service_url}/api/camera_limits/{self.camera_type}",
                                    timeout=self.request_timeout)
            if response.status_code == 200:
                self._limits = response.json()
            else:
                logger.warning(f"Failed to get camera limits: HTTP {response.status_code}")
                self._limits = {}
        except requests.RequestException as e:
            logger.error(f"Error getting camera limits for {self.camera_type}: {e}")
            self._limits = {}
        return self._limits

    def get_camera_settings(self) -> Dict:
        """Current settings reported by the camera service"""
        try:
            response = requests.get(self.settings_url, timeout=self.request_timeout)
            if response.status_code == 200:
                return response.json()
            logger.warning(f"Failed to get camera settings: HTTP {response.status_code}")
        except requests.RequestException as e:
            logger.error(f"Error getting camera settings: {e}")
        return {}

    def set_camera_settings(self, settings: Dict) -> bool:
        """Apply settings via HTTP API, switching auto exposure off first"""
        try:
            if not self._auto_exposure_disabled:
                auto_response = requests.post(self.settings_url, json={"auto_exposure": False},
                                              timeout=self.request_timeout)
                if auto_response.status_code != 200:
                    logger.warning(f"Failed to disable auto exposure: {auto_response.status_code}")
                    return False
                self._auto_exposure_disabled = True

            response = requests.post(self.settings_url, json=settings, timeout=self.request_timeout)
            if response.status_code == 200:
                logger.debug(f"Applied settings: {settings}")
                return True
            logger.warning(f"Failed to apply settings: HTTP {response.status_code}")
            return False
        except requests.RequestException as e:
            logger.error(f"Error setting camera settings: {e}")
            return False

    def get_camera_frame(self):
        """
        Fetch the latest frame from the frame service

        Returns:
            (RGB frame, Last-Modified stamp), or (None, None) on failure
        """
        try:
            response = requests.get(f"{self.frame_service_url}/{self.camera_type}_frame",
                                    timeout=self.request_timeout)
            if response.status_code != 200:
                logger.warning(f"Failed to get frame: HTTP {response.status_code}")
                return None, None
            img_array = np.frombuffer(response.content, np.uint8)
            frame = cv2.imdecode(img_array, cv2.IMREAD_COLOR)
            if frame is None:
                logger.warning("Frame service returned an undecodable image")
                return None, None
            # Convert BGR to RGB for consistency
            frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            return frame, response.headers.get('Last-Modified')
        except requests.RequestException as e:
            logger.error(f"Error getting frame from {self.camera_type}: {e}")
            return None, None

    def next_frame(self, timeout: float) -> np.ndarray:
        """Poll the frame service until a frame newer than the last one arrives"""
        deadline = time.monotonic() + timeout
        while True:
            frame, stamp = self.get_camera_frame()
            if frame is not None and (stamp is None or stamp != self._last_frame_stamp):
                self._last_frame_stamp = stamp
                return frame
            if time.monotonic() + self.poll_interval > deadline:
                raise FrameTimeoutError(f"No new {self.camera_type} frame within {timeout:.2f}s")
            time.sleep(self.poll_interval)
