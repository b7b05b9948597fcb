"""
Picamera2 Capture Backend for the Exposure Calibrator
Exposes sensitivity and exposure as calibration channels and serves fresh frames
"""

import logging
import threading
import time
from typing import Dict, Optional, Tuple

import numpy as np
from picamera2 import Picamera2
from libcamera import Transform

from calibration.channels import FrameSource, ParamChannel
from calibration.errors import FrameTimeoutError
from calibration.value_range import ContinuousRange

logger = logging.getLogger(__name__)

NS_PER_US = 1000
ISO_PER_GAIN = 100


class PicameraExposureChannel(ParamChannel):
    """Exposure in nanoseconds, applied as ExposureTime microseconds"""

    name = 'exposure'

    def __init__(self, camera: 'PicameraCamera'):
        self.camera = camera

    def capability_range(self):
        limits = self.camera.control_limits('ExposureTime')
        if limits is None:
            return None
        return ContinuousRange(int(limits[0]) * NS_PER_US, int(limits[1]) * NS_PER_US)

    def apply(self, value):
        self.camera.set_manual_controls({'ExposureTime': int(value) // NS_PER_US})

    def current_value(self):
        exposure_us = self.camera.metadata_value('ExposureTime')
        return None if exposure_us is None else int(exposure_us) * NS_PER_US


class PicameraSensitivityChannel(ParamChannel):
    """Sensitivity as ISO, applied as AnalogueGain (ISO 100 = gain 1.0)"""

    name = 'sensitivity'

    def __init__(self, camera: 'PicameraCamera'):
        self.camera = camera

    def capability_range(self):
        limits = self.camera.control_limits('AnalogueGain')
        if limits is None:
            return None
        return ContinuousRange(int(round(limits[0] * ISO_PER_GAIN)), int(round(limits[1] * ISO_PER_GAIN)))

    def apply(self, value):
        self.camera.set_manual_controls({'AnalogueGain': float(value) / ISO_PER_GAIN})

    def current_value(self):
        gain = self.camera.metadata_value('AnalogueGain')
        return None if gain is None else int(round(gain * ISO_PER_GAIN))


class PicameraCamera(FrameSource):
    """Picamera2 handler with a capture loop caching the latest frame"""

    def __init__(self, camera_index: int = 0, resolution: Tuple[int, int] = (640, 480),
                 hflip: bool = False, vflip: bool = False):
        """Initialize the camera"""
        self.camera_index = camera_index
        self.resolution = resolution
        self.hflip = hflip
        self.vflip = vflip

        self._camera: Optional[Picamera2] = None
        self._lock = threading.Lock()
        self._frame_ready = threading.Condition(self._lock)
        self._active = False
        self._streaming = False
        self._is_auto_exposure = True
        self._capture_thread: Optional[threading.Thread] = None
        self._latest_frame: Optional[np.ndarray] = None
        self._frame_count = 0

        self._initialize_camera()

    def _initialize_camera(self):
        """Initialize the camera hardware"""
        try:
            self._camera = Picamera2(self.camera_index)
            config = self._camera.create_video_configuration(
                main={"format": "RGB888", "size": self.resolution},
                controls={"AeEnable": True},
                transform=Transform(hflip=int(self.hflip), vflip=int(self.vflip))
            )
            self._camera.configure(config)
            self._camera.start()
            self._active = True
            logger.info(f"Camera {self.camera_index} initialized at {self.resolution[0]}x{self.resolution[1]}")
        except Exception as e:
            logger.error(f"Failed to initialize camera {self.camera_index}: {e}")
            self.cleanup()
            raise

    def channels(self) -> Dict[str, ParamChannel]:
        return {
            'sensitivity': PicameraSensitivityChannel(self),
            'exposure': PicameraExposureChannel(self)
        }

    def control_limits(self, control: str) -> Optional[Tuple]:
        """(min, max, default) of a camera control, None when the camera lacks it"""
        if not self._camera:
            return None
        limits = self._camera.camera_controls.get(control)
        if not limits:
            logger.warning(f"Camera {self.camera_index} does not report {control} limits")
            return None
        return limits

    def metadata_value(self, key: str):
        """Latest value of a metadata entry, None when unavailable"""
        if not (self._camera and self._active):
            return None
        try:
            return self._camera.capture_metadata().get(key)
        except Exception as e:
            logger.debug(f"Could not read {key} from metadata: {e}")
            return None

    def set_manual_controls(self, controls: Dict):
        """Disable auto exposure once, then apply fixed control values"""
        if not (self._camera and self._active):
            raise RuntimeError(f"Camera {self.camera_index} not active")
        if self._is_auto_exposure:
            self._camera.set_controls({"AeEnable": False})
            self._is_auto_exposure = False
            logger.info(f"Camera {self.camera_index} auto exposure disabled")
        self._camera.set_controls(controls)
        logger.debug(f"Camera {self.camera_index} controls set: {controls}")

    def start_streaming(self) -> bool:
        """Start the capture loop"""
        if not self._active:
            logger.warning("Camera not active, cannot start streaming")
            return False

        with self._lock:
            if self._streaming:
                return True
            # Set streaming flag BEFORE starting thread to avoid race condition
            self._streaming = True
            self._capture_thread = threading.Thread(target=self._capture_loop, daemon=True)
            self._capture_thread.start()

        logger.info(f"Camera {self.camera_index} streaming started")
        return True

    def stop_streaming(self):
        with self._lock:
            if not self._streaming:
                return
            self._streaming = False
            thread = self._capture_thread

        if thread and thread.is_alive():
            thread.join(timeout=5.0)
        logger.info(f"Camera {self.camera_index} streaming stopped")

    def _capture_loop(self):
        """Keep the newest frame and wake anyone waiting for it"""
        logger.info("Capture loop started")

        while self._streaming and self._active:
            try:
                frame = self._camera.capture_array("main")
                if frame is not None:
                    # RGB888 arrives in BGR byte order
                    frame = np.ascontiguousarray(frame[:, :, 2::-1])
                    with self._frame_ready:
                        self._latest_frame = frame
                        self._frame_count += 1
                        self._frame_ready.notify_all()
            except Exception as e:
                logger.error(f"Error in capture loop: {e}")
                time.sleep(0.1)

        logger.info("Capture loop ended")

    def next_frame(self, timeout: float) -> np.ndarray:
        """Wait for a frame captured after this call"""
        if not self._streaming:
            self.start_streaming()

        with self._frame_ready:
            seen = self._frame_count
            if not self._frame_ready.wait_for(lambda: self._frame_count > seen, timeout=timeout):
                raise FrameTimeoutError(f"No frame from camera {self.camera_index} within {timeout:.2f}s")
            return self._latest_frame.copy()

    def is_active(self) -> bool:
        return self._active

    def cleanup(self):
        """Stop streaming and release the camera"""
        self.stop_streaming()
        self._active = False
        if self._camera:
            try:
                self._camera.stop()
                self._camera.close()
            except Exception as e:
                logger.error(f"Error closing camera {self.camera_index}: {e}")
            finally:
                self._camera = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.cleanup()
