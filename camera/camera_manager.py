"""
Camera Manager for the Exposure Calibrator
Creates the configured capture backend and hands out its channels and frames
"""

import logging
import threading
from typing import Dict, Optional

from config.config import Config

logger = logging.getLogger(__name__)

BACKENDS = ('picamera', 'remote', 'simulated')


class CameraManager:
    """Owns the capture backend for the lifetime of a session"""

    def __init__(self, settings: Optional[Dict] = None):
        """Initialize the backend named by settings['backend']"""
        self.settings = settings or Config.CAMERA_SETTINGS
        self.backend = self.settings.get('backend', 'simulated')
        self.camera = None
        self._lock = threading.Lock()

        if self.backend not in BACKENDS:
            raise ValueError(f"Unknown camera backend '{self.backend}', expected one of {BACKENDS}")

        self._initialize_camera()

    def _initialize_camera(self):
        backend_settings = self.settings.get(self.backend, {})
        logger.info(f"Initializing {self.backend} camera backend")

        if self.backend == 'picamera':
            # Only importable on a Raspberry Pi with libcamera
            from .picamera_camera import PicameraCamera
            self.camera = PicameraCamera(
                camera_index=backend_settings.get('index', 0),
                resolution=tuple(backend_settings.get('resolution', (640, 480))),
                hflip=backend_settings.get('hflip', False),
                vflip=backend_settings.get('vflip', False)
            )
            self.camera.start_streaming()
        elif self.backend == 'remote':
            from .remote_camera import RemoteCamera
            self.camera = RemoteCamera(
                camera_type=backend_settings.get('camera_type', 'ir'),
                camera_service_url=backend_settings.get('camera_service_url', 'http://localhost:5001'),
                frame_service_url=backend_settings.get('frame_service_url', 'http://localhost:5002'),
                request_timeout=backend_settings.get('request_timeout', 5)
            )
        else:
            from .simulated_camera import SimulatedCamera
            self.camera = SimulatedCamera(
                resolution=tuple(backend_settings.get('resolution', (160, 120))),
                sensitivity_range=backend_settings.get('sensitivity_range', (50, 6400)),
                exposure_range=backend_settings.get('exposure_range', (100000, 100000000)),
                apertures=backend_settings.get('apertures'),
                scene_seed=backend_settings.get('scene_seed', 7),
                framerate=backend_settings.get('framerate', 0)
            )

        logger.info(f"Camera backend ready with channels: {', '.join(self.channels().keys())}")

    def channels(self) -> Dict:
        """Channel name -> ParamChannel for every control the backend exposes"""
        return self.camera.channels() if self.camera else {}

    @property
    def frame_source(self):
        return self.camera

    def cleanup(self):
        """Release the backend"""
        logger.info("Cleaning up camera manager...")
        with self._lock:
            if self.camera and hasattr(self.camera, 'cleanup'):
                try:
                    self.camera.cleanup()
                except Exception as e:
                    logger.error(f"Error cleaning up camera: {e}")
            self.camera = None

    def __enter__(self):
        """Context manager entry"""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit"""
        self.cleanup()
