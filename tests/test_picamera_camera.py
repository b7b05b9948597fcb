"""Tests for the Picamera2 backend with the camera stack mocked out."""

import importlib
import sys
import time
from unittest import mock

import numpy as np
import pytest

from calibration.errors import FrameTimeoutError
from calibration.value_range import ContinuousRange

CAMERA_CONTROLS = {
    'ExposureTime': (100, 1000000, 20000),
    'AnalogueGain': (1.0, 16.0, 1.0),
}


@pytest.fixture
def picamera():
    """camera.picamera_camera imported against fake picamera2/libcamera modules."""
    picamera2 = mock.MagicMock()
    libcamera = mock.MagicMock()
    with mock.patch.dict(sys.modules, {'picamera2': picamera2, 'libcamera': libcamera}):
        sys.modules.pop('camera.picamera_camera', None)
        module = importlib.import_module('camera.picamera_camera')
        device = picamera2.Picamera2.return_value
        device.camera_controls = dict(CAMERA_CONTROLS)
        yield module, device
        sys.modules.pop('camera.picamera_camera', None)


def test_initializes_camera(picamera):
    module, device = picamera
    camera = module.PicameraCamera(camera_index=1, resolution=(320, 240))
    try:
        assert camera.is_active()
        device.configure.assert_called_once()
        device.start.assert_called_once()
        _, kwargs = device.create_video_configuration.call_args
        assert kwargs['main'] == {'format': 'RGB888', 'size': (320, 240)}
    finally:
        camera.cleanup()
    device.close.assert_called_once()


def test_capability_ranges_converted(picamera):
    module, _ = picamera
    camera = module.PicameraCamera()
    try:
        channels = camera.channels()
        assert channels['exposure'].capability_range() == ContinuousRange(100000, 1000000000)
        assert channels['sensitivity'].capability_range() == ContinuousRange(100, 1600)
    finally:
        camera.cleanup()


def test_missing_control(picamera):
    module, device = picamera
    device.camera_controls = {}
    camera = module.PicameraCamera()
    try:
        assert camera.channels()['exposure'].capability_range() is None
    finally:
        camera.cleanup()


def test_apply_switches_to_manual_once(picamera):
    module, device = picamera
    camera = module.PicameraCamera()
    try:
        channels = camera.channels()
        channels['exposure'].apply(20000000)
        channels['sensitivity'].apply(800)
        assert device.set_controls.call_args_list == [
            mock.call({'AeEnable': False}),
            mock.call({'ExposureTime': 20000}),
            mock.call({'AnalogueGain': 8.0}),
        ]
    finally:
        camera.cleanup()


def test_current_values_from_metadata(picamera):
    module, device = picamera
    device.capture_metadata.return_value = {'ExposureTime': 15000, 'AnalogueGain': 3.5}
    camera = module.PicameraCamera()
    try:
        channels = camera.channels()
        assert channels['exposure'].current_value() == 15000000
        assert channels['sensitivity'].current_value() == 350
    finally:
        camera.cleanup()


def test_next_frame_converts_to_rgb(picamera):
    module, device = picamera
    bgr = np.zeros((4, 4, 3), dtype=np.uint8)
    bgr[:, :, 0] = 10   # blue
    bgr[:, :, 2] = 200  # red

    def capture_array(name):
        time.sleep(0.005)
        return bgr

    device.capture_array.side_effect = capture_array
    camera = module.PicameraCamera()
    try:
        assert camera.start_streaming()
        frame = camera.next_frame(timeout=2.0)
        assert frame[0, 0, 0] == 200
        assert frame[0, 0, 2] == 10
    finally:
        camera.cleanup()


def test_next_frame_times_out(picamera):
    module, device = picamera
    device.capture_array.side_effect = RuntimeError("sensor stalled")
    camera = module.PicameraCamera()
    try:
        with pytest.raises(FrameTimeoutError):
            camera.next_frame(timeout=0.05)
    finally:
        camera.cleanup()
