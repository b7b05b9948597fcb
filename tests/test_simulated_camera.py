"""Tests for the simulated camera and the backend manager."""

import numpy as np
import pytest

from calibration.controller import CalibrationController
from calibration.controls import ChannelControls
from calibration.errors import FrameTimeoutError
from calibration.value_range import ContinuousRange, DiscreteRange
from camera.camera_manager import CameraManager
from camera.simulated_camera import SimulatedCamera
from conftest import FAST_SETTINGS


@pytest.fixture
def camera():
    return SimulatedCamera(resolution=(64, 48))


def test_channels_follow_reported_ranges(camera):
    channels = camera.channels()
    assert set(channels) == {'sensitivity', 'exposure', 'aperture'}
    assert channels['sensitivity'].capability_range() == ContinuousRange(50, 6400)
    assert channels['aperture'].capability_range() == DiscreteRange((1.8, 2.2, 2.8))

    fixed_lens = SimulatedCamera(resolution=(16, 16), apertures=None)
    assert 'aperture' not in fixed_lens.channels()


def test_frame_shape(camera):
    frame = camera.next_frame(timeout=1.0)
    assert frame.shape == (48, 64, 3)
    assert frame.dtype == np.uint8


def test_brightness_follows_settings(camera):
    dark = camera.next_frame(1.0).mean()
    camera.set_control('sensitivity', 400)
    bright = camera.next_frame(1.0).mean()
    assert bright > dark

    camera.set_control('aperture', 2.8)
    assert camera.next_frame(1.0).mean() < bright


def test_overexposure_clips(camera):
    camera.set_control('sensitivity', 6400)
    camera.set_control('exposure', 100000000)
    frame = camera.next_frame(1.0)
    assert frame.max() == 255


def test_missing_control():
    camera = SimulatedCamera(resolution=(16, 16), apertures=None)
    with pytest.raises(ValueError):
        camera.set_control('aperture', 2.2)


def test_slow_framerate_times_out():
    camera = SimulatedCamera(resolution=(16, 16), framerate=2)
    with pytest.raises(FrameTimeoutError):
        camera.next_frame(timeout=0.01)


def test_stats(camera):
    camera.next_frame(1.0)
    stats = camera.get_stats()
    assert stats['frames'] == 1
    assert stats['controls']['sensitivity'] == 100


def test_calibration_against_simulated_scene(camera, channel_settings):
    controls = ChannelControls(camera.channels(), channel_settings)
    settings = dict(FAST_SETTINGS, channel_order=['sensitivity', 'exposure'],
                    iterations_per_channel={'sensitivity': 10, 'exposure': 10})
    controller = CalibrationController(controls, camera, settings, use_evaluation_thread=False)

    result = controller.run()

    assert set(result) == {'sensitivity', 'exposure'}
    assert 100 <= result['sensitivity'] <= 3200
    assert 3000000 <= result['exposure'] <= 50090000
    # The committed settings give a usable, unclipped-on-average picture
    assert 0 < camera.next_frame(1.0).mean() < 255


class TestCameraManager:
    """Tests for backend selection."""

    def test_simulated_backend(self):
        settings = {'backend': 'simulated', 'simulated': {'resolution': (32, 24), 'framerate': 0}}
        with CameraManager(settings) as manager:
            assert isinstance(manager.frame_source, SimulatedCamera)
            # No apertures configured means a fixed lens
            assert set(manager.channels()) == {'sensitivity', 'exposure'}
            assert manager.frame_source.next_frame(1.0).shape == (24, 32, 3)
        assert manager.channels() == {}

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            CameraManager({'backend': 'webcam'})
