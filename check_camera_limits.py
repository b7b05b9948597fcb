#!/usr/bin/env python3
"""
Check actual camera control limits for each calibration channel
"""

import sys

from config.config import Config
from calibration.controls import to_value_range
from calibration.errors import RangeError
from calibration.range_mapper import ChannelRanges
from calibration.value_range import describe_range

SAMPLE_POSITIONS = (0, 50, 100)


def check_channel(name, channel, settings):
    print(f"\n{settings.get('label', name.capitalize())} ({name}):")
    print("="*50)

    ranges = ChannelRanges(name, channel, to_value_range(settings.get('practical_range')))
    print(f"Device range:    {describe_range(ranges.device)}")
    print(f"Practical range: {describe_range(ranges.practical)}")

    try:
        effective = ranges.effective
    except RangeError as e:
        print(f"Effective range: unusable ({e})")
        return

    print(f"Effective range: {describe_range(effective)}")
    if ranges.is_degenerate():
        print("Single value, calibration commits it without searching")
    for position in SAMPLE_POSITIONS:
        print(f"  position {position:3d} -> {ranges.to_value(position)}")


def check_camera_controls(camera_settings=None):
    from camera.camera_manager import CameraManager

    with CameraManager(camera_settings) as manager:
        print(f"Backend: {manager.backend}")
        channels = manager.channels()
        if not channels:
            print("Backend exposes no controllable channels")
            return
        for name, channel in channels.items():
            check_channel(name, channel, Config.CHANNELS.get(name, {}))


if __name__ == "__main__":
    print("Checking camera control limits...")

    settings = dict(Config.CAMERA_SETTINGS)
    if len(sys.argv) > 1:
        settings['backend'] = sys.argv[1]

    try:
        check_camera_controls(settings)
    except Exception as e:
        print(f"Error accessing camera: {e}")
