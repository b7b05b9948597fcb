"""
Exposure Calibrator Configuration
Settings for the calibration engine, the capture backend and the service
"""


class Config:
    """Configuration settings for the exposure calibrator"""

    # Flask Service Settings
    HOST = '0.0.0.0'  # Allow connections from any IP
    PORT = 5003
    DEBUG = False
    SECRET_KEY = 'your-secret-key-change-this-in-production'

    # Calibration Search Settings
    CALIBRATION = {
        'channel_order': ['sensitivity', 'exposure'],  # Calibrated one fully before the next
        'iterations_per_channel': {
            'sensitivity': 30,
            'exposure': 30,
            'aperture': 10
        },
        'metric': 'dispersion',           # 'dispersion' (RMS contrast) or 'saturation'
        'pixel_stride': 1,                # Evaluate every Nth luma sample
        'use_green_channel_only': True,   # Green channel instead of full desaturation
        'saturation_threshold_ratio': 1.0 / 10000,
        'settling_delay_ms': 500,         # Before the first evaluation of a run
        'frame_delay_ms': 150,            # Between applying a value and grabbing its frame
        'frame_timeout': 2.0,             # Seconds to wait for a fresh frame
        'evaluation_timeout': 5.0,        # Seconds to wait for a frame score
        'progress_interval': 1.0          # Seconds between progress log lines
    }

    # Channel Settings
    # Ranges are (lower, upper) in device units: ISO for sensitivity,
    # nanoseconds for exposure. Aperture has no practical range.
    CHANNELS = {
        'sensitivity': {
            'label': 'Iso',
            'tag': 'iso',
            'practical_range': (100, 3200),
            'initial_value': 350
        },
        'exposure': {
            'label': 'Exposure',
            'tag': 'exp',
            'practical_range': (3000000, 50090000),
            'initial_value': 15000000
        },
        'aperture': {
            'label': 'Aperture',
            'tag': 'aper',
            'practical_range': None,
            'initial_value': None  # First available aperture
        }
    }

    # Camera Backend Settings
    CAMERA_SETTINGS = {
        'backend': 'simulated',  # 'picamera', 'remote' or 'simulated'
        'picamera': {
            'index': 0,
            'resolution': (640, 480),
            'hflip': False,
            'vflip': False
        },
        'remote': {
            'camera_type': 'ir',
            'camera_service_url': 'http://localhost:5001',
            'frame_service_url': 'http://localhost:5002',
            'request_timeout': 5
        },
        'simulated': {
            'resolution': (160, 120),
            'framerate': 30,
            'sensitivity_range': (50, 6400),
            'exposure_range': (100000, 100000000),
            'apertures': [1.8, 2.2, 2.8],
            'scene_seed': 7
        }
    }

    # Logging Settings
    LOGGING = {
        'level': 'INFO',            # Logging level
        'file_path': 'logs/calibrator.log'
    }
