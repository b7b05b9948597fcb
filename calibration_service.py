#!/usr/bin/env python3
"""
Exposure Calibrator - Calibration Service
Runs calibration searches and exposes the manual channel controls over HTTP
"""

import logging
import os

import psutil
from flask import Flask, jsonify, request

from config.config import Config
from calibration.controller import CalibrationController, CalibrationEvent, CalibrationState, format_result_tag
from calibration.controls import ChannelControls
from calibration.errors import CalibrationError, ControlsLockedError, RangeError
from calibration.scheduling import RepeatingTask

# Setup logging
logging.basicConfig(
    level=getattr(logging, Config.LOGGING['level']),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)
app.config['SECRET_KEY'] = Config.SECRET_KEY

# Global calibration objects
camera_manager = None
controls = None
controller = None
progress_task = None

OPTION_KEYS = ('use_green_channel_only', 'metric', 'pixel_stride')


def log_progress():
    """Periodic progress line while a run is active"""
    if controller and controller.is_calibrating:
        best = controller.best_candidate
        logger.info(f"Progress: {controller.current_channel} at position {controller.position}/100, "
                    f"best score so far: {best.score:.2f}")


def on_calibration_event(event: CalibrationEvent):
    """Log calibration milestones and stop progress reporting when done"""
    if event.kind == 'committed':
        logger.info(f"Calibration committed {event.channel}={event.value}")
    elif event.kind == 'skipped':
        logger.warning(f"Calibration skipped {event.channel}")
    elif event.kind == 'finished':
        if progress_task:
            progress_task.stop()
        logger.info(f"Calibration finished: {format_result_tag(event.result)}")


def initialize_calibrator(camera_settings=None):
    """Create the camera backend, the controls and the calibration controller"""
    global camera_manager, controls, controller, progress_task

    from camera.camera_manager import CameraManager
    camera_manager = CameraManager(camera_settings)
    channels = camera_manager.channels()
    controls = ChannelControls(channels, Config.CHANNELS)

    # Calibrate only the channels this backend provides
    order = [name for name in Config.CALIBRATION['channel_order'] if name in channels]
    controller = CalibrationController(controls, camera_manager.frame_source, {'channel_order': order})
    controller.add_listener(on_calibration_event)

    progress_task = RepeatingTask(Config.CALIBRATION['progress_interval'], log_progress,
                                  name='calibration-progress')
    logger.info(f"Calibrator initialized with {camera_manager.backend} backend, order: {order}")


def shutdown_calibrator():
    """Tear down the controller and the camera backend"""
    global camera_manager, controls, controller, progress_task

    if progress_task:
        progress_task.stop()
    if controller:
        controller.shutdown()
    if camera_manager:
        camera_manager.cleanup()
    camera_manager = controls = controller = progress_task = None


@app.route('/api/calibration/start', methods=['POST'])
def start_calibration():
    """Start a calibration run in the background"""
    if not controller:
        return jsonify({"error": "Calibrator not available"}), 503

    if not controller.start_in_background():
        return jsonify({"success": False, "error": "Calibration already in progress"}), 409

    progress_task.start()
    # The run may already be over, in which case its finished event came before start()
    if not controller.is_calibrating:
        progress_task.stop()
    return jsonify({"success": True, "status": controller.get_status()}), 202


@app.route('/api/calibration/status')
def calibration_status():
    """Current state of the calibration search"""
    if not controller:
        return jsonify({"error": "Calibrator not available"}), 503
    status = controller.get_status()
    status['controls'] = controls.get_status()
    return jsonify(status)


@app.route('/api/calibration/result')
def calibration_result():
    """Committed values of the last finished run"""
    if not controller:
        return jsonify({"error": "Calibrator not available"}), 503
    if controller.is_calibrating or controller.state != CalibrationState.DONE:
        return jsonify({"error": "No finished calibration run"}), 404

    values = controller.result
    return jsonify({
        "values": values,
        "tag": format_result_tag(values)
    })


@app.route('/api/calibration/options', methods=['GET', 'POST'])
def calibration_options():
    """Read or change the evaluation options between runs"""
    if not controller:
        return jsonify({"error": "Calibrator not available"}), 503

    if request.method == 'GET':
        return jsonify({key: controller.settings.get(key) for key in OPTION_KEYS})

    data = request.get_json(silent=True) or {}
    unknown = [key for key in data if key not in OPTION_KEYS]
    if unknown:
        return jsonify({"error": f"Unknown options: {unknown}"}), 400

    try:
        controller.update_settings(**data)
    except ControlsLockedError as e:
        return jsonify({"success": False, "error": str(e)}), 409
    except ValueError as e:
        return jsonify({"success": False, "error": str(e)}), 400

    return jsonify({"success": True, "options": {key: controller.settings.get(key) for key in OPTION_KEYS}})


@app.route('/api/controls')
def get_controls():
    """Positions and values of every channel control"""
    if not controls:
        return jsonify({"error": "Calibrator not available"}), 503
    return jsonify(controls.get_status())


@app.route('/api/controls/<channel>', methods=['POST'])
def set_control(channel):
    """Move a control by position (0-100) or to a concrete value"""
    if not controls:
        return jsonify({"error": "Calibrator not available"}), 503
    if channel not in controls.names():
        return jsonify({"error": f"Unknown channel {channel}"}), 404

    data = request.get_json(silent=True) or {}
    try:
        if 'position' in data:
            value = controls.set_position(channel, int(data['position']))
        elif 'value' in data:
            value = controls.set_value(channel, data['value'])
        else:
            return jsonify({"error": "Missing position or value"}), 400
    except ControlsLockedError as e:
        return jsonify({"success": False, "error": str(e)}), 409
    except (RangeError, ValueError) as e:
        return jsonify({"success": False, "error": str(e)}), 400
    except CalibrationError as e:
        logger.error(f"Error setting {channel}: {e}")
        return jsonify({"success": False, "error": str(e)}), 500

    return jsonify({
        "success": True,
        "channel": channel,
        "position": controls.position(channel),
        "value": value,
        "label": controls.label(channel)
    })


@app.route('/health')
def health_check():
    """Health check endpoint"""
    try:
        memory_mb = psutil.Process(os.getpid()).memory_info().rss / 1024 / 1024
    except psutil.Error:
        memory_mb = None

    return {
        'status': 'ok',
        'service': 'calibration-service',
        'backend': camera_manager.backend if camera_manager else None,
        'calibrating': controller.is_calibrating if controller else False,
        'memory_mb': memory_mb
    }


def add_file_logging(file_path: str):
    """Also write the service log to file_path"""
    log_dir = os.path.dirname(file_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    handler = logging.FileHandler(file_path)
    handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    logging.getLogger().addHandler(handler)


if __name__ == '__main__':
    add_file_logging(Config.LOGGING['file_path'])
    try:
        logger.info(f"Starting Calibration Service on port {Config.PORT}...")
        initialize_calibrator()
        app.run(
            host=Config.HOST,
            port=Config.PORT,
            debug=Config.DEBUG,
            threaded=True
        )
    except Exception as e:
        logger.error(f"Calibration service error: {e}")
    finally:
        shutdown_calibrator()
