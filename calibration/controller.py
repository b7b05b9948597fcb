"""
Calibration Controller
Searches channel values one channel at a time using live frame feedback
"""

import concurrent.futures
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

import numpy as np

from config.config import Config
from .controls import ChannelControls
from .errors import (CalibrationConfigError, ControlsLockedError, DegenerateRangeError,
                     EmptyIntersectionError, FrameTimeoutError, InvalidFrameError,
                     RangeUnavailableError)
from .metric_evaluator import Candidate, MetricEvaluator, create_evaluator
from .range_mapper import POSITION_MAX

logger = logging.getLogger(__name__)


class CalibrationState(Enum):
    IDLE = 'idle'
    SEARCHING_CHANNEL = 'searching_channel'
    AWAITING_FRAME = 'awaiting_frame'
    EVALUATED = 'evaluated'
    ADVANCING_CHANNEL = 'advancing_channel'
    COMMITTING = 'committing'
    DONE = 'done'


@dataclass
class CalibrationEvent:
    """Notification for the presentation side: applied, committed, skipped or finished"""
    kind: str
    channel: Optional[str] = None
    position: Optional[int] = None
    value: object = None
    result: Dict = field(default_factory=dict)


@dataclass
class SearchState:
    """Position of an in-progress calibration run"""
    channels: List[str]
    channel_index: int = 0
    position: int = 0
    step: int = 1
    active: bool = False
    applies: int = 0
    searched: int = 0  # Channels entered for searching this run
    candidate: Optional[Candidate] = None

    @property
    def channel(self) -> Optional[str]:
        if 0 <= self.channel_index < len(self.channels):
            return self.channels[self.channel_index]
        return None


def step_size(iterations: int) -> int:
    """Position increment for a channel searched in the given number of iterations"""
    return max(1, POSITION_MAX // iterations)


def format_result_tag(values: Dict, channel_settings: Optional[Dict] = None) -> str:
    """Render committed values as 'iso:<v>_exp:<v>_aper:<v>' for file names"""
    channel_settings = channel_settings or Config.CHANNELS
    parts = []
    for name, settings in channel_settings.items():
        tag = settings.get('tag', name)
        parts.append(f"{tag}:{values.get(name)}")
    return '_'.join(parts)


class CalibrationController:
    """State machine driving an ordered, per-channel parameter search"""

    def __init__(self, controls: ChannelControls, frame_source, settings: Optional[Dict] = None,
                 evaluator: Optional[MetricEvaluator] = None, use_evaluation_thread: bool = True):
        """
        Args:
            controls: Control surface wrapping the channels to calibrate
            frame_source: FrameSource providing fresh frames
            settings: Overrides for Config.CALIBRATION
            evaluator: Metric evaluator, built from settings when omitted
            use_evaluation_thread: Score frames on a separate evaluator thread

        Raises:
            CalibrationConfigError: empty or unknown channel order, bad iteration count
        """
        self.settings = dict(Config.CALIBRATION)
        if settings:
            self.settings.update(settings)
        self.controls = controls
        self.frame_source = frame_source

        self.channel_order = list(self.settings.get('channel_order') or [])
        self._validate_settings()

        self._evaluator = evaluator or create_evaluator(self.settings)
        self._executor = self._create_executor() if use_evaluation_thread else None

        self._lock = threading.RLock()
        self._state = CalibrationState.IDLE
        self._search: Optional[SearchState] = None
        self._prior: Dict[str, object] = {}
        self._result: Dict[str, object] = {}
        self._pending_delay = 0.0
        self._listeners: List[Callable] = []
        self._control_thread: Optional[threading.Thread] = None
        self._abort = threading.Event()
        self._done = threading.Event()
        self._done.set()

    def _validate_settings(self):
        if not self.channel_order:
            raise CalibrationConfigError("No channels configured for calibration")
        known = set(self.controls.names())
        unknown = [name for name in self.channel_order if name not in known]
        if unknown:
            raise CalibrationConfigError(f"Unknown calibration channels: {unknown}")
        if len(set(self.channel_order)) != len(self.channel_order):
            raise CalibrationConfigError(f"Duplicate channels in order: {self.channel_order}")
        for name in self.channel_order:
            if self._iterations(name) < 1:
                raise CalibrationConfigError(f"{name} needs at least one iteration")

    @staticmethod
    def _create_executor() -> concurrent.futures.ThreadPoolExecutor:
        return concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix='evaluator')

    def _iterations(self, name: str) -> int:
        return int(self.settings.get('iterations_per_channel', {}).get(name, 10))

    # Read-only state

    @property
    def state(self) -> CalibrationState:
        return self._state

    @property
    def is_calibrating(self) -> bool:
        return self._search is not None and self._search.active

    @property
    def current_channel(self) -> Optional[str]:
        return self._search.channel if self.is_calibrating else None

    @property
    def position(self) -> Optional[int]:
        return self._search.position if self.is_calibrating else None

    @property
    def pending_delay(self) -> float:
        """Seconds to wait before the next step"""
        return self._pending_delay

    @property
    def result(self) -> Dict[str, object]:
        """Committed value per channel of the last run"""
        return dict(self._result)

    @property
    def evaluator(self) -> MetricEvaluator:
        return self._evaluator

    @property
    def best_candidate(self):
        return self._evaluator.best

    def add_listener(self, listener: Callable[[CalibrationEvent], None]):
        self._listeners.append(listener)

    def _emit(self, event: CalibrationEvent):
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Calibration listener failed on {event.kind}: {e}")

    def update_settings(self, **changes):
        """Change evaluation options between runs"""
        with self._lock:
            if self.is_calibrating:
                raise ControlsLockedError("Cannot change calibration settings while calibrating")
            settings = dict(self.settings, **changes)
            self._evaluator = create_evaluator(settings)
            self.settings = settings
            logger.info(f"Calibration settings updated: {changes}")

    # Starting

    def start_calibration(self) -> bool:
        """
        Start a calibration run

        Returns:
            False when a run is already active
        """
        with self._lock:
            if self.is_calibrating:
                logger.warning("Calibration already in progress")
                return False
            if not self.controls.lock(self):
                logger.warning("Controls are held elsewhere, cannot calibrate")
                return False

            logger.info(f"Starting calibration of {', '.join(self.channel_order)}")
            self._abort.clear()
            self._done.clear()
            self._result = {}
            self._prior = {}
            for name in self.controls.names():
                current = self.controls.channel(name).current_value()
                self._prior[name] = current if current is not None else self.controls.value(name)

            self._search = SearchState(list(self.channel_order), active=True)
            self._park_at_seeds()
            self._evaluator.reset(self._snapshot())
            self._enter_channel(0)
            return True

    def _park_at_seeds(self):
        """Move every calibrated channel to its seed value"""
        for name in self.channel_order:
            ranges = self.controls.ranges[name]
            if not ranges.is_usable():
                continue
            seed = self.controls.initial_value(name)
            if seed is None:
                continue
            try:
                self.controls.set_value(name, seed, owner=self)
                logger.debug(f"{name} parked at seed {self.controls.value(name)}")
            except ValueError:
                logger.warning(f"{name} seed {seed} is outside its effective range")
            except Exception as e:
                logger.error(f"Failed to apply {name} seed {seed}: {e}")

    def _snapshot(self) -> Candidate:
        return Candidate.snapshot(self.controls.positions(), self.controls.values())

    def _enter_channel(self, index: int):
        """Begin searching the first usable channel at or after index"""
        search = self._search
        while index < len(search.channels):
            name = search.channels[index]
            ranges = self.controls.ranges[name]
            try:
                ranges.require_searchable()
            except (RangeUnavailableError, EmptyIntersectionError) as e:
                logger.warning(f"Skipping {name}: {e}")
                self._emit(CalibrationEvent('skipped', channel=name))
                index += 1
                continue
            except DegenerateRangeError:
                self._commit_fixed(name)
                index += 1
                continue

            search.channel_index = index
            search.position = self._start_position(name) if search.searched == 0 else 0
            search.searched += 1
            search.step = step_size(self._iterations(name))
            self._evaluator.reset(self._snapshot())
            self._state = CalibrationState.SEARCHING_CHANNEL
            logger.info(f"Calibrating {name} from position {search.position} "
                        f"in steps of {search.step}")
            return

        search.channel_index = len(search.channels)
        self._finish()

    def _start_position(self, name: str) -> int:
        """The first searched channel starts at its seed, 0 without one"""
        seed = self.controls.initial_value(name)
        if seed is None:
            return 0
        position = self.controls.ranges[name].control_position(seed)
        return 0 if position is None else position

    def _commit_fixed(self, name: str):
        """A zero-width range has a single value, commit it without searching"""
        try:
            value = self.controls.set_position(name, 0, owner=self)
        except Exception as e:
            logger.error(f"Failed to apply fixed {name} value: {e}")
            return
        logger.info(f"{name} range is a single value, committed {value}")
        self._result[name] = value
        self._emit(CalibrationEvent('committed', channel=name, position=0, value=value))

    # Stepping

    def step(self) -> CalibrationState:
        """Perform exactly one state transition"""
        with self._lock:
            self._pending_delay = 0.0
            handler = {
                CalibrationState.SEARCHING_CHANNEL: self._apply_position,
                CalibrationState.AWAITING_FRAME: self._evaluate_frame,
                CalibrationState.EVALUATED: self._next_position,
                CalibrationState.ADVANCING_CHANNEL: self._commit_best,
                CalibrationState.COMMITTING: self._next_channel,
            }.get(self._state)
            if handler is not None:
                handler()
            return self._state

    def _apply_position(self):
        search = self._search
        name = search.channel
        try:
            value = self.controls.set_position(name, search.position, owner=self)
        except Exception as e:
            logger.error(f"Failed to apply {name} at position {search.position}: {e}")
            self._state = CalibrationState.ADVANCING_CHANNEL
            return

        search.candidate = self._snapshot()
        # The first value of a run needs time for the pipeline to leave auto exposure
        if search.applies == 0:
            self._pending_delay = self.settings.get('settling_delay_ms', 0) / 1000.0
        else:
            self._pending_delay = self.settings.get('frame_delay_ms', 0) / 1000.0
        search.applies += 1

        logger.debug(f"Testing {name}={value} (position {search.position})")
        self._emit(CalibrationEvent('applied', channel=name, position=search.position, value=value))
        self._state = CalibrationState.AWAITING_FRAME

    def _evaluate_frame(self):
        search = self._search
        name = search.channel
        try:
            frame = self.frame_source.next_frame(self.settings.get('frame_timeout', 2.0))
            score = self._score(frame)
        except FrameTimeoutError as e:
            logger.warning(f"{name} search abandoned, keeping best so far: {e}")
            self._state = CalibrationState.ADVANCING_CHANNEL
            return
        except InvalidFrameError as e:
            logger.warning(f"Skipping {name} sample at position {search.position}: {e}")
            self._state = CalibrationState.EVALUATED
            return
        except Exception as e:
            logger.error(f"Error capturing {name} sample, abandoning channel search: {e}")
            self._state = CalibrationState.ADVANCING_CHANNEL
            return

        improved = self._evaluator.record(search.candidate, score)
        logger.debug(f"{name} position {search.position}: score {score:.4f}"
                     f"{' (best)' if improved else ''}")
        self._state = CalibrationState.EVALUATED

    def _score(self, frame) -> float:
        """Score a frame copy on the evaluation thread"""
        snapshot = None if frame is None else np.array(frame, copy=True)
        if self._executor is None:
            return self._evaluator.measure(snapshot)

        future = self._executor.submit(self._evaluator.measure, snapshot)
        try:
            return future.result(timeout=self.settings.get('evaluation_timeout', 5.0))
        except concurrent.futures.TimeoutError:
            if not future.cancel():
                # A running measure cannot be cancelled and would block the single worker
                logger.warning("Evaluation still running after timeout, replacing evaluator thread")
                self._executor.shutdown(wait=False)
                self._executor = self._create_executor()
            raise FrameTimeoutError("Frame evaluation timed out")

    def _next_position(self):
        search = self._search
        if not self._evaluator.finished and search.position + search.step <= POSITION_MAX:
            search.position += search.step
            self._state = CalibrationState.SEARCHING_CHANNEL
        else:
            self._state = CalibrationState.ADVANCING_CHANNEL

    def _commit_best(self):
        search = self._search
        name = search.channel
        best = self._evaluator.best
        position = best.candidate.position(name)
        value = best.candidate.value(name)

        try:
            if best.samples == 0 or value is None:
                logger.warning(f"No usable samples for {name}, restoring {self._prior.get(name)}")
                self.controls.restore_value(name, self._prior.get(name), owner=self)
            else:
                if position is not None:
                    value = self.controls.set_position(name, position, owner=self)
                else:
                    self.controls.restore_value(name, value, owner=self)
                self._result[name] = value
                logger.info(f"Committed {name}={value} (score {best.score:.4f}, "
                            f"{best.samples} samples)")
                self._emit(CalibrationEvent('committed', channel=name, position=position, value=value))
        except Exception as e:
            logger.error(f"Failed to commit {name}: {e}")

        search.position = 0
        self._state = CalibrationState.COMMITTING

    def _next_channel(self):
        self._enter_channel(self._search.channel_index + 1)

    def _finish(self):
        self._state = CalibrationState.DONE
        self._search.active = False
        self.controls.unlock(self)
        logger.info(f"Calibration complete: {self._result}")
        self._emit(CalibrationEvent('finished', result=dict(self._result)))
        self._done.set()

    # Driving

    def _drive(self):
        while not self._abort.is_set():
            state = self.step()
            if state in (CalibrationState.DONE, CalibrationState.IDLE):
                break
            delay = self._pending_delay
            if delay > 0 and self._abort.wait(delay):
                break

    def run(self) -> Optional[Dict[str, object]]:
        """
        Calibrate on the calling thread

        Returns:
            Committed values, or None when a run was already active
        """
        if not self.start_calibration():
            return None
        self._drive()
        return self.result

    def start_in_background(self) -> bool:
        """Calibrate on a dedicated control thread"""
        with self._lock:
            if not self.start_calibration():
                return False
            self._control_thread = threading.Thread(
                target=self._drive, name='calibration-control', daemon=True)
            self._control_thread.start()
            return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for the current run to finish, True when it did"""
        return self._done.wait(timeout)

    def shutdown(self):
        """Tear down the controller, abandoning any run and restoring prior values"""
        self._abort.set()
        thread = self._control_thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=self.settings.get('frame_timeout', 2.0)
                        + self.settings.get('evaluation_timeout', 5.0) + 1.0)

        with self._lock:
            if self.is_calibrating:
                logger.info("Abandoning calibration run")
                for name in self._search.channels:
                    if name in self._result:
                        continue
                    try:
                        self.controls.restore_value(name, self._prior.get(name), owner=self)
                    except Exception as e:
                        logger.error(f"Failed to restore {name}: {e}")
                self._search.active = False
                self.controls.unlock(self)
            self._state = CalibrationState.IDLE
            self._done.set()

        if self._executor:
            self._executor.shutdown(wait=False)
            self._executor = None

    def get_status(self) -> Dict:
        """Current search position and best candidate"""
        best = self._evaluator.best
        return {
            'state': self._state.value,
            'calibrating': self.is_calibrating,
            'channel': self.current_channel,
            'position': self.position,
            'best': {
                'values': dict(best.candidate.values),
                'score': best.score,
                'samples': best.samples
            },
            'result': self.result
        }

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()
