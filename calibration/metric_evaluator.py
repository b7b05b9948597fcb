"""
Frame Quality Metrics for Calibration
Scores frames and keeps the best candidate seen during a channel search
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import cv2
import numpy as np

from .errors import InvalidFrameError

logger = logging.getLogger(__name__)

DEFAULT_SATURATION_THRESHOLD = 1.0 / 10000


@dataclass(frozen=True)
class Candidate:
    """Snapshot of every channel's control position and concrete value"""
    positions: Dict[str, int] = field(default_factory=dict)
    values: Dict[str, object] = field(default_factory=dict)

    @classmethod
    def snapshot(cls, positions: Dict[str, int], values: Dict[str, object]) -> 'Candidate':
        return cls(dict(positions), dict(values))

    def position(self, channel: str) -> Optional[int]:
        return self.positions.get(channel)

    def value(self, channel: str):
        return self.values.get(channel)


@dataclass
class BestCandidate:
    """Best score so far and the candidate that produced it"""
    candidate: Candidate
    score: float = 0.0
    samples: int = 0  # Frames eligible to be the best since the last reset


def validate_frame(frame: np.ndarray) -> np.ndarray:
    """Reject missing and zero-area frames"""
    if frame is None:
        raise InvalidFrameError("No frame")
    frame = np.asarray(frame)
    if frame.ndim < 2 or frame.shape[0] == 0 or frame.shape[1] == 0 or frame.size == 0:
        raise InvalidFrameError(f"Zero-area frame with shape {frame.shape}")
    return frame


class MetricEvaluator:
    """
    Common evaluator interface

    measure() is pure and may run on the evaluation thread; record() mutates
    the best candidate and belongs to the control thread.
    """

    def __init__(self, anchor: Optional[Candidate] = None):
        self.best = BestCandidate(anchor or Candidate())
        self.finished = False

    def reset(self, anchor: Candidate):
        """Start a fresh best candidate anchored at anchor with score 0"""
        self.best = BestCandidate(anchor)
        self.finished = False

    def measure(self, frame: np.ndarray) -> float:
        raise NotImplementedError

    def record(self, candidate: Candidate, score: float) -> bool:
        raise NotImplementedError

    def evaluate(self, frame: np.ndarray, candidate: Candidate) -> bool:
        """Score a frame and remember the candidate if it is the new best"""
        return self.record(candidate, self.measure(frame))

    @property
    def best_value(self) -> Candidate:
        return self.best.candidate

    @property
    def best_score(self) -> float:
        return self.best.score


class DispersionEvaluator(MetricEvaluator):
    """RMS deviation of luma around its mean, higher is better"""

    def __init__(self, pixel_stride: int = 1, use_green_channel_only: bool = False,
                 anchor: Optional[Candidate] = None):
        super().__init__(anchor)
        if pixel_stride < 1:
            raise ValueError(f"pixel_stride must be >= 1, got {pixel_stride}")
        self.pixel_stride = int(pixel_stride)
        self.use_green_channel_only = use_green_channel_only

    def to_luma(self, frame: np.ndarray) -> np.ndarray:
        """Convert an RGB frame to a single-channel luma buffer"""
        frame = validate_frame(frame)
        if frame.ndim == 2:
            return frame
        if frame.shape[2] == 1:
            return frame[:, :, 0]
        if self.use_green_channel_only:
            return frame[:, :, 1]
        if frame.shape[2] == 4:
            return cv2.cvtColor(frame, cv2.COLOR_RGBA2GRAY)
        return cv2.cvtColor(frame, cv2.COLOR_RGB2GRAY)

    def measure(self, frame: np.ndarray) -> float:
        luma = self.to_luma(frame)
        samples = luma.reshape(-1).astype(np.float64)
        mean_val = samples.mean()

        # Mean uses every sample, the deviation only every Nth
        polled = samples[::self.pixel_stride]
        deviation = polled - mean_val
        return float(np.sqrt(np.mean(deviation * deviation)))

    def record(self, candidate: Candidate, score: float) -> bool:
        self.best.samples += 1
        # Strictly greater, the earliest candidate wins ties
        if score > self.best.score:
            logger.debug(f"New best {candidate.values} with dispersion {score:.2f}")
            self.best.candidate = candidate
            self.best.score = score
            return True
        return False


class SaturationEvaluator(MetricEvaluator):
    """
    Fraction of saturated red samples

    Candidates are expected from low to high. Each accepted candidate becomes
    the best; the first one over the threshold finishes the channel search.
    """

    def __init__(self, threshold_ratio: float = DEFAULT_SATURATION_THRESHOLD,
                 anchor: Optional[Candidate] = None):
        super().__init__(anchor)
        if not 0 < threshold_ratio < 1:
            raise ValueError(f"threshold_ratio must be in (0, 1), got {threshold_ratio}")
        self.threshold_ratio = threshold_ratio

    def measure(self, frame: np.ndarray) -> float:
        frame = validate_frame(frame)
        red = frame if frame.ndim == 2 else frame[:, :, 0]
        if np.issubdtype(red.dtype, np.integer):
            max_value = np.iinfo(red.dtype).max
        else:
            max_value = 1.0
        saturated = np.count_nonzero(red >= max_value)
        return saturated / red.size

    def accepts(self, ratio: float) -> bool:
        return ratio <= self.threshold_ratio

    def record(self, candidate: Candidate, score: float) -> bool:
        if self.finished:
            return False
        if self.accepts(score):
            self.best.samples += 1
            self.best.candidate = candidate
            self.best.score = score
            return True
        logger.debug(f"Saturation {score:.5f} over threshold {self.threshold_ratio:.5f} "
                     f"at {candidate.values}, finishing channel")
        self.finished = True
        return False


def create_evaluator(settings: Dict, anchor: Optional[Candidate] = None) -> MetricEvaluator:
    """Build the evaluator named by settings['metric']"""
    metric = settings.get('metric', 'dispersion')
    if metric == 'dispersion':
        return DispersionEvaluator(
            pixel_stride=settings.get('pixel_stride', 1),
            use_green_channel_only=settings.get('use_green_channel_only', False),
            anchor=anchor
        )
    if metric == 'saturation':
        return SaturationEvaluator(
            threshold_ratio=settings.get('saturation_threshold_ratio', DEFAULT_SATURATION_THRESHOLD),
            anchor=anchor
        )
    raise ValueError(f"Unknown metric: {metric}")
