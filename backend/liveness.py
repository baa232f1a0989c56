"""
Liveness detection for keystroke timing samples.

Scripted or replayed keystroke injection tends to produce unnaturally low
variance or exact repeats, while genuine typing always carries jitter.
Each heuristic subtracts a fixed penalty from a starting score of 1.0.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np

from config import DEFAULT_CONFIG, ScoringConfig
from keystroke_features import TimingVector

logger = logging.getLogger(__name__)


class LivenessFlag(str, Enum):
    """Anomaly codes raised by the liveness detector."""
    LOW_DWELL_VARIANCE = "LOW_DWELL_VARIANCE"
    SUSPICIOUS_DWELL_CV = "SUSPICIOUS_DWELL_CV"
    LOW_FLIGHT_VARIANCE = "LOW_FLIGHT_VARIANCE"
    SUSPICIOUS_FLIGHT_CV = "SUSPICIOUS_FLIGHT_CV"
    REPEATING_DWELL_PATTERN = "REPEATING_DWELL_PATTERN"
    REPEATING_FLIGHT_PATTERN = "REPEATING_FLIGHT_PATTERN"


@dataclass
class LivenessResult:
    is_human: bool
    score: float
    flags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {'is_human': self.is_human, 'score': self.score, 'flags': list(self.flags)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LivenessResult":
        return cls(
            is_human=bool(data['is_human']),
            score=float(data['score']),
            flags=list(data.get('flags', [])),
        )


def has_repeating_run(values: Sequence[float], tolerance: float) -> bool:
    """True if three consecutive values are pairwise within `tolerance`."""
    for i in range(2, len(values)):
        if abs(values[i] - values[i - 1]) < tolerance and abs(values[i - 1] - values[i - 2]) < tolerance:
            return True
    return False


def _variance_checks(
    values: Sequence[float],
    min_stddev: float,
    low_variance_flag: LivenessFlag,
    low_cv_flag: LivenessFlag,
    config: ScoringConfig
) -> Tuple[float, List[str]]:
    """
    Penalize too-steady timings in one feature family.

    Needs at least 2 samples to run at all. The coefficient-of-variation
    check also requires a positive mean, and the absolute standard
    deviation check only applies from 3 samples upward.
    """
    penalty = 0.0
    flags = []

    if len(values) < 2:
        return penalty, flags

    arr = np.asarray(values, dtype=np.float64)
    mean = float(arr.mean())
    std = float(arr.std())

    if len(values) >= 3 and std < min_stddev:
        penalty += config.low_variance_penalty
        flags.append(low_variance_flag.value)

    if mean > 0 and std / mean < config.min_human_cv:
        penalty += config.low_cv_penalty
        flags.append(low_cv_flag.value)

    return penalty, flags


def detect_liveness(timings: TimingVector, config: ScoringConfig = DEFAULT_CONFIG) -> LivenessResult:
    """
    Judge whether a single attempt came from a human typist.

    Args:
        timings: Timing vector of one live attempt
        config: Scoring configuration

    Returns:
        LivenessResult with score in [0, 1]; is_human when score >= 0.5
    """
    score = 1.0
    flags: List[str] = []

    for values, min_stddev, low_var, low_cv in (
        (timings.dwell_times, config.min_dwell_stddev,
         LivenessFlag.LOW_DWELL_VARIANCE, LivenessFlag.SUSPICIOUS_DWELL_CV),
        (timings.flight_times, config.min_flight_stddev,
         LivenessFlag.LOW_FLIGHT_VARIANCE, LivenessFlag.SUSPICIOUS_FLIGHT_CV),
    ):
        penalty, found = _variance_checks(values, min_stddev, low_var, low_cv, config)
        score -= penalty
        flags.extend(found)

    if has_repeating_run(timings.dwell_times, config.repeat_tolerance):
        score -= config.repeating_pattern_penalty
        flags.append(LivenessFlag.REPEATING_DWELL_PATTERN.value)

    if has_repeating_run(timings.flight_times, config.repeat_tolerance):
        score -= config.repeating_pattern_penalty
        flags.append(LivenessFlag.REPEATING_FLIGHT_PATTERN.value)

    score = round(float(np.clip(score, 0.0, 1.0)), 4)
    is_human = score >= config.human_score_threshold

    if flags:
        logger.debug(f"Liveness flags raised: {flags}, score={score:.2f}, is_human={is_human}")

    return LivenessResult(is_human=is_human, score=score, flags=flags)
