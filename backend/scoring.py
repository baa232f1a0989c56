"""
Scoring of a typing attempt against a biometric profile.

This module implements:
- Scaled Manhattan distance per feature (|x - mean| / MAD, capped per position)
- Weighted fusion of dwell, flight and down-down scores
- Liveness penalty for bot-like input
- Distance to confidence conversion
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Sequence

import numpy as np

from config import DEFAULT_CONFIG, ScoringConfig
from keystroke_features import TimingVector
from liveness import LivenessResult, detect_liveness
from profile_builder import BiometricProfile

logger = logging.getLogger(__name__)


@dataclass
class MatchResult:
    """Outcome of comparing one attempt to one profile. Not persisted."""
    distance: float
    confidence: int
    dwell_score: float
    flight_score: float
    dd_score: float
    liveness: LivenessResult
    weights: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'distance': self.distance,
            'confidence': self.confidence,
            'dwell_score': self.dwell_score,
            'flight_score': self.flight_score,
            'dd_score': self.dd_score,
            'weights': dict(self.weights),
            'liveness': self.liveness.to_dict(),
        }


def scaled_manhattan(
    attempt_values: Sequence[float],
    profile_mean: Sequence[float],
    profile_mad: Sequence[float],
    config: ScoringConfig = DEFAULT_CONFIG
) -> float:
    """
    Average per-position deviation scaled by that position's MAD.

    Mismatched lengths are truncated to the shortest series. Each
    position's penalty is capped so one outlier cannot dominate.

    Returns:
        Average penalty, or the degenerate sentinel when nothing is comparable
    """
    n = min(len(attempt_values), len(profile_mean), len(profile_mad))
    if n == 0:
        return config.degenerate_score

    attempt = np.asarray(attempt_values[:n], dtype=np.float64)
    mean = np.asarray(profile_mean[:n], dtype=np.float64)
    mad = np.maximum(np.asarray(profile_mad[:n], dtype=np.float64), config.min_mad_threshold)

    penalties = np.minimum(np.abs(attempt - mean) / mad, config.max_penalty)
    return float(penalties.mean())


def _finite_or_sentinel(value: float, config: ScoringConfig) -> float:
    return value if math.isfinite(value) else config.degenerate_score


def distance_to_confidence(distance: float) -> int:
    """
    Convert a distance to a confidence percentage.

    distance 0 -> 100, decreasing monotonically toward 0.
    """
    if not math.isfinite(distance):
        return 0
    distance = max(distance, 0.0)
    confidence = 100.0 / (1.0 + distance) ** 1.5
    return int(round(float(np.clip(confidence, 0.0, 100.0))))


def calculate_match(
    timings: TimingVector,
    profile: BiometricProfile,
    config: ScoringConfig = DEFAULT_CONFIG
) -> MatchResult:
    """
    Calculate the match between an attempt and a profile.

    Args:
        timings: Timing vector of the live attempt
        profile: Stored biometric profile
        config: Scoring configuration

    Returns:
        MatchResult with per-feature scores, distance, confidence and liveness
    """
    dwell_score = _finite_or_sentinel(
        scaled_manhattan(timings.dwell_times, profile.dwell.mean, profile.dwell.mad, config), config
    )
    flight_score = _finite_or_sentinel(
        scaled_manhattan(timings.flight_times, profile.flight.mean, profile.flight.mad, config), config
    )
    dd_score = _finite_or_sentinel(
        scaled_manhattan(timings.dd_latencies, profile.dd.mean, profile.dd.mad, config), config
    )

    weights = dict(config.feature_weights)
    distance = (
        dwell_score * weights['dwell'] +
        flight_score * weights['flight'] +
        dd_score * weights['dd']
    )

    liveness = detect_liveness(timings, config)
    if not liveness.is_human:
        distance += (1.0 - liveness.score) * config.liveness_penalty_scale

    confidence = distance_to_confidence(distance)

    logger.debug(
        f"Match scores: dwell={dwell_score:.3f}, flight={flight_score:.3f}, dd={dd_score:.3f}, "
        f"distance={distance:.3f}, confidence={confidence}%, human={liveness.is_human}"
    )

    return MatchResult(
        distance=float(distance),
        confidence=confidence,
        dwell_score=dwell_score,
        flight_score=flight_score,
        dd_score=dd_score,
        weights=weights,
        liveness=liveness,
    )
