"""
Scoring configuration for keystroke rhythm authentication.

All thresholds, weights and clamps live in one immutable structure that is
passed into the profile builder, liveness detector, match scorer and policy.
"""
import os
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Mapping


# Fixed extraction bounds (ms). Not configurable per call.
TIMING_CLAMPS = {
    'min_dwell': 10.0,
    'max_dwell': 1000.0,
    'min_flight': -200.0,
    'max_flight': 2000.0,
}

MANTRA_TEXT = "the quick brown fox jumps over the lazy dog"

MANTRA_CALIBRATION_COUNT = 5
ANSWER_CALIBRATION_COUNT = 5
MIN_ANSWER_LENGTH = 4
MIN_USERNAME_LENGTH = 2

QUALITY_THRESHOLDS = {
    'excellent': 80,
    'good': 60,
    'acceptable': 40,
    'poor': 20,
}


def _default_feature_weights() -> Mapping[str, float]:
    return MappingProxyType({'dwell': 0.30, 'flight': 0.50, 'dd': 0.20})


def _default_challenge_weights() -> Mapping[str, float]:
    return MappingProxyType({'mantra': 0.55, 'answer': 0.45})


@dataclass(frozen=True)
class ScoringConfig:
    """Process-wide tunable parameters of the biometric engine."""

    # Profile building
    outlier_z_threshold: float = 2.5
    min_mad_threshold: float = 40.0
    mad_smoothing_samples: int = 8
    mad_smoothing_strength: float = 0.3
    min_profile_quality: int = 30

    # Scaled Manhattan distance
    max_penalty: float = 3.0
    degenerate_score: float = 10.0
    feature_weights: Mapping[str, float] = field(default_factory=_default_feature_weights)
    liveness_penalty_scale: float = 1.5

    # Liveness
    min_dwell_stddev: float = 8.0
    min_flight_stddev: float = 15.0
    min_human_cv: float = 0.05
    repeat_tolerance: float = 5.0
    low_variance_penalty: float = 0.4
    low_cv_penalty: float = 0.3
    repeating_pattern_penalty: float = 0.2
    human_score_threshold: float = 0.5

    # Decision policy
    threshold_accept: float = 0.55
    threshold_reject: float = 1.1
    challenge_threshold: float = 0.9
    min_confidence_accept: float = 55
    min_confidence_challenge: float = 35
    bot_reject_score: float = 0.3
    challenge_liveness_floor: float = 0.4
    challenge_weights: Mapping[str, float] = field(default_factory=_default_challenge_weights)

    def __post_init__(self):
        # Weights passed in as plain dicts are copied into read-only views
        for name in ('feature_weights', 'challenge_weights'):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))

    @classmethod
    def from_env(cls) -> "ScoringConfig":
        """
        Build a config from defaults plus optional environment overrides.

        Recognized variables: KS_THRESHOLD_ACCEPT, KS_THRESHOLD_REJECT,
        KS_CHALLENGE_THRESHOLD, KS_MIN_CONFIDENCE_ACCEPT,
        KS_MIN_CONFIDENCE_CHALLENGE, KS_MIN_PROFILE_QUALITY.
        """
        config = cls()
        overrides = {}

        env_floats = {
            'threshold_accept': "KS_THRESHOLD_ACCEPT",
            'threshold_reject': "KS_THRESHOLD_REJECT",
            'challenge_threshold': "KS_CHALLENGE_THRESHOLD",
            'min_confidence_accept': "KS_MIN_CONFIDENCE_ACCEPT",
            'min_confidence_challenge': "KS_MIN_CONFIDENCE_CHALLENGE",
        }
        for name, var in env_floats.items():
            value = os.getenv(var)
            if value:
                overrides[name] = float(value)

        quality = os.getenv("KS_MIN_PROFILE_QUALITY")
        if quality:
            overrides['min_profile_quality'] = int(quality)

        if overrides:
            config = replace(config, **overrides)

        if not validate_config(config):
            raise ValueError("Invalid scoring thresholds in environment")

        return config


def validate_config(config: ScoringConfig) -> bool:
    """
    Validate that policy thresholds are in valid ranges and properly ordered.

    Returns:
        True if valid, False otherwise
    """
    if not (0.0 < config.threshold_accept < config.threshold_reject):
        return False
    if not (0.0 <= config.min_confidence_challenge <= config.min_confidence_accept <= 100.0):
        return False
    if not (0 <= config.min_profile_quality <= 100):
        return False
    if abs(sum(config.feature_weights.values()) - 1.0) > 1e-6:
        return False
    return True


DEFAULT_CONFIG = ScoringConfig()
