"""
Biometric profile building from calibration attempts.

This module implements:
- Per-position transposition of timing series across attempts
- Z-score outlier removal
- Mean / mean absolute deviation (MAD) statistics with small-sample smoothing
- Profile quality scoring from the coefficient of variation
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np

from config import DEFAULT_CONFIG, QUALITY_THRESHOLDS, ScoringConfig
from keystroke_features import CalibrationAttempt, TimingVector

logger = logging.getLogger(__name__)

FEATURE_TYPES = ('dwell', 'flight', 'dd')

_SERIES_FOR_FEATURE = {
    'dwell': 'dwell_times',
    'flight': 'flight_times',
    'dd': 'dd_latencies',
}


class InsufficientDataError(ValueError):
    """Raised when a profile is requested from zero valid calibration attempts."""


@dataclass
class FeatureStats:
    """Per-position statistics of one feature type."""
    mean: List[float] = field(default_factory=list)
    mad: List[float] = field(default_factory=list)
    min: List[float] = field(default_factory=list)
    max: List[float] = field(default_factory=list)

    def to_dict(self) -> Dict[str, List[float]]:
        return {
            'mean': list(self.mean),
            'mad': list(self.mad),
            'min': list(self.min),
            'max': list(self.max),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeatureStats":
        return cls(
            mean=[float(v) for v in data.get('mean', [])],
            mad=[float(v) for v in data.get('mad', [])],
            min=[float(v) for v in data.get('min', [])],
            max=[float(v) for v in data.get('max', [])],
        )


@dataclass
class BiometricProfile:
    """Statistical typing profile for one target text. Immutable after registration."""
    dwell: FeatureStats
    flight: FeatureStats
    dd: FeatureStats
    sample_count: int
    quality: int
    target_text: str
    text_length: int
    feature_quality: Dict[str, int] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)

    def feature(self, name: str) -> FeatureStats:
        return getattr(self, name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'dwell': self.dwell.to_dict(),
            'flight': self.flight.to_dict(),
            'dd': self.dd.to_dict(),
            'sample_count': self.sample_count,
            'quality': self.quality,
            'feature_quality': dict(self.feature_quality),
            'created_at': self.created_at.isoformat(),
            'target_text': self.target_text,
            'text_length': self.text_length,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BiometricProfile":
        created_at = data.get('created_at')
        return cls(
            dwell=FeatureStats.from_dict(data['dwell']),
            flight=FeatureStats.from_dict(data['flight']),
            dd=FeatureStats.from_dict(data['dd']),
            sample_count=int(data['sample_count']),
            quality=int(data['quality']),
            feature_quality=dict(data.get('feature_quality', {})),
            created_at=datetime.fromisoformat(created_at) if created_at else datetime.utcnow(),
            target_text=data.get('target_text', ''),
            text_length=int(data.get('text_length', len(data.get('target_text', '')))),
        )


def calculate_mad(values: Sequence[float], mean_value: Optional[float] = None) -> float:
    """Mean absolute deviation: average of |value - mean|."""
    if len(values) == 0:
        return 0.0
    arr = np.asarray(values, dtype=np.float64)
    m = arr.mean() if mean_value is None else mean_value
    return float(np.mean(np.abs(arr - m)))


def remove_outliers(values: Sequence[float], z_threshold: float = DEFAULT_CONFIG.outlier_z_threshold) -> List[float]:
    """
    Remove values whose z-score exceeds the threshold.

    Removal is skipped for fewer than 3 values or zero spread, where
    z-scores are meaningless.
    """
    if len(values) < 3:
        return list(values)

    arr = np.asarray(values, dtype=np.float64)
    s = arr.std()  # population std
    if s == 0:
        return list(values)

    z_scores = np.abs(arr - arr.mean()) / s
    kept = arr[z_scores <= z_threshold]
    if kept.size == 0:
        return list(values)
    return kept.tolist()


def transpose_series(series: Sequence[Sequence[float]]) -> List[List[float]]:
    """
    Turn per-attempt series into per-position lists.

    Ragged lengths are tolerated: each position collects values from the
    attempts long enough to reach it.
    """
    if not series:
        return []
    width = max(len(s) for s in series)
    return [[s[i] for s in series if i < len(s)] for i in range(width)]


def build_feature_stats(
    series: Sequence[Sequence[float]],
    sample_count: int,
    config: ScoringConfig = DEFAULT_CONFIG
) -> FeatureStats:
    """
    Calculate per-position statistics for one feature across attempts.

    Args:
        series: One timing series per calibration attempt
        sample_count: Number of attempts that contributed
        config: Scoring configuration

    Returns:
        FeatureStats with floored, small-sample smoothed MAD
    """
    stats = FeatureStats()

    flattened = [v for s in series for v in s]
    global_mad = calculate_mad(flattened)

    smoothing = 0.0
    if sample_count < config.mad_smoothing_samples:
        smoothing = min(
            (config.mad_smoothing_samples - sample_count) / config.mad_smoothing_samples,
            1.0
        ) * config.mad_smoothing_strength

    for position_values in transpose_series(series):
        values = remove_outliers(position_values, config.outlier_z_threshold)

        m = float(np.mean(values))
        mad = calculate_mad(values, m)
        if smoothing > 0:
            mad = (1.0 - smoothing) * mad + smoothing * global_mad
        mad = max(mad, config.min_mad_threshold)

        stats.mean.append(m)
        stats.mad.append(float(mad))
        stats.min.append(float(min(values)))
        stats.max.append(float(max(values)))

    return stats


def calculate_profile_quality(stats: FeatureStats) -> int:
    """
    Calculate quality (0-100) of one feature's statistics.

    Lower coefficient of variation (MAD / mean) means more consistent
    typing and a higher score.
    """
    means = np.asarray(stats.mean, dtype=np.float64)
    mads = np.asarray(stats.mad, dtype=np.float64)
    valid = means > 0
    if not np.any(valid):
        return 0

    avg_cv = float(np.mean(mads[valid] / means[valid]))
    quality = 100.0 / (1.0 + avg_cv) ** 1.5
    return int(round(float(np.clip(quality, 0.0, 100.0))))


def _timings_of(attempt: Union[CalibrationAttempt, TimingVector]) -> Optional[TimingVector]:
    if isinstance(attempt, CalibrationAttempt):
        return attempt.timings if attempt.is_valid else None
    return attempt


def build_profile(
    attempts: Sequence[Union[CalibrationAttempt, TimingVector]],
    target_text: str,
    config: ScoringConfig = DEFAULT_CONFIG
) -> BiometricProfile:
    """
    Build a complete biometric profile from calibration attempts.

    Args:
        attempts: Calibration attempts (invalid ones are skipped) or bare
            timing vectors
        target_text: Canonical text that was typed
        config: Scoring configuration

    Returns:
        BiometricProfile

    Raises:
        InsufficientDataError: If no valid attempts were supplied
    """
    timings = [t for t in (_timings_of(a) for a in attempts) if t is not None]
    if not timings:
        raise InsufficientDataError("No valid calibration attempts")

    sample_count = len(timings)
    feature_stats = {}
    feature_quality = {}
    for name in FEATURE_TYPES:
        series = [getattr(t, _SERIES_FOR_FEATURE[name]) for t in timings]
        feature_stats[name] = build_feature_stats(series, sample_count, config)
        feature_quality[name] = calculate_profile_quality(feature_stats[name])

    weights = config.feature_weights
    overall_quality = int(round(sum(feature_quality[name] * weights[name] for name in FEATURE_TYPES)))

    logger.debug(
        f"Profile quality breakdown: dwell={feature_quality['dwell']}, "
        f"flight={feature_quality['flight']}, dd={feature_quality['dd']}, overall={overall_quality}"
    )

    return BiometricProfile(
        dwell=feature_stats['dwell'],
        flight=feature_stats['flight'],
        dd=feature_stats['dd'],
        sample_count=sample_count,
        quality=overall_quality,
        feature_quality=feature_quality,
        target_text=target_text,
        text_length=len(target_text),
    )


def is_profile_acceptable(profile: BiometricProfile, config: ScoringConfig = DEFAULT_CONFIG) -> bool:
    """Registration policy: profiles below the quality floor must be re-collected."""
    return profile.quality >= config.min_profile_quality


def get_quality_label(quality: float) -> str:
    """Human-readable label for a quality score."""
    if quality >= QUALITY_THRESHOLDS['excellent']:
        return "excellent"
    if quality >= QUALITY_THRESHOLDS['good']:
        return "good"
    if quality >= QUALITY_THRESHOLDS['acceptable']:
        return "acceptable"
    return "poor"
