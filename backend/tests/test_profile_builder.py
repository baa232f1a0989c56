"""
Unit tests for biometric profile building.
"""
import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import itertools
import pytest
from config import DEFAULT_CONFIG, ScoringConfig
from keystroke_features import CalibrationAttempt, TimingVector
from profile_builder import (
    BiometricProfile,
    FeatureStats,
    InsufficientDataError,
    build_feature_stats,
    build_profile,
    calculate_mad,
    calculate_profile_quality,
    get_quality_label,
    is_profile_acceptable,
    remove_outliers,
    transpose_series,
)
from sample_typing import calibration_timings


MANTRA = "the quick brown fox"


class TestStatisticsHelpers:
    """Test MAD, outlier removal and transposition."""

    def test_calculate_mad(self):
        assert calculate_mad([1.0, 2.0, 3.0, 4.0]) == pytest.approx(1.0)

    def test_calculate_mad_empty(self):
        assert calculate_mad([]) == 0.0

    def test_outliers_skipped_for_small_samples(self):
        assert remove_outliers([10.0, 5000.0]) == [10.0, 5000.0]

    def test_outliers_skipped_without_spread(self):
        assert remove_outliers([100.0, 100.0, 100.0]) == [100.0, 100.0, 100.0]

    def test_extreme_value_removed(self):
        """A value three standard deviations out is dropped."""
        values = [100.0] * 9 + [1000.0]
        cleaned = remove_outliers(values)
        assert cleaned == [100.0] * 9

    def test_transpose_ragged(self):
        """Positions collect values from attempts long enough to reach them."""
        assert transpose_series([[1, 2, 3], [4, 5]]) == [[1, 4], [2, 5], [3]]

    def test_transpose_empty(self):
        assert transpose_series([]) == []


class TestFeatureStats:
    """Test per-position statistics."""

    def test_mad_floor(self):
        """Near-constant positions get the minimum MAD."""
        series = [[120.0, 80.0], [121.0, 81.0], [119.0, 79.0]]
        stats = build_feature_stats(series, sample_count=3)
        assert stats.mean == pytest.approx([120.0, 80.0])
        assert stats.mad == [DEFAULT_CONFIG.min_mad_threshold] * 2
        assert stats.min == [119.0, 79.0]
        assert stats.max == [121.0, 81.0]

    def test_no_smoothing_with_enough_samples(self):
        series = [[100.0], [200.0]] * 4
        stats = build_feature_stats(series, sample_count=8)
        assert stats.mad[0] == pytest.approx(50.0)

    def test_small_sample_smoothing(self):
        """With 5 samples MAD moves 11.25% of the way to the global MAD."""
        series = [[100.0, 300.0], [200.0, 300.0], [100.0, 300.0], [200.0, 300.0], [100.0, 300.0]]
        stats = build_feature_stats(series, sample_count=5)

        # position MAD 48, global MAD 80, weight (8 - 5) / 8 * 0.3
        assert stats.mad[0] == pytest.approx(0.8875 * 48.0 + 0.1125 * 80.0)
        assert stats.mad[1] == DEFAULT_CONFIG.min_mad_threshold

    def test_custom_floor(self):
        config = ScoringConfig(min_mad_threshold=5.0)
        stats = build_feature_stats([[100.0], [101.0], [102.0]], sample_count=3, config=config)
        assert stats.mad[0] == 5.0


class TestProfileQuality:
    """Test quality scoring."""

    def test_quality_formula(self):
        stats = FeatureStats(mean=[100.0, 200.0], mad=[50.0, 50.0], min=[0, 0], max=[0, 0])
        # avg CV = 0.375 → 100 / 1.375^1.5
        assert calculate_profile_quality(stats) == 62

    def test_quality_without_valid_positions(self):
        stats = FeatureStats(mean=[0.0, -20.0], mad=[40.0, 40.0], min=[0, 0], max=[0, 0])
        assert calculate_profile_quality(stats) == 0

    def test_negative_means_skipped(self):
        """Positions with non-positive mean do not count toward CV."""
        stats = FeatureStats(mean=[100.0, -50.0], mad=[50.0, 40.0], min=[0, 0], max=[0, 0])
        assert calculate_profile_quality(stats) == round(100 / 1.5 ** 1.5)

    def test_quality_non_increasing_with_noise(self):
        """More per-position spread never raises quality when means are fixed."""
        qualities = []
        for noise in [0.0, 20.0, 45.0, 80.0, 120.0, 180.0]:
            attempts = []
            for sign in [-1, 1, -1, 1]:
                value = 200.0 + sign * noise
                attempts.append(TimingVector(
                    dwell_times=[value] * 6,
                    flight_times=[value] * 5,
                    dd_latencies=[value] * 5,
                ))
            qualities.append(build_profile(attempts, "abcdef").quality)

        assert all(a >= b for a, b in zip(qualities, qualities[1:]))
        assert qualities[0] > qualities[-1]

    def test_overall_quality_weighted(self):
        profile = build_profile(calibration_timings(MANTRA), MANTRA)
        q = profile.feature_quality
        expected = round(q['dwell'] * 0.30 + q['flight'] * 0.50 + q['dd'] * 0.20)
        assert profile.quality == expected
        assert 0 <= profile.quality <= 100


class TestBuildProfile:
    """Test complete profile building."""

    def test_no_attempts_raises(self):
        with pytest.raises(InsufficientDataError):
            build_profile([], MANTRA)

    def test_only_invalid_attempts_raises(self):
        attempts = [CalibrationAttempt(timings=t, is_valid=False) for t in calibration_timings(MANTRA)]
        with pytest.raises(InsufficientDataError):
            build_profile(attempts, MANTRA)

    def test_invalid_attempts_skipped(self):
        timings = calibration_timings(MANTRA)
        attempts = [CalibrationAttempt(timings=t) for t in timings]
        attempts.append(CalibrationAttempt(timings=TimingVector(dwell_times=[5000.0]), is_valid=False))

        profile = build_profile(attempts, MANTRA)
        assert profile.sample_count == 5

    def test_profile_shape(self):
        profile = build_profile(calibration_timings(MANTRA), MANTRA)
        n = len(MANTRA)
        assert profile.text_length == n
        assert profile.target_text == MANTRA
        assert len(profile.dwell.mean) == n
        assert len(profile.flight.mean) == n - 1
        assert len(profile.dd.mad) == n - 1
        assert all(m >= 40.0 for m in profile.dwell.mad + profile.flight.mad + profile.dd.mad)

    def test_scenario_single_position(self):
        """Five dwell samples around 123 ms: mean 123, MAD floored at 40."""
        attempts = [TimingVector(dwell_times=[v]) for v in [120.0, 125.0, 118.0, 130.0, 122.0]]
        profile = build_profile(attempts, "a")

        assert profile.dwell.mean[0] == pytest.approx(123.0)
        assert profile.dwell.mad[0] == 40.0
        assert profile.flight.mean == []

    def test_order_invariance(self):
        """Permuting the calibration attempts yields the same profile."""
        timings = calibration_timings(MANTRA)
        reference = build_profile(timings, MANTRA)

        for perm in itertools.islice(itertools.permutations(timings), 0, 120, 17):
            profile = build_profile(list(perm), MANTRA)
            for name in ('dwell', 'flight', 'dd'):
                ref_stats = reference.feature(name)
                stats = profile.feature(name)
                assert stats.mean == pytest.approx(ref_stats.mean)
                assert stats.mad == pytest.approx(ref_stats.mad)
                assert stats.min == ref_stats.min
                assert stats.max == ref_stats.max
            assert profile.quality == reference.quality

    def test_dict_round_trip(self):
        profile = build_profile(calibration_timings(MANTRA), MANTRA)
        restored = BiometricProfile.from_dict(profile.to_dict())
        assert restored == profile


class TestQualityPolicy:

    def test_acceptable_profile(self):
        profile = build_profile(calibration_timings(MANTRA), MANTRA)
        assert is_profile_acceptable(profile)

    def test_low_quality_rejected(self):
        """Very short timings give large relative spread and a low score."""
        attempts = [
            TimingVector(
                dwell_times=[25.0 + j] * 6,
                flight_times=[15.0 + j] * 5,
                dd_latencies=[40.0 + j] * 5,
            )
            for j in range(5)
        ]
        profile = build_profile(attempts, "abcdef")
        assert profile.quality < DEFAULT_CONFIG.min_profile_quality
        assert not is_profile_acceptable(profile)

    @pytest.mark.parametrize("quality,label", [
        (95, "excellent"),
        (80, "excellent"),
        (65, "good"),
        (40, "acceptable"),
        (39, "poor"),
        (0, "poor"),
    ])
    def test_quality_labels(self, quality, label):
        assert get_quality_label(quality) == label
