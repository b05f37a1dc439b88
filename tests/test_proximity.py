"""
Unit tests for RSSI batch filtering and distance estimation.
"""

import math
from typing import Optional, get_type_hints

import pytest

import config
from proximity import estimate_distance, format_distance, representative_rssi


class TestRepresentativeRssi:
    """Tests for the mode filter."""

    def test_mode_wins_over_outliers(self):
        assert representative_rssi([-60, -60, -61]) == -60
        assert representative_rssi([-70, -45, -70, -95, -70]) == -70

    def test_tie_goes_to_strongest_signal(self):
        assert representative_rssi([-60, -60, -61, -61]) == -60
        assert representative_rssi([-61, -75, -75, -61]) == -61

    def test_single_sample(self):
        assert representative_rssi([-42]) == -42

    def test_empty_batch_rejected(self):
        with pytest.raises(ValueError):
            representative_rssi([])


class TestEstimateDistance:
    """Tests for the path-loss model."""

    def test_reference_example(self):
        distance = estimate_distance([-50] * 20, tx_power=-12, path_loss_exponent=20.0)
        assert distance == pytest.approx(10 ** 1.9)
        assert distance == pytest.approx(79.43, abs=0.01)

    def test_uses_mode_not_mean(self):
        samples = [-50] * 5 + [-90]
        assert estimate_distance(samples, -12, 20.0) == pytest.approx(10 ** 1.9)

    def test_exponent_is_configurable(self):
        near = estimate_distance([-50], -12, 20.0)
        flatter = estimate_distance([-50], -12, 21.5)
        assert flatter < near

    def test_monotonic_in_rssi(self):
        distances = [estimate_distance([rssi], -12, 20.0) for rssi in range(-120, 10)]
        assert all(a >= b for a, b in zip(distances, distances[1:]))

    def test_finite_and_non_negative(self):
        for samples in ([-127], [20], [-128] * 3, [127]):
            distance = estimate_distance(samples, -128, 0.5)
            assert distance >= 0
            assert math.isfinite(distance)

    def test_overflow_capped(self):
        distance = estimate_distance([-128], 127, 0.5)
        assert math.isfinite(distance)
        assert distance > estimate_distance([-100], 127, 0.5)

    def test_empty_batch_rejected(self):
        with pytest.raises(ValueError):
            estimate_distance([], -12, 20.0)

    def test_bad_exponent_rejected(self):
        with pytest.raises(ValueError):
            estimate_distance([-50], -12, 0)


class TestFormatDistance:
    def test_natural_units(self):
        assert format_distance(7.5) == "7.5 mm"
        assert format_distance(79.43) == "7.94 cm"
        assert format_distance(3000) == "3 m"
        assert format_distance(7943.28) == "7.94 m"


def test_exponent_defaults_to_config():
    assert get_type_hints(estimate_distance)["path_loss_exponent"] == Optional[float]
    assert estimate_distance([-50], -12) == estimate_distance([-50], -12, config.PATH_LOSS_EXPONENT)
