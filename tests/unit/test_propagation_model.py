"""
Unit Tests for the Propagation Model

Tests cover:
- Free space path loss at 915 MHz
- Fresnel radius lookup table against the direct formula
- Stepped blockage penalties
- Logistic coverage probability and its clamps
"""

import math
import pytest
import numpy as np
import sys
from unittest.mock import patch
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / 'src'))

from common.config import PropagationConfig
from common.constants import SPEED_OF_LIGHT
from propagation.propagation_model import (
    PropagationModel, LinkEstimate, MAX_BLOCKAGE_PENALTY_DB
)


@pytest.fixture
def model():
    return PropagationModel(PropagationConfig())


class TestPathLoss:
    """Test free space path loss"""

    def test_fspl_one_kilometer(self, model):
        """Test FSPL at 1 km, 915 MHz is about 91.7 dB"""
        expected = 20 * math.log10(1000.0) + 20 * math.log10(915e6) - 147.55
        assert model.free_space_path_loss(1000.0) == pytest.approx(expected)
        assert model.free_space_path_loss(1000.0) == pytest.approx(91.68, abs=0.01)

    def test_fspl_six_db_per_doubling(self, model):
        """Test doubling distance adds 6.02 dB"""
        delta = model.free_space_path_loss(2000.0) - model.free_space_path_loss(1000.0)
        assert delta == pytest.approx(20 * math.log10(2.0))

    def test_zero_distance_clamped(self, model):
        """Test co-located points give a finite loss"""
        assert model.free_space_path_loss(0.0) == model.free_space_path_loss(1.0)
        assert math.isfinite(model.signal_strength(0.0))


class TestFresnel:
    """Test Fresnel zone radii"""

    def test_wavelength(self, model):
        assert model.wavelength_m == pytest.approx(SPEED_OF_LIGHT / 915e6)

    @pytest.mark.parametrize("distance", [1234.5, 2550.0, 10000.0, 49999.0])
    def test_table_matches_formula(self, model, distance):
        """Test interpolated table value against the closed form"""
        direct = 0.6 * math.sqrt(model.wavelength_m * (distance / 2) ** 2 / distance)
        assert model.fresnel_radius(distance) == pytest.approx(direct, rel=2e-3)

    def test_beyond_table_computed_directly(self, model):
        distance = 80000.0
        direct = 0.6 * 0.5 * math.sqrt(model.wavelength_m * distance)
        assert model.fresnel_radius(distance) == pytest.approx(direct)

    def test_zero_distance(self, model):
        assert model.fresnel_radius(0.0) == 0.0

    def test_radius_at_midpoint_matches_table(self, model):
        """Test the general radius agrees with the midpoint table"""
        assert model.fresnel_radius_at(500.0, 500.0) == pytest.approx(model.fresnel_radius(1000.0), rel=1e-6)

    def test_radius_at_endpoints_is_zero(self, model):
        assert model.fresnel_radius_at(0.0, 1000.0) == 0.0
        assert model.fresnel_radius_at(1000.0, 0.0) == 0.0

    def test_radius_largest_at_midpoint(self, model):
        radii = [model.fresnel_radius_at(d, 1000.0 - d) for d in np.linspace(50, 950, 19)]
        assert max(radii) == pytest.approx(model.fresnel_radius_at(500.0, 500.0))

    def test_table_non_decreasing(self, model):
        """Test radii never shrink with distance across the table and beyond it"""
        radii = [model.fresnel_radius(d) for d in np.linspace(0.0, 60000.0, 1201)]
        assert all(a <= b + 1e-9 for a, b in zip(radii, radii[1:]))

    def test_table_follows_square_root_law(self, model):
        """Test quadrupling the distance doubles the radius and growth flattens"""
        for distance in (500.0, 2000.0, 10000.0):
            assert model.fresnel_radius(4 * distance) == pytest.approx(
                2 * model.fresnel_radius(distance), rel=2e-3
            )

        steps = np.diff([model.fresnel_radius(d) for d in (1000.0, 11000.0, 21000.0, 31000.0, 41000.0)])
        assert all(a > b for a, b in zip(steps, steps[1:]))

    @pytest.mark.parametrize("d1,d2", [(120.0, 4880.0), (1500.0, 3500.0), (7000.0, 30000.0)])
    def test_radius_at_matches_closed_form(self, model, d1, d2):
        """Test off-midpoint radii served from the table match sqrt(lambda*d1*d2/D)"""
        direct = 0.6 * math.sqrt(model.wavelength_m * d1 * d2 / (d1 + d2))
        assert model.fresnel_radius_at(d1, d2) == pytest.approx(direct, rel=2e-3)

    def test_radius_at_uses_table(self, model):
        """Test general radii are looked up through the midpoint table"""
        with patch.object(model, 'fresnel_radius', wraps=model.fresnel_radius) as lookup:
            model.fresnel_radius_at(1500.0, 3500.0)

        lookup.assert_called_once_with(pytest.approx(4.0 * 1500.0 * 3500.0 / 5000.0))


class TestBlockagePenalty:
    """Test stepped blockage penalties"""

    @pytest.mark.parametrize("blockage,penalty", [
        (0.0, 0.0), (0.04, 0.0), (0.05, 2.0), (0.1, 2.0), (0.2, 4.0),
        (0.3, 6.0), (0.4, 8.0), (0.5, 10.0), (0.6, 12.0), (0.7, 14.0),
        (0.75, MAX_BLOCKAGE_PENALTY_DB), (1.0, MAX_BLOCKAGE_PENALTY_DB),
    ])
    def test_penalty_steps(self, blockage, penalty):
        assert PropagationModel.blockage_penalty(blockage) == penalty

    def test_penalty_monotonic(self):
        values = [PropagationModel.blockage_penalty(b) for b in np.linspace(0, 1, 101)]
        assert all(a <= b for a, b in zip(values, values[1:]))

    def test_signal_includes_penalty(self, model):
        clear = model.signal_strength(1000.0, 0.0)
        blocked = model.signal_strength(1000.0, 1.0)
        assert clear - blocked == pytest.approx(MAX_BLOCKAGE_PENALTY_DB)


class TestCoverageProbability:
    """Test the logistic probability curve"""

    def test_midpoint(self, model):
        """Test probability is 0.5 at 10 dB margin"""
        assert model.coverage_probability(-120.0) == pytest.approx(0.5)

    def test_clamped_low(self, model):
        assert model.coverage_probability(-200.0) == 0.05

    def test_clamped_high(self, model):
        assert model.coverage_probability(100.0) == 1.0

    def test_extreme_inputs_do_not_overflow(self, model):
        assert model.coverage_probability(-1e6) == 0.05
        assert model.coverage_probability(1e6) == 1.0

    def test_monotonic_in_signal(self, model):
        values = [model.coverage_probability(s) for s in range(-160, 0, 2)]
        assert all(a <= b for a, b in zip(values, values[1:]))

    def test_short_link_is_certain(self, model):
        """Test a clear 500 m link is essentially certain"""
        assert model.coverage_probability(model.signal_strength(500.0)) > 0.99

    def test_probability_falls_with_distance(self, model):
        near = model.coverage_probability(model.signal_strength(50000.0))
        far = model.coverage_probability(model.signal_strength(160934.0))
        assert near > 0.5 > far


class TestLinkEstimate:
    """Test combined link estimates"""

    def test_estimate_fields(self, model):
        estimate = model.estimate(2000.0, 0.3)
        assert isinstance(estimate, LinkEstimate)
        assert estimate.blockage_penalty_db == 6.0
        assert estimate.signal_dbm == pytest.approx(model.signal_strength(2000.0, 0.3))
        assert estimate.probability == pytest.approx(model.coverage_probability(estimate.signal_dbm))

    def test_custom_base_power(self, model):
        assert (model.signal_strength(1000.0, base_power_dbm=20.0)
                - model.signal_strength(1000.0)) == pytest.approx(6.0)
