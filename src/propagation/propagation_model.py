"""
Mesh Radio Propagation Model

Maps path geometry to received signal strength and coverage probability:
- Free space path loss at the configured RF frequency
- Fresnel zone radius (precomputed lookup table)
- Stepped penalty for partial Fresnel zone blockage
- Logistic coverage probability over receiver margin

The model is pure: no I/O and no mutable state after construction, so a
single instance can be shared by every worker of a coverage run.

References:
- ITU-R P.525: Calculation of free-space attenuation
- ITU-R P.526: Propagation by diffraction (Fresnel zone clearance)
"""

import math
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from common.config import PropagationConfig, get_config
from common.constants import SPEED_OF_LIGHT, FSPL_CONSTANT_DB

logger = logging.getLogger(__name__)

# (upper blockage bound, penalty dB); blockage at or above the last bound
# receives MAX_BLOCKAGE_PENALTY_DB
BLOCKAGE_PENALTY_STEPS: Tuple[Tuple[float, float], ...] = (
    (0.05, 0.0),
    (0.15, 2.0),
    (0.25, 4.0),
    (0.35, 6.0),
    (0.45, 8.0),
    (0.55, 10.0),
    (0.65, 12.0),
    (0.75, 14.0),
)
MAX_BLOCKAGE_PENALTY_DB = 18.0

# Largest exponent passed to math.exp in the logistic curve
_MAX_EXPONENT = 500.0


@dataclass(frozen=True)
class LinkEstimate:
    """Signal estimate for one transmitter/receiver path."""
    distance_m: float
    path_loss_db: float
    blockage_penalty_db: float
    signal_dbm: float
    probability: float


class PropagationModel:
    """
    Free-space propagation model with Fresnel blockage penalties.

    Example:
        model = PropagationModel()

        signal = model.signal_strength(distance_m=2500, fresnel_blockage=0.2)
        probability = model.coverage_probability(signal)
    """

    def __init__(self, config: Optional[PropagationConfig] = None):
        """
        Initialize the model and build the Fresnel radius table

        Args:
            config: Propagation configuration (defaults from get_config())
        """
        self.config = config or get_config().propagation

        self.frequency_hz = self.config.frequency_hz
        self.wavelength_m = SPEED_OF_LIGHT / self.frequency_hz
        self.base_power_dbm = self.config.base_power_dbm

        # 20*log10(f) is constant for the configured frequency
        self._frequency_term_db = 20 * math.log10(self.frequency_hz) + FSPL_CONSTANT_DB

        self._table_step = self.config.fresnel_table_step_m
        self._table_max = self.config.fresnel_table_max_m
        distances = np.arange(0.0, self._table_max + self._table_step, self._table_step)
        self._fresnel_table = self._fresnel_radius_direct(distances)

        logger.debug(
            f"PropagationModel ready: f={self.frequency_hz / 1e6:.1f} MHz, "
            f"lambda={self.wavelength_m:.3f} m, {len(self._fresnel_table)} Fresnel table entries"
        )

    def _fresnel_radius_direct(self, distance_m):
        """60% first Fresnel zone radius at the path midpoint (scalar or array)."""
        # r = sqrt(lambda*d1*d2/(d1+d2)) with d1 = d2 = d/2 reduces to sqrt(lambda*d)/2
        return self.config.fresnel_clearance_factor * 0.5 * np.sqrt(
            self.wavelength_m * np.maximum(distance_m, 0.0)
        )

    def fresnel_radius(self, distance_m: float) -> float:
        """
        Clearance radius (60% of the first Fresnel zone) at the path midpoint

        Served from the lookup table with linear interpolation between
        entries; distances beyond the table are computed directly.

        Args:
            distance_m: Total path length (meters)

        Returns:
            Radius in meters
        """
        if distance_m <= 0.0:
            return 0.0
        if distance_m >= self._table_max:
            return float(self._fresnel_radius_direct(distance_m))

        position = distance_m / self._table_step
        index = int(position)
        frac = position - index
        lower = self._fresnel_table[index]
        upper = self._fresnel_table[index + 1]
        return float(lower + (upper - lower) * frac)

    def fresnel_radius_at(self, d1_m: float, d2_m: float) -> float:
        """
        Clearance radius at a point d1_m from one end and d2_m from the other

        sqrt(lambda*d1*d2/D) equals the midpoint radius of a path of length
        4*d1*d2/D, so every profile sample is served from the table.

        Args:
            d1_m: Distance from the transmitter (meters)
            d2_m: Distance to the receiver (meters)

        Returns:
            Radius in meters (0 at either endpoint)
        """
        total = d1_m + d2_m
        if d1_m <= 0.0 or d2_m <= 0.0 or total <= 0.0:
            return 0.0
        return self.fresnel_radius(4.0 * d1_m * d2_m / total)

    def free_space_path_loss(self, distance_m: float) -> float:
        """
        Free space path loss in dB

        FSPL = 20*log10(d) + 20*log10(f) - 147.55 (d in m, f in Hz). Distances
        below the configured minimum are clamped so co-located points stay finite.
        """
        distance_m = max(distance_m, self.config.min_path_distance_m)
        return 20 * math.log10(distance_m) + self._frequency_term_db

    @staticmethod
    def blockage_penalty(fresnel_blockage: float) -> float:
        """Stepped signal penalty (dB) for a Fresnel blockage fraction in [0, 1]"""
        for upper, penalty in BLOCKAGE_PENALTY_STEPS:
            if fresnel_blockage < upper:
                return penalty
        return MAX_BLOCKAGE_PENALTY_DB

    def signal_strength(self, distance_m: float, fresnel_blockage: float = 0.0,
                        base_power_dbm: Optional[float] = None) -> float:
        """
        Received signal strength

        Args:
            distance_m: Path length (meters)
            fresnel_blockage: Fraction of the Fresnel zone obstructed [0, 1]
            base_power_dbm: Transmit power (defaults to the configured base power)

        Returns:
            Signal strength in dBm
        """
        power = self.base_power_dbm if base_power_dbm is None else base_power_dbm
        return (power -
                self.free_space_path_loss(distance_m) -
                self.blockage_penalty(fresnel_blockage))

    def coverage_probability(self, signal_dbm: float) -> float:
        """
        Probability of successful reception for a signal strength

        Logistic curve over the margin above receiver sensitivity, clamped
        to [min_probability, max_probability].
        """
        margin = signal_dbm - self.config.receiver_sensitivity_dbm
        exponent = -self.config.probability_slope * (margin - self.config.probability_midpoint_db)
        exponent = max(-_MAX_EXPONENT, min(_MAX_EXPONENT, exponent))
        probability = 1.0 / (1.0 + math.exp(exponent))
        return max(self.config.min_probability, min(self.config.max_probability, probability))

    def estimate(self, distance_m: float, fresnel_blockage: float = 0.0,
                 base_power_dbm: Optional[float] = None) -> LinkEstimate:
        """Full link estimate for a path"""
        signal = self.signal_strength(distance_m, fresnel_blockage, base_power_dbm)
        return LinkEstimate(
            distance_m=distance_m,
            path_loss_db=self.free_space_path_loss(distance_m),
            blockage_penalty_db=self.blockage_penalty(fresnel_blockage),
            signal_dbm=signal,
            probability=self.coverage_probability(signal),
        )
