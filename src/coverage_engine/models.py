"""
Coverage data model

Every structure here is immutable. Pipeline stages replace cells
wholesale instead of mutating them, and a CoverageGrid never changes
after construction.
"""

import math
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterator, Optional, Sequence, Tuple

import numpy as np

from common.constants import FEET_TO_METERS, UNKNOWN_COVERAGE, NO_SIGNAL_DBM
from common.geodesy import Bounds, GeoPoint
from analysis.peer_network_analyzer import PeerLocation, NetworkPeer, NetworkCoverage

__all__ = [
    'Bounds', 'GeoPoint', 'PeerLocation', 'NetworkPeer', 'NetworkCoverage',
    'CoverageRequest', 'CoveragePoint', 'CoverageGrid', 'CoverageStatus', 'CoverageProgress',
]

MAX_ZOOM_LEVEL = 22


class CoverageStatus(Enum):
    """Outcome of the run that produced a grid"""
    COMPLETE = "complete"
    PARTIAL = "partial"  # intermediate snapshot
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(frozen=True)
class CoverageRequest:
    """Parameters of one coverage calculation"""
    center: GeoPoint
    radius_m: float
    zoom_level: int
    resolution_m: float  # advisory, may be coarsened
    user_antenna_height_ft: float
    receiving_antenna_height_ft: float
    max_peer_distance_m: float
    include_mesh_extension: bool
    viewport_bounds: Optional[Bounds] = None

    def __post_init__(self):
        if not -90.0 <= self.center.lat <= 90.0:
            raise ValueError(f"Latitude out of range: {self.center.lat}")
        if not -180.0 <= self.center.lon <= 180.0:
            raise ValueError(f"Longitude out of range: {self.center.lon}")
        if not (self.radius_m > 0 and math.isfinite(self.radius_m)):
            raise ValueError(f"Radius must be positive, got {self.radius_m}")
        if not 0 <= self.zoom_level <= MAX_ZOOM_LEVEL:
            raise ValueError(f"Zoom level must be within 0-{MAX_ZOOM_LEVEL}, got {self.zoom_level}")
        if not self.resolution_m > 0:
            raise ValueError(f"Resolution must be positive, got {self.resolution_m}")
        if self.user_antenna_height_ft < 0 or self.receiving_antenna_height_ft < 0:
            raise ValueError("Antenna heights must not be negative")
        if not self.max_peer_distance_m > 0:
            raise ValueError(f"Maximum peer distance must be positive, got {self.max_peer_distance_m}")

    @property
    def user_antenna_height_m(self) -> float:
        return self.user_antenna_height_ft * FEET_TO_METERS

    @property
    def receiving_antenna_height_m(self) -> float:
        return self.receiving_antenna_height_ft * FEET_TO_METERS


@dataclass(frozen=True)
class CoveragePoint:
    """Coverage state of one grid cell"""
    lat: float
    lon: float
    coverage_probability: float  # -1 (unknown) or [0, 1]
    signal_strength: float  # dBm
    fresnel_blockage: float = 0.0
    terrain_shadow: float = 0.0
    contributing_peers: FrozenSet[str] = frozenset()
    distance_to_nearest_peer: Optional[float] = None  # meters

    def __post_init__(self):
        p = self.coverage_probability
        if p != UNKNOWN_COVERAGE and not 0.0 <= p <= 1.0:
            raise ValueError(f"Coverage probability must be -1 or within [0, 1], got {p}")
        if not 0.0 <= self.fresnel_blockage <= 1.0:
            raise ValueError(f"Fresnel blockage must be within [0, 1], got {self.fresnel_blockage}")
        if not 0.0 <= self.terrain_shadow <= 1.0:
            raise ValueError(f"Terrain shadow must be within [0, 1], got {self.terrain_shadow}")

    @property
    def is_unknown(self) -> bool:
        return self.coverage_probability == UNKNOWN_COVERAGE

    @property
    def location(self) -> GeoPoint:
        return GeoPoint(self.lat, self.lon)

    @classmethod
    def unknown(cls, lat: float, lon: float) -> 'CoveragePoint':
        """Cell whose coverage cannot be determined without terrain data"""
        return cls(lat, lon, UNKNOWN_COVERAGE, NO_SIGNAL_DBM)

    @classmethod
    def zero(cls, lat: float, lon: float, distance: Optional[float] = None) -> 'CoveragePoint':
        """Cell with confirmed absence of coverage"""
        return cls(lat, lon, 0.0, NO_SIGNAL_DBM, distance_to_nearest_peer=distance)

    def with_coverage(self, **changes) -> 'CoveragePoint':
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lat': self.lat,
            'lon': self.lon,
            'p': self.coverage_probability,
            'signal': self.signal_strength,
            'blockage': self.fresnel_blockage,
            'shadow': self.terrain_shadow,
            'peers': sorted(self.contributing_peers),
            'nearest_peer_m': self.distance_to_nearest_peer,
        }


@dataclass(frozen=True)
class CoverageGrid:
    """Coverage probabilities over an evaluation grid (row 0 is the southern edge)"""
    bounds: Bounds
    resolution: float  # realized cell spacing (meters)
    coverage_data: Tuple[Tuple[CoveragePoint, ...], ...]
    timestamp: float
    zoom_level: int
    status: CoverageStatus = CoverageStatus.COMPLETE

    @classmethod
    def from_rows(cls, bounds: Bounds, resolution: float, rows: Sequence[Sequence[CoveragePoint]],
                  zoom_level: int, status: CoverageStatus = CoverageStatus.COMPLETE,
                  timestamp: Optional[float] = None) -> 'CoverageGrid':
        return cls(
            bounds=bounds,
            resolution=resolution,
            coverage_data=tuple(tuple(row) for row in rows),
            timestamp=time.time() if timestamp is None else timestamp,
            zoom_level=zoom_level,
            status=status
        )

    @property
    def rows(self) -> int:
        return len(self.coverage_data)

    @property
    def cols(self) -> int:
        return len(self.coverage_data[0]) if self.coverage_data else 0

    def point_at(self, row: int, col: int) -> CoveragePoint:
        return self.coverage_data[row][col]

    def points(self) -> Iterator[CoveragePoint]:
        for row in self.coverage_data:
            yield from row

    def probabilities(self) -> np.ndarray:
        """Coverage probabilities as a (rows, cols) array"""
        return np.array([[p.coverage_probability for p in row] for row in self.coverage_data],
                        dtype=float).reshape(self.rows, self.cols)

    @property
    def unknown_count(self) -> int:
        return sum(1 for p in self.points() if p.is_unknown)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready representation"""
        return {
            'bounds': {
                'north': self.bounds.north,
                'south': self.bounds.south,
                'east': self.bounds.east,
                'west': self.bounds.west,
            },
            'resolution': self.resolution,
            'zoom_level': self.zoom_level,
            'timestamp': self.timestamp,
            'status': self.status.value,
            'rows': [[p.to_dict() for p in row] for row in self.coverage_data],
        }


@dataclass(frozen=True)
class CoverageProgress:
    """Progress event of a running calculation"""
    fraction: float
    message: str
    stage: str
