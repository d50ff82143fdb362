"""
Terrain data structures

Profiles are rebuilt per path query and never cached; shadow results and
per-cell terrain summaries are the cached artifacts.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class SamplingMethod(Enum):
    """How a cell's terrain summary was produced"""
    CENTER = "center"  # single center sample
    LIMITED_DETAILED = "limited_detailed"  # center plus four corners
    LOWER_ZOOM = "lower_zoom"  # resolved from the next lower zoom level
    FALLBACK = "fallback"  # no terrain data, default elevation


@dataclass(frozen=True)
class TerrainPoint:
    lat: float
    lon: float
    elevation: float  # meters
    distance: float  # meters from the start of the path


@dataclass(frozen=True)
class TerrainProfile:
    """Ordered elevation samples along a great circle path"""
    points: List[TerrainPoint] = field(default_factory=list)
    total_distance: float = 0.0

    @property
    def max_elevation(self) -> float:
        return max((p.elevation for p in self.points), default=0.0)

    @property
    def min_elevation(self) -> float:
        return min((p.elevation for p in self.points), default=0.0)

    def __len__(self) -> int:
        return len(self.points)


@dataclass(frozen=True)
class TerrainCellData:
    """Terrain summary for one evaluation cell"""
    average_elevation: float
    max_elevation: float
    min_elevation: float
    elevation_variation: float
    sampling_method: SamplingMethod

    @property
    def has_data(self) -> bool:
        return self.sampling_method is not SamplingMethod.FALLBACK

    @classmethod
    def fallback(cls, elevation: float = 0.0) -> 'TerrainCellData':
        return cls(elevation, elevation, elevation, 0.0, SamplingMethod.FALLBACK)

    @classmethod
    def single(cls, elevation: float,
               method: SamplingMethod = SamplingMethod.CENTER) -> 'TerrainCellData':
        return cls(elevation, elevation, elevation, 0.0, method)


@dataclass(frozen=True)
class ShadowResult:
    """Terrain shadow assessment for one path"""
    in_shadow: bool
    shadow_depth: float  # [0, 1]
    fresnel_blockage: float  # [0, 1]
    line_of_sight_blocked: bool
    obstruction_distance: Optional[float] = None  # meters from origin, when known

    @classmethod
    def clear(cls, fresnel_blockage: float = 0.0) -> 'ShadowResult':
        return cls(False, 0.0, fresnel_blockage, False)


class TerrainDataUnavailableError(Exception):
    """No terrain tile covers the requested location"""
