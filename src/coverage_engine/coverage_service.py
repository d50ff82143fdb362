"""
Coverage Service

Session-level front end for the coverage calculator: wires the engine
components together, caches recent results and answers point and
summary queries against the latest grid.
"""

import asyncio
import time
from dataclasses import dataclass, asdict
from typing import Dict, Hashable, Optional, Tuple

from common.cache import BoundedCache, EvictionPolicy
from common.config import CoverageConfig, MeshCoverageConfig, get_config
from common.geodesy import Bounds
from common.logging_config import ServiceLogger
from analysis.peer_network_analyzer import PeerNetworkAnalyzer
from propagation.propagation_model import PropagationModel
from terrain.terrain_analyzer import TerrainAnalyzer
from terrain.tile_downloader import TileDownloader
from terrain.tiles import TerrainSource, TileStore
from .coverage_calculator import (
    CoverageCalculator, LocationProvider, PeerProvider, ProgressCallback
)
from .models import CoverageGrid, CoveragePoint, CoverageRequest, CoverageStatus
from .strategy import ExecutionStrategy


@dataclass(frozen=True)
class CoverageStatistics:
    """Summary of a coverage grid"""
    total_cells: int
    covered_cells: int  # probability > covered threshold
    good_cells: int  # probability > good threshold
    unknown_cells: int
    coverage_percentage: float  # covered / known cells
    average_probability: float
    max_probability: float
    min_probability: float

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


def grid_statistics(grid: CoverageGrid, covered_threshold: float = 0.5,
                    good_threshold: float = 0.8) -> CoverageStatistics:
    """Cell counts and probability summary over the known cells of a grid"""
    known = [p.coverage_probability for p in grid.points() if not p.is_unknown]
    total = grid.rows * grid.cols

    if not known:
        return CoverageStatistics(total, 0, 0, total, 0.0, 0.0, 0.0, 0.0)

    covered = sum(1 for p in known if p > covered_threshold)
    return CoverageStatistics(
        total_cells=total,
        covered_cells=covered,
        good_cells=sum(1 for p in known if p > good_threshold),
        unknown_cells=total - len(known),
        coverage_percentage=100.0 * covered / len(known),
        average_probability=sum(known) / len(known),
        max_probability=max(known),
        min_probability=min(known)
    )


class CoverageService:
    """
    Cached coverage calculations for one session

    Identical requests within the cache TTL return the stored grid, and a
    request that is already running is awaited instead of started twice.
    Only COMPLETE grids are cached.
    """

    def __init__(self, calculator: CoverageCalculator, config: Optional[CoverageConfig] = None):
        self.calculator = calculator
        self.config = config or calculator.config
        self.logger = ServiceLogger("coverage", "service")

        self._results = BoundedCache(self.config.result_cache_size, EvictionPolicy.EVICT_QUARTER,
                                     name="coverage_results")
        self._in_flight: Dict[Hashable, asyncio.Task] = {}
        self.latest: Optional[CoverageGrid] = None

    @staticmethod
    def cache_key(request: CoverageRequest, viewport_bounds: Optional[Bounds] = None) -> Tuple:
        viewport = viewport_bounds or request.viewport_bounds
        return (
            round(request.center.lat, 4),
            round(request.center.lon, 4),
            request.radius_m,
            request.zoom_level,
            request.include_mesh_extension,
            request.resolution_m,
            request.user_antenna_height_ft,
            request.receiving_antenna_height_ft,
            request.max_peer_distance_m,
            (viewport.north, viewport.south, viewport.east, viewport.west) if viewport else None,
        )

    def _cached(self, key: Hashable) -> Optional[CoverageGrid]:
        entry = self._results.get(key)
        if entry is None:
            return None
        stored_at, grid = entry
        if time.monotonic() - stored_at > self.config.result_cache_ttl_sec:
            self._results.pop(key)
            return None
        return grid

    async def get_coverage(self, request: CoverageRequest,
                           viewport_bounds: Optional[Bounds] = None,
                           on_progress: Optional[ProgressCallback] = None,
                           force_refresh: bool = False) -> CoverageGrid:
        """
        Coverage grid for a request, from cache when fresh

        Args:
            request: Coverage request
            viewport_bounds: Visible area to cover
            on_progress: Progress callback for a newly started calculation
            force_refresh: Ignore any cached result

        Returns:
            Coverage grid
        """
        key = self.cache_key(request, viewport_bounds)

        if not force_refresh:
            cached = self._cached(key)
            if cached is not None:
                self.logger.debug("Coverage served from cache")
                self.latest = cached
                return cached

        running = self._in_flight.get(key)
        if running is not None:
            self.logger.debug("Joining in-flight coverage calculation")
            return await asyncio.shield(running)

        task = asyncio.create_task(
            self.calculator.calculate_coverage(request, viewport_bounds, on_progress)
        )
        self._in_flight[key] = task
        try:
            grid = await task
        finally:
            self._in_flight.pop(key, None)

        if grid.status is CoverageStatus.COMPLETE:
            # Entries stay ordered by result age
            self._results.pop(key)
            self._results.put(key, (time.monotonic(), grid))
        self.latest = grid
        return grid

    def coverage_at(self, lat: float, lon: float,
                    grid: Optional[CoverageGrid] = None) -> Optional[CoveragePoint]:
        """Nearest cell of a grid (the latest by default), or None outside its bounds"""
        grid = grid or self.latest
        if grid is None or grid.rows == 0 or not grid.bounds.contains(lat, lon):
            return None

        bounds = grid.bounds
        lat_span = bounds.north - bounds.south
        lon_span = bounds.east - bounds.west
        row = round((lat - bounds.south) / lat_span * (grid.rows - 1)) if lat_span else 0
        col = round((lon - bounds.west) / lon_span * (grid.cols - 1)) if lon_span else 0
        return grid.point_at(int(row), int(col))

    def statistics(self, grid: Optional[CoverageGrid] = None) -> Optional[CoverageStatistics]:
        grid = grid or self.latest
        if grid is None:
            return None
        return grid_statistics(grid, self.config.good_coverage_threshold,
                               self.config.high_coverage_threshold)

    def clear(self) -> None:
        """Drop cached results and every analyzer cache"""
        self._results.clear()
        self.latest = None
        self.calculator.terrain.clear_caches()
        self.calculator.peers.clear_caches()
        self.logger.info("Coverage caches cleared")

    @property
    def cache_statistics(self) -> Dict[str, object]:
        return {
            'results': self._results.statistics,
            'in_flight': len(self._in_flight),
            **self.calculator.terrain.cache_statistics,
        }


def create_coverage_service(
    config: Optional[MeshCoverageConfig] = None,
    peer_provider: Optional[PeerProvider] = None,
    location_provider: Optional[LocationProvider] = None,
    strategy: Optional[ExecutionStrategy] = None
) -> CoverageService:
    """Build the full engine stack from configuration"""
    config = config or get_config()

    store = TileStore(config.tile_root, config.terrain.tile_extension)
    downloader = TileDownloader(store, config=config.terrain)
    source = TerrainSource(store, downloader, config=config.terrain)
    propagation = PropagationModel(config.propagation)

    calculator = CoverageCalculator(
        terrain_analyzer=TerrainAnalyzer(source, propagation, config.terrain),
        peer_analyzer=PeerNetworkAnalyzer(propagation, config.peers),
        propagation=propagation,
        peer_provider=peer_provider,
        location_provider=location_provider,
        strategy=strategy,
        config=config.coverage
    )
    return CoverageService(calculator, config.coverage)
