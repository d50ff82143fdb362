"""
Terrain Analyzer

Terrain-aware line-of-sight analysis for coverage calculations:
- Sampled elevation profiles along great circle paths
- Full shadow analysis with Fresnel zone blockage and one-hop diffraction
- Binary-search shadow detection for fast per-cell evaluation
- Batch terrain precompute grouped by tile (one decode per tile)
- Terrain availability checks with lower-zoom fallbacks

All caches are owned by the analyzer instance and must be cleared
between coverage runs.
"""

import asyncio
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from common.cache import BoundedCache, EvictionPolicy, coarsen
from common.concurrency import to_thread_joined
from common.config import TerrainConfig, get_config
from common.geodesy import (
    Bounds, GeoPoint, haversine_distance, intermediate_point,
    lat_lon_to_tile, lat_lon_to_tile_fraction,
    meters_to_lat_degrees, meters_to_lon_degrees
)
from common.logging_config import ServiceLogger, MetricsLogger
from propagation.propagation_model import PropagationModel
from .models import (
    SamplingMethod, ShadowResult, TerrainCellData, TerrainDataUnavailableError,
    TerrainPoint, TerrainProfile
)
from .tile_downloader import availability_sample_count
from .tiles import TerrainSource, TileKey, sample_bilinear, tile_key_str

DEFAULT_ANTENNA_HEIGHT_M = 2.0

# (blockage lower bound, shadow depth), checked in order
SHADOW_DEPTH_STEPS: Tuple[Tuple[float, float], ...] = (
    (0.8, 0.95),
    (0.6, 0.85),
    (0.4, 0.7),
    (0.2, 0.5),
    (0.1, 0.3),
)


def line_of_sight_height(start_height: float, end_height: float,
                         distance: float, total_distance: float) -> float:
    """Height of the straight line between two antenna tips at a distance along the path"""
    if total_distance <= 0:
        return start_height
    return start_height + (end_height - start_height) * (distance / total_distance)


def fresnel_blockage(clearance: float, required_clearance: float) -> float:
    """
    Fraction of the required Fresnel clearance that is obstructed

    0 when the clearance meets the requirement, 0.5 when the line of sight
    just grazes the terrain, 1 when terrain reaches the requirement above it.
    """
    if required_clearance <= 0:
        return 0.0 if clearance >= 0 else 1.0
    if clearance >= required_clearance:
        return 0.0
    blockage = (required_clearance - clearance) / (2.0 * required_clearance)
    return min(1.0, max(0.0, blockage))


def shadow_depth(max_blockage: float, line_of_sight_blocked: bool = False) -> float:
    """Stepped shadow depth for a maximum Fresnel blockage"""
    if line_of_sight_blocked:
        return 1.0
    for lower, depth in SHADOW_DEPTH_STEPS:
        if max_blockage > lower:
            return depth
    return 0.0


class TerrainAnalyzer:
    """
    Terrain profile, shadow and batch elevation analysis

    Example:
        analyzer = TerrainAnalyzer(TerrainSource(TileStore.from_config()))

        result = analyzer.fast_shadow(origin, target, zoom=12)
        if result.in_shadow:
            ...
    """

    def __init__(self, source: TerrainSource, propagation: Optional[PropagationModel] = None,
                 config: Optional[TerrainConfig] = None):
        """
        Initialize terrain analyzer

        Args:
            source: Elevation source backed by the tile store
            propagation: Propagation model used for Fresnel radii
            config: Terrain configuration (defaults from get_config())
        """
        self.config = config or get_config().terrain
        self.source = source
        self.propagation = propagation or PropagationModel()

        self.logger = ServiceLogger("coverage", "terrain_analyzer")
        self.metrics = MetricsLogger("coverage")

        self.elevation_cache = BoundedCache(self.config.elevation_cache_size,
                                            EvictionPolicy.EVICT_QUARTER, name="elevation")
        self.analysis_cache = BoundedCache(self.config.analysis_cache_size,
                                           EvictionPolicy.EVICT_QUARTER, name="terrain_analysis")
        self.spatial_cache = BoundedCache(self.config.spatial_cache_size,
                                          EvictionPolicy.LRU, name="spatial")

    # ------------------------------------------------------------------
    # Point elevation and profiles
    # ------------------------------------------------------------------

    def elevation(self, lat: float, lon: float, zoom: int) -> Optional[float]:
        """Cached point elevation (meters), or None without terrain data"""
        key = (round(lat, 5), round(lon, 5), zoom)
        cached = self.elevation_cache.get(key)
        if cached is not None:
            return cached

        value = self.source.elevation(lat, lon, zoom)
        if value is not None:
            self.elevation_cache.put(key, value)
        return value

    def _sample_spacing(self, distance: float) -> float:
        if distance < self.config.short_path_m:
            return self.config.min_sample_distance_m
        if distance > self.config.long_path_m:
            return self.config.max_sample_distance_m
        return self.config.default_sample_distance_m

    def sample_count(self, distance: float) -> int:
        """Number of profile samples for a path length, endpoints included"""
        n = int(distance / self._sample_spacing(distance))
        return min(self.config.max_terrain_samples, max(self.config.min_terrain_samples, n))

    def profile(self, a: GeoPoint, b: GeoPoint, zoom: int) -> TerrainProfile:
        """
        Sampled elevation profile from a to b

        Samples missing from the tile set are interpolated from their
        neighbours along the path.

        Raises:
            TerrainDataUnavailableError: if no sample has terrain data
        """
        total = haversine_distance(a.lat, a.lon, b.lat, b.lon)
        n = self.sample_count(total)

        lats, lons, distances, elevations = [], [], [], []
        for i in range(n):
            fraction = i / (n - 1)
            lat, lon = intermediate_point(a.lat, a.lon, b.lat, b.lon, fraction)
            lats.append(lat)
            lons.append(lon)
            distances.append(fraction * total)
            elevations.append(self.elevation(lat, lon, zoom))

        known = [i for i, e in enumerate(elevations) if e is not None]
        if not known:
            raise TerrainDataUnavailableError(
                f"No terrain between ({a.lat:.5f}, {a.lon:.5f}) and ({b.lat:.5f}, {b.lon:.5f}) at zoom {zoom}"
            )

        if len(known) < n:
            filled = np.interp(distances,
                               [distances[i] for i in known],
                               [elevations[i] for i in known])
            elevations = [float(e) for e in filled]

        points = [TerrainPoint(lat, lon, elev, dist)
                  for lat, lon, elev, dist in zip(lats, lons, elevations, distances)]
        return TerrainProfile(points=points, total_distance=total)

    # ------------------------------------------------------------------
    # Shadow analysis
    # ------------------------------------------------------------------

    def _analysis_key(self, kind: str, a: GeoPoint, b: GeoPoint, zoom: int) -> tuple:
        precision = self.config.analysis_cache_precision_deg
        ka = (coarsen(a.lat, precision), coarsen(a.lon, precision))
        kb = (coarsen(b.lat, precision), coarsen(b.lon, precision))
        return (kind,) + (min(ka, kb), max(ka, kb), zoom)

    def shadow(self, origin: GeoPoint, target: GeoPoint,
               origin_elevation: Optional[float] = None,
               target_elevation: Optional[float] = None,
               origin_antenna_m: float = DEFAULT_ANTENNA_HEIGHT_M,
               target_antenna_m: float = DEFAULT_ANTENNA_HEIGHT_M,
               zoom: int = 12) -> ShadowResult:
        """
        Full shadow analysis over a sampled profile

        Args:
            origin: Transmitter location
            target: Receiver location
            origin_elevation: Ground elevation at the origin (profile value if None)
            target_elevation: Ground elevation at the target (profile value if None)
            origin_antenna_m: Transmitter antenna height above ground
            target_antenna_m: Receiver antenna height above ground
            zoom: Terrain tile zoom level

        Returns:
            ShadowResult for the path
        """
        key = self._analysis_key("full", origin, target, zoom)
        cached = self.analysis_cache.get(key)
        if cached is not None:
            return cached

        profile = self.profile(origin, target, zoom)
        result = self.analyze_profile(profile, origin_elevation, target_elevation,
                                      origin_antenna_m, target_antenna_m)
        self.analysis_cache.put(key, result)
        return result

    def analyze_profile(self, profile: TerrainProfile,
                        origin_elevation: Optional[float] = None,
                        target_elevation: Optional[float] = None,
                        origin_antenna_m: float = DEFAULT_ANTENNA_HEIGHT_M,
                        target_antenna_m: float = DEFAULT_ANTENNA_HEIGHT_M) -> ShadowResult:
        """
        Shadow assessment of an already-sampled profile

        A sample is signal-receiving when the origin-target line of sight
        passes at or above it. The target is shadowed unless the line of
        sight clears every sample, or some signal-receiving sample has a
        clear line from its own antenna height to the target.
        """
        points = profile.points
        total = profile.total_distance
        if len(points) < 3 or total <= 0:
            return ShadowResult.clear()

        start = points[0].elevation if origin_elevation is None else origin_elevation
        end = points[-1].elevation if target_elevation is None else target_elevation
        h0 = start + origin_antenna_m
        h1 = end + target_antenna_m

        inner = points[1:-1]
        clearances = [line_of_sight_height(h0, h1, p.distance, total) - p.elevation for p in inner]

        first_obstruction = next((p.distance for p, c in zip(inner, clearances) if c < 0), None)
        direct_clear = first_obstruction is None
        blocked = not direct_clear and not self._has_indirect_clearance(
            inner, clearances, h0, h1, target_antenna_m, total)

        max_blockage = 0.0
        for point, clearance in zip(inner, clearances):
            if clearance < 0:
                continue
            required = self.propagation.fresnel_radius_at(point.distance, total - point.distance)
            max_blockage = max(max_blockage, fresnel_blockage(clearance, required))

        if blocked:
            return ShadowResult(in_shadow=True, shadow_depth=1.0, fresnel_blockage=1.0,
                                line_of_sight_blocked=True,
                                obstruction_distance=first_obstruction)

        return ShadowResult(
            in_shadow=max_blockage > self.config.shadow_blockage_threshold,
            shadow_depth=shadow_depth(max_blockage),
            fresnel_blockage=max_blockage,
            line_of_sight_blocked=False,
            obstruction_distance=first_obstruction
        )

    @staticmethod
    def _has_indirect_clearance(inner: Sequence[TerrainPoint], clearances: Sequence[float],
                                origin_height: float, target_height: float,
                                relay_antenna_m: float, total: float) -> bool:
        """One-hop check: some reachable sample under the direct line sees the target"""
        for idx, (relay, clearance) in enumerate(zip(inner, clearances)):
            if clearance < 0:
                continue
            relay_height = relay.elevation + relay_antenna_m
            reachable = all(
                p.elevation <= line_of_sight_height(origin_height, relay_height,
                                                    p.distance, relay.distance)
                for p in inner[:idx]
            )
            if not reachable:
                continue
            if all(
                p.elevation <= line_of_sight_height(relay_height, target_height,
                                                    p.distance - relay.distance,
                                                    total - relay.distance)
                for p in inner[idx + 1:]
            ):
                return True
        return False

    def fast_shadow(self, origin: GeoPoint, target: GeoPoint,
                    origin_elevation: Optional[float] = None,
                    target_elevation: Optional[float] = None,
                    origin_antenna_m: float = DEFAULT_ANTENNA_HEIGHT_M,
                    target_antenna_m: float = DEFAULT_ANTENNA_HEIGHT_M,
                    zoom: int = 12) -> ShadowResult:
        """
        Binary-search shadow detection

        Samples the midpoint of the remaining interval; an obstruction more
        than the obstruction threshold above the line of sight moves the
        search toward the origin, otherwise toward the target. Uses at most
        binary_search_iterations samples.

        Raises:
            TerrainDataUnavailableError: if an endpoint elevation is unknown
        """
        total = haversine_distance(origin.lat, origin.lon, target.lat, target.lon)
        if total < self.config.fast_shadow_min_distance_m:
            return ShadowResult.clear()

        key = self._analysis_key("fast", origin, target, zoom)
        cached = self.analysis_cache.get(key)
        if cached is not None:
            return cached

        if origin_elevation is None:
            origin_elevation = self.elevation(origin.lat, origin.lon, zoom)
        if target_elevation is None:
            target_elevation = self.elevation(target.lat, target.lon, zoom)
        if origin_elevation is None or target_elevation is None:
            raise TerrainDataUnavailableError("Endpoint elevation unavailable for fast shadow check")

        h0 = origin_elevation + origin_antenna_m
        h1 = target_elevation + target_antenna_m

        left, right = 0.0, total
        obstruction: Optional[float] = None
        max_blockage = 0.0

        for _ in range(self.config.binary_search_iterations):
            if right - left <= self.config.min_segment_length_m:
                break

            mid = (left + right) / 2.0
            lat, lon = intermediate_point(origin.lat, origin.lon, target.lat, target.lon, mid / total)
            terrain = self.elevation(lat, lon, zoom)
            expected = line_of_sight_height(h0, h1, mid, total)

            if terrain is not None and terrain > expected + self.config.obstruction_threshold_m:
                obstruction = mid
                right = mid
                continue

            if terrain is not None:
                required = self.propagation.fresnel_radius_at(mid, total - mid)
                max_blockage = max(max_blockage, fresnel_blockage(expected - terrain, required))
            left = mid

        if obstruction is not None:
            result = ShadowResult(
                in_shadow=True,
                shadow_depth=self.config.fast_shadow_blocked_depth,
                fresnel_blockage=self.config.fast_shadow_blocked_blockage,
                line_of_sight_blocked=True,
                obstruction_distance=obstruction
            )
        else:
            result = ShadowResult(
                in_shadow=max_blockage > self.config.shadow_blockage_threshold,
                shadow_depth=shadow_depth(max_blockage),
                fresnel_blockage=max_blockage,
                line_of_sight_blocked=False
            )

        self.analysis_cache.put(key, result)
        return result

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    def is_data_available(self, bounds: Bounds, zoom: int) -> bool:
        """True when enough of the sampling grid has tiles at exactly this zoom"""
        points = list(bounds.sample_points(availability_sample_count(zoom)))
        tile_present: Dict[Tuple[int, int], bool] = {}
        available = 0

        for point in points:
            tile = lat_lon_to_tile(point.lat, point.lon, zoom)
            if tile not in tile_present:
                tile_present[tile] = self.source.has_tile(zoom, *tile)
            if tile_present[tile]:
                available += 1

        fraction = available / len(points)
        self.logger.debug(f"Terrain availability at zoom {zoom}: {fraction:.0%}",
                          extra={'zoom': zoom, 'tiles_checked': len(tile_present)})
        return fraction >= self.config.availability_fraction

    def is_any_data_available(self, bounds: Bounds) -> bool:
        """True when any fallback zoom level has a tile at the center or a corner"""
        probes = (
            bounds.center,
            GeoPoint(bounds.north, bounds.west),
            GeoPoint(bounds.south, bounds.east),
        )
        for zoom in range(self.config.min_fallback_zoom, self.config.max_fallback_zoom + 1):
            for point in probes:
                if self.source.has_tile(zoom, *lat_lon_to_tile(point.lat, point.lon, zoom)):
                    self.logger.debug(f"Fallback terrain found at zoom {zoom}")
                    return True
        return False

    # ------------------------------------------------------------------
    # Batch precompute
    # ------------------------------------------------------------------

    async def precompute_for_grid(self, grid: Sequence[Sequence[GeoPoint]], zoom: int,
                                  cell_size_m: float) -> List[List[TerrainCellData]]:
        """
        Terrain summaries for every cell of a grid

        Args:
            grid: Rows of cell center points
            zoom: Terrain zoom level
            cell_size_m: Cell edge length (meters)

        Returns:
            Rows of TerrainCellData matching the grid shape
        """
        flat = [point for row in grid for point in row]
        data = await self.precompute_for_points(flat, cell_size_m, zoom)

        rows: List[List[TerrainCellData]] = []
        offset = 0
        for row in grid:
            rows.append(data[offset:offset + len(row)])
            offset += len(row)
        return rows

    async def precompute_for_points(self, points: Sequence[GeoPoint], cell_size_m: float,
                                    zoom: int) -> List[TerrainCellData]:
        """
        Terrain summaries for a list of points

        Points are grouped by tile so each tile is decoded once. Tiles that
        cannot be loaded are retried for their points one zoom level lower;
        points still unresolved get fallback data.
        """
        results: List[Optional[TerrainCellData]] = [None] * len(points)

        pending: List[int] = []
        for i, point in enumerate(points):
            cached = self.spatial_cache.get(self._cell_key(point, zoom, cell_size_m))
            if cached is not None:
                results[i] = cached
            else:
                pending.append(i)

        groups = self._group_by_tile(points, pending, zoom)
        failed = await self._process_tile_groups(
            points, groups, cell_size_m, results,
            batch_size=self.config.tile_batch_size,
            method=SamplingMethod.CENTER
        )

        if failed and zoom > 0:
            self.logger.info(f"Retrying {len(failed)} points at zoom {zoom - 1}",
                             extra={'zoom': zoom})
            failed = await self._process_fallback(points, failed, zoom - 1, cell_size_m, results)

        fallback_count = 0
        for i, point in enumerate(points):
            if results[i] is None:
                results[i] = TerrainCellData.fallback()
                fallback_count += 1
            elif results[i].sampling_method is not SamplingMethod.FALLBACK:
                self.spatial_cache.put(self._cell_key(point, zoom, cell_size_m), results[i])

        if fallback_count:
            self.logger.warning(f"{fallback_count} of {len(points)} points have no terrain data",
                                extra={'zoom': zoom})

        return results

    def _cell_key(self, point: GeoPoint, zoom: int, cell_size_m: float) -> tuple:
        precision = self.config.cache_precision_deg
        return (coarsen(point.lat, precision), coarsen(point.lon, precision),
                zoom, int(round(cell_size_m)))

    @staticmethod
    def _group_by_tile(points: Sequence[GeoPoint], indices: Sequence[int],
                       zoom: int) -> Dict[TileKey, List[int]]:
        groups: Dict[TileKey, List[int]] = {}
        for i in indices:
            x, y = lat_lon_to_tile(points[i].lat, points[i].lon, zoom)
            groups.setdefault((zoom, x, y), []).append(i)
        return groups

    async def _process_tile_groups(self, points: Sequence[GeoPoint],
                                   groups: Dict[TileKey, List[int]], cell_size_m: float,
                                   results: List[Optional[TerrainCellData]], batch_size: int,
                                   method: SamplingMethod) -> List[int]:
        """Resolve tile groups in batches; returns indices of points left unresolved"""
        failed: List[int] = []
        keys = list(groups)

        for start in range(0, len(keys), batch_size):
            batch = keys[start:start + batch_size]
            outcomes = await asyncio.gather(
                *(self._process_tile(key, groups[key], points, cell_size_m, results, method)
                  for key in batch)
            )

            downloaded = False
            for key, (ok, fetched) in zip(batch, outcomes):
                downloaded = downloaded or fetched
                if not ok:
                    failed.extend(groups[key])

            # Pause only when this batch hit the remote service
            if downloaded and start + batch_size < len(keys):
                await asyncio.sleep(self.config.inter_batch_pause_sec)

        return failed

    async def _process_tile(self, key: TileKey, indices: List[int], points: Sequence[GeoPoint],
                            cell_size_m: float, results: List[Optional[TerrainCellData]],
                            method: SamplingMethod) -> Tuple[bool, bool]:
        """Load one tile and resolve its points; returns (resolved, downloaded)"""
        zoom, x, y = key
        downloaded = False

        try:
            if not self.source.has_tile(zoom, x, y):
                if not self._can_download(zoom):
                    return False, False
                downloaded = True
                if not await self.source.ensure_tile(zoom, x, y):
                    return False, downloaded

            tile = await to_thread_joined(self.source.load_tile, zoom, x, y)
            if tile is None:
                return False, downloaded

            for i in indices:
                results[i] = self._sample_cell(tile, key, points[i], cell_size_m, method)
            return True, downloaded

        except Exception as e:
            self.logger.error(f"Terrain tile {tile_key_str(*key)} failed: {e}", exc_info=True)
            return False, downloaded

    async def _process_fallback(self, points: Sequence[GeoPoint], indices: List[int], zoom: int,
                                cell_size_m: float,
                                results: List[Optional[TerrainCellData]]) -> List[int]:
        """Resolve points at a lower zoom with small batches and retries"""
        # Tile coordinates must be recomputed at the lower zoom
        groups = self._group_by_tile(points, indices, zoom)
        remaining = dict(groups)
        attempt = 0

        while remaining and attempt < self.config.fallback_max_attempts:
            if attempt:
                await asyncio.sleep(self.config.fallback_backoff_sec * attempt)
            attempt += 1

            failed = set(await self._process_tile_groups(
                points, remaining, cell_size_m, results,
                batch_size=self.config.fallback_batch_size,
                method=SamplingMethod.LOWER_ZOOM
            ))
            remaining = {k: v for k, v in remaining.items() if failed.intersection(v)}

            # Absent tiles that cannot be fetched will not appear on retry
            if not self._can_download(zoom):
                break

        return [i for i in indices if results[i] is None]

    def _can_download(self, zoom: int) -> bool:
        downloader = self.source.downloader
        return (downloader is not None and downloader.enabled
                and zoom <= self.source.max_download_zoom)

    def _sample_cell(self, tile: np.ndarray, key: TileKey, point: GeoPoint,
                     cell_size_m: float, method: SamplingMethod) -> TerrainCellData:
        """Center sample, upgraded to a five-point summary on rough terrain"""
        zoom, x, y = key

        def sample(lat: float, lon: float) -> float:
            fx, fy = lat_lon_to_tile_fraction(lat, lon, zoom)
            # Clamp to this tile so corners near an edge stay inside it
            return sample_bilinear(tile, min(max(fx - x, 0.0), 1.0), min(max(fy - y, 0.0), 1.0))

        center = sample(point.lat, point.lon)
        if cell_size_m <= self.config.detailed_sampling_min_cell_m:
            return TerrainCellData.single(center, method)

        half_lat = meters_to_lat_degrees(cell_size_m / 2.0)
        half_lon = meters_to_lon_degrees(cell_size_m / 2.0, point.lat)
        samples = [center] + [
            sample(point.lat + dlat, point.lon + dlon)
            for dlat in (-half_lat, half_lat)
            for dlon in (-half_lon, half_lon)
        ]

        variation = max(samples) - min(samples)
        if variation <= self._variation_threshold(cell_size_m):
            return TerrainCellData.single(center, method)

        return TerrainCellData(
            average_elevation=float(np.mean(samples)),
            max_elevation=max(samples),
            min_elevation=min(samples),
            elevation_variation=variation,
            sampling_method=(SamplingMethod.LIMITED_DETAILED
                             if method is SamplingMethod.CENTER else method)
        )

    @staticmethod
    def _variation_threshold(cell_size_m: float) -> float:
        if cell_size_m > 1000:
            return 50.0
        elif cell_size_m > 500:
            return 25.0
        return 10.0

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    def clear_caches(self) -> None:
        """Drop every cached elevation, shadow result and cell summary"""
        for name, stats in self.cache_statistics.items():
            self.metrics.log_gauge("terrain_cache_hit_rate", stats['hit_rate'], labels={'cache': name})
        self.elevation_cache.clear()
        self.analysis_cache.clear()
        self.spatial_cache.clear()
        self.source.clear_cache()

    @property
    def cache_statistics(self) -> Dict[str, dict]:
        return {
            'elevation': self.elevation_cache.statistics,
            'terrain_analysis': self.analysis_cache.statistics,
            'spatial': self.spatial_cache.statistics,
            'decoded_tiles': self.source.statistics,
        }
