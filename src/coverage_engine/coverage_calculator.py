"""
Coverage Calculator

Runs the staged coverage pipeline for one request:

1. TERRAIN_AVAILABILITY_CHECK: tiles present at the request zoom, downloading if needed
2. GRID_CONSTRUCTION: bounds, resolution and cell centers
3. TERRAIN_PRECOMPUTE: per-cell terrain summaries, batched by tile
4. DIRECT_COVERAGE: origin to cell, center outward
5. EARLY_EXIT_CHECK: skip the mesh stage when direct coverage is already high
6. MESH_EXTENSION: coverage added by reachable mesh peers
7. PROGRESSIVE_REFINEMENT: 2x2 re-evaluation of the most promising cells
8. FILTER: cells below the minimum threshold are zeroed

A run always ends with a CoverageGrid. Timeouts and internal failures
produce the best partial grid with a TIMED_OUT or FAILED status.
"""

import asyncio
import contextlib
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    AsyncIterator, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union
)

from common.config import CoverageConfig, get_config
from common.constants import NO_SIGNAL_DBM
from common.geodesy import (
    Bounds, GeoPoint, haversine_distance, meters_to_lat_degrees, meters_to_lon_degrees
)
from common.logging_config import ServiceLogger, MetricsLogger
from analysis.peer_network_analyzer import NetworkPeer, PeerLocation, PeerNetworkAnalyzer
from propagation.propagation_model import PropagationModel
from terrain.models import ShadowResult, TerrainCellData, TerrainDataUnavailableError
from terrain.terrain_analyzer import TerrainAnalyzer
from .errors import CoverageTimeoutError
from .grid import (
    Cell, EvaluationGrid, build_grid, calculate_bounds, center_patch, in_region,
    quadrants, select_resolution, spiral_order
)
from .models import CoverageGrid, CoveragePoint, CoverageProgress, CoverageRequest, CoverageStatus
from .strategy import ExecutionStrategy, probe_execution_strategy

# Contributor recorded for coverage from the origin itself
ORIGIN_CONTRIBUTOR = "user"

PeerProvider = Callable[[], Mapping[str, PeerLocation]]
LocationProvider = Callable[[], Optional[Union[GeoPoint, PeerLocation]]]
ProgressCallback = Callable[[float, str], None]
PartialResultCallback = Callable[[CoverageGrid], None]


class PipelineStage(Enum):
    INIT = "init"
    TERRAIN_AVAILABILITY_CHECK = "terrain_availability_check"
    GRID_CONSTRUCTION = "grid_construction"
    TERRAIN_PRECOMPUTE = "terrain_precompute"
    DIRECT_COVERAGE = "direct_coverage"
    EARLY_EXIT_CHECK = "early_exit_check"
    MESH_EXTENSION = "mesh_extension"
    PROGRESSIVE_REFINEMENT = "progressive_refinement"
    FILTER = "filter"
    DONE = "done"


STAGE_PROGRESS: Dict[PipelineStage, Tuple[float, str]] = {
    PipelineStage.INIT: (0.0, "Initializing coverage calculation"),
    PipelineStage.TERRAIN_AVAILABILITY_CHECK: (0.05, "Checking terrain data"),
    PipelineStage.GRID_CONSTRUCTION: (0.1, "Building evaluation grid"),
    PipelineStage.TERRAIN_PRECOMPUTE: (0.15, "Loading terrain"),
    PipelineStage.DIRECT_COVERAGE: (0.3, "Calculating direct coverage"),
    PipelineStage.EARLY_EXIT_CHECK: (0.6, "Evaluating direct coverage"),
    PipelineStage.MESH_EXTENSION: (0.65, "Extending coverage through mesh peers"),
    PipelineStage.PROGRESSIVE_REFINEMENT: (0.85, "Refining coverage"),
    PipelineStage.FILTER: (0.95, "Filtering low coverage"),
    PipelineStage.DONE: (1.0, "Coverage calculation complete"),
}

_STAGE_ORDER = list(PipelineStage)


def combine_coverage(current: Optional[CoveragePoint],
                     candidate: Optional[CoveragePoint]) -> Optional[CoveragePoint]:
    """
    Merge two evaluations of the same cell

    The higher probability wins; unknown loses to any known value and ties
    keep the current cell.
    """
    if candidate is None:
        return current
    if current is None:
        return candidate
    if candidate.is_unknown:
        return current
    if current.is_unknown:
        return candidate
    if candidate.coverage_probability > current.coverage_probability:
        return candidate
    return current


@dataclass
class _LinkContext:
    """Per-run inputs shared by every direct-coverage evaluation"""
    origin: GeoPoint
    origin_elevation: Optional[float]
    terrain: Optional[List[List[TerrainCellData]]]
    zoom: int
    user_antenna_m: float
    receiving_antenna_m: float
    max_distance_m: float

    def cell_terrain(self, row: int, col: int) -> Optional[TerrainCellData]:
        if self.terrain is None:
            return None
        return self.terrain[row][col]


@dataclass
class _CoverageRun:
    """Mutable state of one pipeline run"""
    run_id: str
    request: CoverageRequest
    bounds: Bounds
    budget_sec: float
    progress_sink: Optional[Callable[[CoverageProgress], None]] = None
    partial_sink: Optional[PartialResultCallback] = None
    started: float = field(default_factory=time.monotonic)
    stage: PipelineStage = PipelineStage.INIT
    stage_started: float = field(default_factory=time.monotonic)
    terrain_available: bool = False
    grid: Optional[EvaluationGrid] = None
    cells: Optional[List[List[Optional[CoveragePoint]]]] = None
    stop_events: List[threading.Event] = field(default_factory=list)
    executor: Optional[ThreadPoolExecutor] = None

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def check_deadline(self) -> None:
        if self.elapsed > self.budget_sec:
            raise CoverageTimeoutError(self.stage.value, self.elapsed, self.budget_sec)

    def join_workers(self) -> None:
        """Stop every worker and wait for the pool threads to exit"""
        for event in self.stop_events:
            event.set()
        if self.executor is not None:
            self.executor.shutdown(wait=True, cancel_futures=True)
            self.executor = None


class CoverageCalculator:
    """
    Coverage pipeline orchestration

    Runs are serialized: a second call waits until the current run has
    finished and cleared the analyzers' caches.
    """

    def __init__(
        self,
        terrain_analyzer: TerrainAnalyzer,
        peer_analyzer: Optional[PeerNetworkAnalyzer] = None,
        propagation: Optional[PropagationModel] = None,
        peer_provider: Optional[PeerProvider] = None,
        location_provider: Optional[LocationProvider] = None,
        strategy: Optional[ExecutionStrategy] = None,
        config: Optional[CoverageConfig] = None
    ):
        """
        Initialize coverage calculator

        Args:
            terrain_analyzer: Terrain analysis and tile access
            peer_analyzer: Mesh reachability analysis
            propagation: Propagation model (defaults to the terrain analyzer's)
            peer_provider: Returns the current peer registry snapshot
            location_provider: Returns the origin location, or None to use the request center
            strategy: Execution strategy (probed from the host if None)
            config: Coverage configuration (defaults from get_config())
        """
        self.config = config or get_config().coverage
        self.terrain = terrain_analyzer
        self.propagation = propagation or terrain_analyzer.propagation
        self.peers = peer_analyzer or PeerNetworkAnalyzer(self.propagation)
        self.peer_provider = peer_provider
        self.location_provider = location_provider
        self.strategy = strategy or probe_execution_strategy(self.config)

        self.logger = ServiceLogger("coverage", "calculator")
        self.metrics = MetricsLogger("coverage")

        self._run_lock = asyncio.Lock()

        # Statistics
        self.run_count = 0
        self.timed_out_runs = 0
        self.failed_runs = 0
        self.last_run_duration: Optional[float] = None

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def calculate_coverage(self, request: CoverageRequest,
                                 viewport_bounds: Optional[Bounds] = None,
                                 on_progress: Optional[ProgressCallback] = None) -> CoverageGrid:
        """
        Calculate a coverage grid

        Args:
            request: Coverage request
            viewport_bounds: Visible area; when set, the grid covers it extended by the radius
            on_progress: Called with (fraction, message) as the run advances

        Returns:
            Final grid; status is TIMED_OUT or FAILED when the run did not finish
        """
        return await self._run(request, viewport_bounds, _progress_adapter(on_progress), None)

    async def calculate_coverage_incremental(
        self,
        request: CoverageRequest,
        viewport_bounds: Optional[Bounds] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_partial_result: Optional[PartialResultCallback] = None
    ) -> CoverageGrid:
        """Calculate a coverage grid, emitting PARTIAL snapshots after each stage and periodically within stages"""
        return await self._run(request, viewport_bounds, _progress_adapter(on_progress),
                               on_partial_result)

    async def stream_coverage(
        self,
        request: CoverageRequest,
        viewport_bounds: Optional[Bounds] = None
    ) -> AsyncIterator[Union[CoverageProgress, CoverageGrid]]:
        """
        Progress events and partial grids as they are produced, ending with the final grid

        Closing the iterator early cancels the underlying run.
        """
        queue: asyncio.Queue = asyncio.Queue()
        finished = object()

        task = asyncio.create_task(
            self._run(request, viewport_bounds, queue.put_nowait, queue.put_nowait)
        )
        task.add_done_callback(lambda _: queue.put_nowait(finished))

        try:
            while True:
                item = await queue.get()
                if item is finished:
                    break
                yield item
            yield task.result()
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def _run(self, request: CoverageRequest, viewport_bounds: Optional[Bounds],
                   progress_sink: Optional[Callable[[CoverageProgress], None]],
                   partial_sink: Optional[PartialResultCallback]) -> CoverageGrid:
        async with self._run_lock:
            run = _CoverageRun(
                run_id=uuid.uuid4().hex[:8],
                request=request,
                bounds=calculate_bounds(request, viewport_bounds),
                budget_sec=self.config.max_calculation_time_sec,
                progress_sink=progress_sink,
                partial_sink=partial_sink,
                executor=ThreadPoolExecutor(max_workers=self._worker_count(),
                                            thread_name_prefix="coverage-worker")
            )
            self.run_count += 1
            self.logger.info(
                f"Coverage run {run.run_id} started: center=({request.center.lat:.5f}, "
                f"{request.center.lon:.5f}), radius={request.radius_m:.0f}m, zoom={request.zoom_level}",
                extra={'run_id': run.run_id, 'strategy': self.strategy.value}
            )
            self._emit_progress(run, *STAGE_PROGRESS[PipelineStage.INIT])

            try:
                result = await asyncio.wait_for(self._execute(run), timeout=run.budget_sec)
            except (CoverageTimeoutError, asyncio.TimeoutError):
                self.timed_out_runs += 1
                self.logger.warning(
                    f"Coverage run {run.run_id} timed out during {run.stage.value} "
                    f"after {run.elapsed:.1f}s",
                    extra={'run_id': run.run_id, 'stage': run.stage.value}
                )
                result = self._snapshot(run, CoverageStatus.TIMED_OUT)
            except Exception as e:
                self.failed_runs += 1
                self.logger.error(
                    f"Coverage run {run.run_id} failed during {run.stage.value}: {e}",
                    extra={'run_id': run.run_id, 'stage': run.stage.value},
                    exc_info=True
                )
                result = self._snapshot(run, CoverageStatus.FAILED)
            finally:
                # Workers stop between cells, so the join is bounded by one cell each
                run.join_workers()
                self.terrain.clear_caches()
                self.peers.clear_caches()
                self.last_run_duration = run.elapsed
                self.metrics.log_histogram("coverage_run_duration", run.elapsed,
                                           labels={'final_stage': run.stage.value})

            self.logger.info(
                f"Coverage run {run.run_id} finished in {run.elapsed:.2f}s: "
                f"{result.rows}x{result.cols} cells, status={result.status.value}",
                extra={'run_id': run.run_id}
            )
            return result

    async def _execute(self, run: _CoverageRun) -> CoverageGrid:
        request = run.request

        self._enter(run, PipelineStage.TERRAIN_AVAILABILITY_CHECK)
        run.terrain_available = await self._check_terrain_availability(run)

        self._enter(run, PipelineStage.GRID_CONSTRUCTION)
        run.grid = self._build_grid(run)
        run.cells = [[None] * run.grid.cols for _ in range(run.grid.rows)]
        self.metrics.log_gauge("coverage_grid_cells", run.grid.size,
                               labels={'resolution_m': f"{run.grid.resolution:.0f}"})
        self.logger.debug(
            f"Grid {run.grid.rows}x{run.grid.cols} at {run.grid.resolution:.0f}m",
            extra={'run_id': run.run_id}
        )

        self._enter(run, PipelineStage.TERRAIN_PRECOMPUTE)
        origin = self._resolve_origin(request)
        terrain, origin_elevation = await self._precompute_terrain(run, origin)
        context = _LinkContext(
            origin=origin,
            origin_elevation=origin_elevation,
            terrain=terrain,
            zoom=request.zoom_level,
            user_antenna_m=request.user_antenna_height_m,
            receiving_antenna_m=request.receiving_antenna_height_m,
            max_distance_m=request.max_peer_distance_m
        )

        self._enter(run, PipelineStage.DIRECT_COVERAGE)
        await self._direct_coverage(run, context)
        self._emit_partial(run)

        self._enter(run, PipelineStage.EARLY_EXIT_CHECK)
        skip_mesh = self._meets_early_exit(run)

        if request.include_mesh_extension and run.terrain_available and not skip_mesh:
            self._enter(run, PipelineStage.MESH_EXTENSION)
            await self._mesh_extension(run, context)
            self._emit_partial(run)

        if request.zoom_level >= self.config.min_refinement_zoom and run.terrain_available:
            self._enter(run, PipelineStage.PROGRESSIVE_REFINEMENT)
            await self._refine(run, context)
            self._emit_partial(run)

        self._enter(run, PipelineStage.FILTER)
        self._filter(run)

        self._enter(run, PipelineStage.DONE)
        return self._snapshot(run, CoverageStatus.COMPLETE)

    def _enter(self, run: _CoverageRun, stage: PipelineStage) -> None:
        now = time.monotonic()
        self.metrics.log_histogram("coverage_stage_duration", now - run.stage_started,
                                   labels={'stage': run.stage.value})
        run.stage = stage
        run.stage_started = now
        if stage is not PipelineStage.DONE:
            run.check_deadline()

        self.logger.debug(f"Stage {stage.value}", extra={'run_id': run.run_id, 'stage': stage.value})
        self._emit_progress(run, *STAGE_PROGRESS[stage])

    def _build_grid(self, run: _CoverageRun) -> EvaluationGrid:
        request = run.request
        resolution = select_resolution(run.bounds, request.resolution_m, request.zoom_level, self.config)
        return build_grid(run.bounds, resolution, self.config)

    # ------------------------------------------------------------------
    # Progress and snapshots
    # ------------------------------------------------------------------

    def _emit_progress(self, run: _CoverageRun, fraction: float, message: str) -> None:
        if run.progress_sink is None:
            return
        try:
            run.progress_sink(CoverageProgress(fraction, message, run.stage.value))
        except Exception as e:
            self.logger.warning(f"Progress callback failed: {e}", extra={'run_id': run.run_id})

    def _emit_partial(self, run: _CoverageRun) -> None:
        if run.partial_sink is None or run.cells is None:
            return
        try:
            run.partial_sink(self._snapshot(run, CoverageStatus.PARTIAL))
        except Exception as e:
            self.logger.warning(f"Partial result callback failed: {e}", extra={'run_id': run.run_id})

    def _report_cells(self, run: _CoverageRun, done: int, total: int) -> None:
        """Progress within the current stage, then a partial snapshot"""
        start, message = STAGE_PROGRESS[run.stage]
        index = _STAGE_ORDER.index(run.stage)
        end = STAGE_PROGRESS[_STAGE_ORDER[index + 1]][0]
        fraction = start + (end - start) * (done / total if total else 1.0)
        self._emit_progress(run, fraction, f"{message} ({done}/{total})")
        self._emit_partial(run)

    def _default_cell(self, run: _CoverageRun, point: GeoPoint) -> CoveragePoint:
        if run.terrain_available:
            return CoveragePoint.zero(point.lat, point.lon)
        return CoveragePoint.unknown(point.lat, point.lon)

    def _snapshot(self, run: _CoverageRun, status: CoverageStatus) -> CoverageGrid:
        """Immutable grid from the current cells; unfinished cells get defaults"""
        grid = run.grid
        if grid is None:
            grid = self._build_grid(run)

        rows = []
        for r in range(grid.rows):
            row = []
            for c in range(grid.cols):
                cell = run.cells[r][c] if run.cells is not None else None
                row.append(cell if cell is not None else self._default_cell(run, grid.point(r, c)))
            rows.append(row)

        return CoverageGrid.from_rows(grid.bounds, grid.resolution, rows,
                                      run.request.zoom_level, status)

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    async def _check_terrain_availability(self, run: _CoverageRun) -> bool:
        bounds, zoom = run.bounds, run.request.zoom_level
        if self.terrain.is_data_available(bounds, zoom):
            return True

        downloader = self.terrain.source.downloader
        if downloader is not None and downloader.enabled and zoom <= downloader.max_zoom:
            self.logger.info(f"Downloading terrain tiles at zoom {zoom}", extra={'run_id': run.run_id})
            available, missing = await downloader.download_area(bounds, zoom)
            self.logger.info(f"Terrain tiles: {available} downloaded, {missing} were missing",
                             extra={'run_id': run.run_id})
            if self.terrain.is_data_available(bounds, zoom):
                return True

        if self.terrain.is_any_data_available(bounds):
            self.logger.info("Using lower-resolution terrain for coverage area",
                             extra={'run_id': run.run_id})
            return True

        self.logger.warning("No terrain data for coverage area, cells will be unknown",
                            extra={'run_id': run.run_id})
        return False

    def _resolve_origin(self, request: CoverageRequest) -> GeoPoint:
        if self.location_provider is None:
            return request.center
        try:
            location = self.location_provider()
        except Exception as e:
            self.logger.warning(f"Location provider failed, using request center: {e}")
            return request.center

        if location is None:
            return request.center
        if isinstance(location, PeerLocation):
            return location.point
        return location

    def _poll_peers(self) -> Dict[str, PeerLocation]:
        if self.peer_provider is None:
            return {}
        try:
            return dict(self.peer_provider() or {})
        except Exception as e:
            self.logger.warning(f"Peer provider failed, continuing without mesh peers: {e}")
            return {}

    async def _precompute_terrain(
        self, run: _CoverageRun, origin: GeoPoint
    ) -> Tuple[Optional[List[List[TerrainCellData]]], Optional[float]]:
        """Cell terrain summaries and the origin ground elevation"""
        if not run.terrain_available:
            return None, None

        grid = run.grid
        zoom = run.request.zoom_level
        try:
            terrain = await self.terrain.precompute_for_grid(grid.points, zoom, grid.resolution)
        except Exception as e:
            self.logger.warning(f"Terrain precompute failed, using per-point lookups: {e}",
                                extra={'run_id': run.run_id})
            terrain = None

        origin_elevation = self.terrain.elevation(origin.lat, origin.lon, zoom)
        if origin_elevation is None:
            origin_data = await self.terrain.precompute_for_points([origin], grid.resolution, zoom)
            if origin_data[0].has_data:
                origin_elevation = origin_data[0].average_elevation

        if origin_elevation is None:
            self.logger.warning("Origin elevation unavailable, direct coverage will be unknown",
                                extra={'run_id': run.run_id})
        return terrain, origin_elevation

    # ------------------------------------------------------------------
    # Direct coverage
    # ------------------------------------------------------------------

    def _apply_shadow(self, probability: float, shadow: ShadowResult) -> float:
        if shadow.in_shadow:
            factor = 1.0 - shadow.shadow_depth * self.config.shadow_penalty_factor
        else:
            factor = 1.0 - shadow.fresnel_blockage * self.config.fresnel_penalty_factor
        return min(1.0, max(0.0, probability * factor))

    def _direct_point(self, ctx: _LinkContext, point: GeoPoint,
                      cell_terrain: Optional[TerrainCellData]) -> CoveragePoint:
        distance = haversine_distance(ctx.origin.lat, ctx.origin.lon, point.lat, point.lon)
        if distance > ctx.max_distance_m:
            return CoveragePoint.zero(point.lat, point.lon, distance)

        if cell_terrain is not None:
            if not cell_terrain.has_data:
                return CoveragePoint.unknown(point.lat, point.lon)
            target_elevation = cell_terrain.average_elevation
        else:
            target_elevation = self.terrain.elevation(point.lat, point.lon, ctx.zoom)

        if ctx.origin_elevation is None or target_elevation is None:
            return CoveragePoint.unknown(point.lat, point.lon)

        try:
            shadow = self.terrain.fast_shadow(
                ctx.origin, point, ctx.origin_elevation, target_elevation,
                ctx.user_antenna_m, ctx.receiving_antenna_m, ctx.zoom
            )
        except TerrainDataUnavailableError:
            return CoveragePoint.unknown(point.lat, point.lon)

        link = self.propagation.estimate(distance, shadow.fresnel_blockage)
        return CoveragePoint(
            lat=point.lat,
            lon=point.lon,
            coverage_probability=self._apply_shadow(link.probability, shadow),
            signal_strength=link.signal_dbm,
            fresnel_blockage=shadow.fresnel_blockage,
            terrain_shadow=shadow.shadow_depth,
            contributing_peers=frozenset({ORIGIN_CONTRIBUTOR}),
            distance_to_nearest_peer=distance
        )

    def _safe_direct_point(self, ctx: _LinkContext, point: GeoPoint,
                           cell_terrain: Optional[TerrainCellData]) -> CoveragePoint:
        try:
            return self._direct_point(ctx, point, cell_terrain)
        except Exception as e:
            self.logger.warning(f"Direct coverage failed at ({point.lat:.5f}, {point.lon:.5f}): {e}")
            return CoveragePoint.zero(point.lat, point.lon)

    async def _direct_coverage(self, run: _CoverageRun, ctx: _LinkContext) -> None:
        grid = run.grid
        if not run.terrain_available:
            for r in range(grid.rows):
                for c in range(grid.cols):
                    point = grid.point(r, c)
                    run.cells[r][c] = CoveragePoint.unknown(point.lat, point.lon)
            return

        order = spiral_order(grid.rows, grid.cols)
        if self.strategy is ExecutionStrategy.BOUNDED_PARALLEL and grid.size > 1:
            await self._direct_parallel(run, ctx, order)
        else:
            await self._direct_sequential(run, ctx, order)

    async def _direct_sequential(self, run: _CoverageRun, ctx: _LinkContext,
                                 order: Sequence[Cell]) -> None:
        """Direct coverage in chunks evaluated off the event loop, center outward"""
        frequency = max(1, self.config.incremental_update_frequency)
        total = len(order)

        for start in range(0, total, frequency):
            chunk = order[start:start + frequency]
            computed: Dict[Cell, CoveragePoint] = {}
            await self._in_worker(run, self._compute_cells, ctx, run.grid, chunk, computed)
            self._merge(run, computed)

            done = start + len(chunk)
            if done < total:
                run.check_deadline()
                self._report_cells(run, done, total)

    async def _direct_parallel(self, run: _CoverageRun, ctx: _LinkContext,
                               order: Sequence[Cell]) -> None:
        """
        Center patch first, then the four quadrants concurrently

        Each region runs on the worker pool under its own timeout; cells a
        region did not reach keep their default value.
        """
        grid = run.grid
        patch = center_patch(grid.rows, grid.cols, self.config.center_patch_fraction)
        patch_cells = [cell for cell in order if in_region(cell, patch)]
        computed: Dict[Cell, CoveragePoint] = {}
        await self._compute_region(run, ctx, "center", patch_cells, computed)
        self._merge(run, computed)
        done = len(patch_cells)
        self._report_cells(run, done, len(order))

        regions = [
            (f"quadrant-{i}", [cell for cell in order if in_region(cell, q) and not in_region(cell, patch)])
            for i, q in enumerate(quadrants(grid.rows, grid.cols))
        ]
        outputs: Dict[str, Dict[Cell, CoveragePoint]] = {name: {} for name, _ in regions}

        try:
            await asyncio.wait_for(
                asyncio.gather(*(
                    self._compute_region(run, ctx, name, cells, outputs[name])
                    for name, cells in regions
                )),
                timeout=self.config.parallel_stage_timeout_sec
            )
        except asyncio.TimeoutError:
            self.logger.warning("Parallel direct coverage exceeded its stage timeout",
                                extra={'run_id': run.run_id})

        for name, cells in regions:
            self._merge(run, outputs[name])
            done += len(cells)
            self._report_cells(run, done, len(order))

        for r in range(grid.rows):
            for c in range(grid.cols):
                if run.cells[r][c] is None:
                    run.cells[r][c] = self._default_cell(run, grid.point(r, c))

    async def _compute_region(self, run: _CoverageRun, ctx: _LinkContext, name: str,
                              cells: Sequence[Cell], out: Dict[Cell, CoveragePoint]) -> None:
        if not cells:
            return

        try:
            await self._in_worker(run, self._compute_cells, ctx, run.grid, cells, out,
                                  timeout=self.config.quadrant_timeout_sec)
        except asyncio.TimeoutError:
            self.logger.warning(f"Region {name} timed out after {len(out)}/{len(cells)} cells",
                                extra={'run_id': run.run_id})
        except Exception as e:
            self.logger.error(f"Region {name} failed: {e}", extra={'run_id': run.run_id}, exc_info=True)

    def _worker_count(self) -> int:
        if self.strategy is ExecutionStrategy.BOUNDED_PARALLEL:
            return max(1, self.config.parallel_workers)
        return 1

    async def _in_worker(self, run: _CoverageRun, fn: Callable[..., object], *args,
                         timeout: Optional[float] = None) -> object:
        """
        Run fn(*args, stop) on the run's worker pool

        fn must return once the stop event is set. The worker has exited
        by the time this returns or raises, including on timeout and
        cancellation, so nothing it computes can land after the run ends.
        """
        stop = threading.Event()
        run.stop_events.append(stop)
        worker = asyncio.wrap_future(run.executor.submit(fn, *args, stop))
        try:
            return await asyncio.wait_for(asyncio.shield(worker), timeout=timeout)
        finally:
            stop.set()
            await asyncio.wait([worker])

    def _compute_cells(self, ctx: _LinkContext, grid: EvaluationGrid, cells: Sequence[Cell],
                       out: Dict[Cell, CoveragePoint], stop: threading.Event) -> int:
        """Worker body; stops between cells once the event is set"""
        for r, c in cells:
            if stop.is_set():
                break
            out[(r, c)] = self._safe_direct_point(ctx, grid.point(r, c), ctx.cell_terrain(r, c))
        return len(out)

    @staticmethod
    def _merge(run: _CoverageRun, computed: Mapping[Cell, CoveragePoint]) -> None:
        for (r, c), point in computed.items():
            run.cells[r][c] = point

    def _meets_early_exit(self, run: _CoverageRun) -> bool:
        high = sum(
            1 for row in run.cells for cell in row
            if cell is not None and cell.coverage_probability >= self.config.high_coverage_threshold
        )
        fraction = high / run.grid.size
        if fraction >= self.config.early_exit_fraction:
            self.logger.info(f"Direct coverage high in {fraction:.0%} of cells, skipping mesh extension",
                             extra={'run_id': run.run_id})
            return True
        return False

    # ------------------------------------------------------------------
    # Mesh extension
    # ------------------------------------------------------------------

    async def _mesh_extension(self, run: _CoverageRun, ctx: _LinkContext) -> None:
        peers = self._poll_peers()
        if not peers:
            self.logger.debug("No mesh peers known", extra={'run_id': run.run_id})
            return

        network = await self.peers.extended_coverage(ctx.origin, peers, run.request.max_peer_distance_m)
        if not network:
            self.logger.info(f"None of {len(peers)} peers reachable from origin",
                             extra={'run_id': run.run_id})
            return
        run.check_deadline()

        grid = run.grid
        peer_terrain = await self.terrain.precompute_for_points(
            [peer.location for peer in network], grid.resolution, ctx.zoom
        )
        network = self.peers.with_elevations(network, [data.average_elevation for data in peer_terrain])
        peer_elevations = {
            peer.peer_id: (data.average_elevation if data.has_data else None)
            for peer, data in zip(network, peer_terrain)
        }
        by_id = {peer.peer_id: peer for peer in network}

        order = spiral_order(grid.rows, grid.cols)
        frequency = max(1, self.config.incremental_update_frequency)
        improved = 0

        for start in range(0, len(order), frequency):
            chunk = [
                (r, c) for r, c in order[start:start + frequency]
                if run.cells[r][c] is None
                or run.cells[r][c].coverage_probability < self.config.good_coverage_threshold
            ]
            candidates: Dict[Cell, Optional[CoveragePoint]] = {}
            await self._in_worker(run, self._mesh_cells, ctx, grid, chunk, network, by_id,
                                  peer_elevations, candidates)

            for (r, c), candidate in candidates.items():
                current = run.cells[r][c]
                combined = combine_coverage(current, candidate)
                if combined is not current:
                    run.cells[r][c] = combined
                    improved += 1

            done = start + frequency
            if done < len(order):
                run.check_deadline()
                self._report_cells(run, done, len(order))

        self.logger.info(f"Mesh extension via {len(network)} peers improved {improved} cells",
                         extra={'run_id': run.run_id})

    def _mesh_cells(self, ctx: _LinkContext, grid: EvaluationGrid, cells: Sequence[Cell],
                    network: Sequence[NetworkPeer], by_id: Mapping[str, NetworkPeer],
                    peer_elevations: Mapping[str, Optional[float]],
                    out: Dict[Cell, Optional[CoveragePoint]], stop: threading.Event) -> int:
        for r, c in cells:
            if stop.is_set():
                break
            out[(r, c)] = self._safe_mesh_point(ctx, grid.point(r, c), ctx.cell_terrain(r, c),
                                                network, by_id, peer_elevations)
        return len(out)

    def _mesh_point(self, ctx: _LinkContext, point: GeoPoint, cell_terrain: Optional[TerrainCellData],
                    network: Sequence[NetworkPeer], by_id: Mapping[str, NetworkPeer],
                    peer_elevations: Mapping[str, Optional[float]]) -> Optional[CoveragePoint]:
        coverage = self.peers.best_peer_coverage(point, network, ctx.max_distance_m)
        if coverage.peer_id is None or coverage.probability <= 0:
            return None

        if cell_terrain is not None and not cell_terrain.has_data:
            return CoveragePoint.unknown(point.lat, point.lon)
        target_elevation = cell_terrain.average_elevation if cell_terrain is not None else None

        peer = by_id[coverage.peer_id]
        try:
            shadow = self.terrain.shadow(
                peer.location, point, peer_elevations.get(peer.peer_id), target_elevation,
                ctx.receiving_antenna_m, ctx.receiving_antenna_m, ctx.zoom
            )
        except TerrainDataUnavailableError:
            return CoveragePoint.unknown(point.lat, point.lon)

        return CoveragePoint(
            lat=point.lat,
            lon=point.lon,
            coverage_probability=self._apply_shadow(coverage.probability, shadow),
            signal_strength=self.propagation.signal_strength(coverage.distance_m, shadow.fresnel_blockage),
            fresnel_blockage=shadow.fresnel_blockage,
            terrain_shadow=shadow.shadow_depth,
            contributing_peers=frozenset({peer.peer_id}),
            distance_to_nearest_peer=coverage.distance_m
        )

    def _safe_mesh_point(self, ctx: _LinkContext, point: GeoPoint,
                         cell_terrain: Optional[TerrainCellData], network: Sequence[NetworkPeer],
                         by_id: Mapping[str, NetworkPeer],
                         peer_elevations: Mapping[str, Optional[float]]) -> Optional[CoveragePoint]:
        try:
            return self._mesh_point(ctx, point, cell_terrain, network, by_id, peer_elevations)
        except Exception as e:
            self.logger.warning(f"Mesh coverage failed at ({point.lat:.5f}, {point.lon:.5f}): {e}")
            return None

    # ------------------------------------------------------------------
    # Refinement and filtering
    # ------------------------------------------------------------------

    async def _refine(self, run: _CoverageRun, ctx: _LinkContext) -> None:
        """Re-evaluate the promising cells nearest the center on a 2x2 sub-grid"""
        grid = run.grid
        cr, cc = grid.center_cell
        candidates = [
            (r, c) for r in range(grid.rows) for c in range(grid.cols)
            if run.cells[r][c] is not None
            and run.cells[r][c].coverage_probability >= self.config.refinement_threshold
        ]
        candidates.sort(key=lambda cell: ((cell[0] - cr) ** 2 + (cell[1] - cc) ** 2, cell))
        candidates = candidates[:self.config.max_refinement_areas]

        for n, (r, c) in enumerate(candidates, 1):
            parent = run.cells[r][c]
            # Sub-points sit at the centers of the cell's four quarters
            dlat = meters_to_lat_degrees(grid.row_spacing_m / 4.0)
            dlon = meters_to_lon_degrees(grid.col_spacing_m / 4.0, parent.lat)

            best = await self._in_worker(run, self._best_sub_point, ctx, parent, dlat, dlon)
            if best is not None and not best.is_unknown:
                folded = best.with_coverage(lat=parent.lat, lon=parent.lon)
                run.cells[r][c] = combine_coverage(parent, folded)

            run.check_deadline()
            self._report_cells(run, n, len(candidates))

    def _best_sub_point(self, ctx: _LinkContext, parent: CoveragePoint, dlat: float, dlon: float,
                        stop: threading.Event) -> Optional[CoveragePoint]:
        best: Optional[CoveragePoint] = None
        for sub_lat in (parent.lat - dlat, parent.lat + dlat):
            for sub_lon in (parent.lon - dlon, parent.lon + dlon):
                if stop.is_set():
                    return best
                best = combine_coverage(best, self._safe_direct_point(ctx, GeoPoint(sub_lat, sub_lon), None))
        return best

    def _filter(self, run: _CoverageRun) -> None:
        threshold = self.config.min_coverage_threshold
        filtered = 0
        for row in run.cells:
            for c, cell in enumerate(row):
                if cell is None or cell.is_unknown or cell.coverage_probability >= threshold:
                    continue
                if cell.coverage_probability > 0 or cell.contributing_peers:
                    filtered += 1
                row[c] = cell.with_coverage(
                    coverage_probability=0.0,
                    signal_strength=NO_SIGNAL_DBM,
                    contributing_peers=frozenset()
                )
        if filtered:
            self.logger.debug(f"Filtered {filtered} low-coverage cells", extra={'run_id': run.run_id})

    @property
    def statistics(self) -> Dict[str, object]:
        return {
            'strategy': self.strategy.value,
            'runs': self.run_count,
            'timed_out_runs': self.timed_out_runs,
            'failed_runs': self.failed_runs,
            'last_run_duration_sec': self.last_run_duration,
        }


def _progress_adapter(
    callback: Optional[ProgressCallback]
) -> Optional[Callable[[CoverageProgress], None]]:
    if callback is None:
        return None
    return lambda progress: callback(progress.fraction, progress.message)
