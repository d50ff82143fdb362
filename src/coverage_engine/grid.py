"""
Evaluation grid construction

Bounds, resolution selection and cell orderings for a coverage run.
Row 0 is the southern edge, column 0 the western edge; the first and
last rows and columns lie exactly on the bounds.
"""

import math
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

from common.config import CoverageConfig
from common.geodesy import Bounds, GeoPoint
from .models import CoverageRequest

Cell = Tuple[int, int]
Region = Tuple[int, int, int, int]  # row_start, row_end, col_start, col_end (end exclusive)


def calculate_bounds(request: CoverageRequest, viewport_bounds: Optional[Bounds] = None) -> Bounds:
    """Request circle bounds, or the viewport extended by the request radius"""
    viewport = viewport_bounds or request.viewport_bounds
    if viewport is not None:
        return viewport.extended(request.radius_m)
    return Bounds.from_center(request.center, request.radius_m)


def adaptive_resolution(zoom: int, config: CoverageConfig) -> float:
    """Zoom-dependent cell size: base * ln(zoom + 1), clamped to the allowed range"""
    resolution = config.base_resolution_m * math.log(zoom + 1)
    return min(config.max_resolution_m, max(config.min_resolution_m, resolution))


def select_resolution(bounds: Bounds, requested_m: float, zoom: int, config: CoverageConfig) -> float:
    """
    Cell size for a run

    The requested resolution is kept unless the grid it implies would exceed
    max_grid_size cells along either edge, in which case it is coarsened to
    the adaptive resolution or the smallest size that fits, whichever is larger.
    """
    resolution = max(requested_m, config.min_resolution_m)
    longest_edge = max(bounds.height_m, bounds.width_m)

    if longest_edge / resolution <= config.max_grid_size:
        return resolution
    return max(adaptive_resolution(zoom, config), longest_edge / config.max_grid_size)


def grid_dimensions(bounds: Bounds, resolution: float, config: CoverageConfig) -> Tuple[int, int]:
    """(rows, cols) clamped to [min_grid_size, max_grid_size]"""
    def clamp(n: int) -> int:
        return min(config.max_grid_size, max(config.min_grid_size, n))

    return clamp(int(bounds.height_m / resolution)), clamp(int(bounds.width_m / resolution))


@dataclass(frozen=True)
class EvaluationGrid:
    """
    Cell center points of a coverage run

    Spacings are the realized distances between neighbouring points. They
    differ from the requested resolution because cell counts are rounded
    down and clamped.
    """
    bounds: Bounds
    row_spacing_m: float
    col_spacing_m: float
    points: Tuple[Tuple[GeoPoint, ...], ...]

    @property
    def resolution(self) -> float:
        """Coarser of the two realized spacings (meters)"""
        return max(self.row_spacing_m, self.col_spacing_m)

    @property
    def rows(self) -> int:
        return len(self.points)

    @property
    def cols(self) -> int:
        return len(self.points[0]) if self.points else 0

    @property
    def size(self) -> int:
        return self.rows * self.cols

    @property
    def center_cell(self) -> Cell:
        return self.rows // 2, self.cols // 2

    def point(self, row: int, col: int) -> GeoPoint:
        return self.points[row][col]


def build_grid(bounds: Bounds, resolution: float, config: CoverageConfig) -> EvaluationGrid:
    """Evenly spaced grid spanning the bounds edge to edge"""
    rows, cols = grid_dimensions(bounds, resolution, config)
    lat_intervals, lon_intervals = max(rows - 1, 1), max(cols - 1, 1)
    lat_step = (bounds.north - bounds.south) / lat_intervals
    lon_step = (bounds.east - bounds.west) / lon_intervals

    points = tuple(
        tuple(GeoPoint(bounds.south + r * lat_step, bounds.west + c * lon_step) for c in range(cols))
        for r in range(rows)
    )
    return EvaluationGrid(bounds=bounds,
                          row_spacing_m=bounds.height_m / lat_intervals,
                          col_spacing_m=bounds.width_m / lon_intervals,
                          points=points)


def spiral_order(rows: int, cols: int) -> List[Cell]:
    """
    Every cell exactly once, center first, then ring by ring outward

    Each ring is walked clockwise starting from its north-west corner.
    """
    if rows <= 0 or cols <= 0:
        return []

    cr, cc = rows // 2, cols // 2
    order: List[Cell] = [(cr, cc)]
    max_ring = max(cr, rows - 1 - cr, cc, cols - 1 - cc)

    for k in range(1, max_ring + 1):
        for cell in _ring(cr, cc, k):
            r, c = cell
            if 0 <= r < rows and 0 <= c < cols:
                order.append(cell)
    return order


def _ring(cr: int, cc: int, k: int) -> Iterator[Cell]:
    top, bottom, left, right = cr + k, cr - k, cc - k, cc + k
    for c in range(left, right + 1):
        yield top, c
    for r in range(top - 1, bottom - 1, -1):
        yield r, right
    for c in range(right - 1, left - 1, -1):
        yield bottom, c
    for r in range(bottom + 1, top):
        yield r, left


def center_patch(rows: int, cols: int, fraction: float) -> Region:
    """Centered block covering `fraction` of each edge (at least one cell)"""
    patch_rows = max(1, int(round(rows * fraction)))
    patch_cols = max(1, int(round(cols * fraction)))
    r0 = (rows - patch_rows) // 2
    c0 = (cols - patch_cols) // 2
    return r0, r0 + patch_rows, c0, c0 + patch_cols


def quadrants(rows: int, cols: int) -> List[Region]:
    """Four disjoint regions covering the grid: SW, SE, NW, NE"""
    mid_r, mid_c = rows // 2, cols // 2
    return [
        (0, mid_r, 0, mid_c),
        (0, mid_r, mid_c, cols),
        (mid_r, rows, 0, mid_c),
        (mid_r, rows, mid_c, cols),
    ]


def in_region(cell: Cell, region: Region) -> bool:
    r0, r1, c0, c1 = region
    return r0 <= cell[0] < r1 and c0 <= cell[1] < c1
