"""
Mesh Coverage Engine

Terrain-aware coverage estimation for a mesh radio network: direct
coverage from the origin, extended through reachable peers.
"""

from .errors import CoverageAnalysisError, CoverageTimeoutError
from .models import (
    Bounds,
    GeoPoint,
    PeerLocation,
    CoverageRequest,
    CoveragePoint,
    CoverageGrid,
    CoverageStatus,
    CoverageProgress
)
from .strategy import ExecutionStrategy, probe_execution_strategy
from .coverage_calculator import CoverageCalculator, PipelineStage
from .coverage_service import (
    CoverageService,
    CoverageStatistics,
    create_coverage_service,
    grid_statistics
)

__all__ = [
    'CoverageAnalysisError',
    'CoverageTimeoutError',
    'Bounds',
    'GeoPoint',
    'PeerLocation',
    'CoverageRequest',
    'CoveragePoint',
    'CoverageGrid',
    'CoverageStatus',
    'CoverageProgress',
    'ExecutionStrategy',
    'probe_execution_strategy',
    'CoverageCalculator',
    'PipelineStage',
    'CoverageService',
    'CoverageStatistics',
    'create_coverage_service',
    'grid_statistics'
]
