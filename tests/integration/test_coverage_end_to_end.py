"""
End-to-End Integration Tests for Mesh Coverage

Builds the full engine stack from configuration (tile store, terrain
source, terrain analyzer, peer network analyzer, calculator and service)
over synthetic terrain in a temporary directory.

Scenarios:
- Flat area with a nearby peer gives good coverage everywhere
- Missing terrain at every zoom completes with unknown cells
- Peer reachability boundary at the maximum link distance
- Disabled mesh extension leaves the direct-only grid untouched
"""

import asyncio
import pytest
from unittest.mock import AsyncMock
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / 'src'))

from conftest import write_flat_tiles
from common.constants import UNKNOWN_COVERAGE
from common.geodesy import Bounds, GeoPoint, destination_point
from analysis.peer_network_analyzer import PeerLocation, PeerNetworkAnalyzer
from propagation.propagation_model import PropagationModel
from terrain.tiles import TileStore
from coverage_engine.coverage_service import create_coverage_service
from coverage_engine.models import CoverageRequest, CoverageStatus
from coverage_engine.strategy import ExecutionStrategy

CENTER = GeoPoint(39.74, -104.99)


def make_request(**overrides):
    fields = dict(center=CENTER, radius_m=500.0, zoom_level=12, resolution_m=100.0,
                  user_antenna_height_ft=6.0, receiving_antenna_height_ft=6.0,
                  max_peer_distance_m=160934.0, include_mesh_extension=True)
    fields.update(overrides)
    return CoverageRequest(**fields)


def peer_at(bearing_deg: float, distance_m: float, origin: GeoPoint = CENTER) -> PeerLocation:
    lat, lon = destination_point(origin.lat, origin.lon, bearing_deg, distance_m)
    return PeerLocation(lat=lat, lon=lon)


@pytest.fixture
def engine_config(offline_config, tmp_path):
    """Offline configuration with a PNG tile store under tmp_path"""
    offline_config.terrain.tile_dir = str(tmp_path / "tiles")
    offline_config.terrain.tile_extension = "png"
    return offline_config


@pytest.fixture
def flat_terrain(engine_config):
    """Flat terrain at zoom 12 around the test center"""
    store = TileStore(engine_config.tile_root, engine_config.terrain.tile_extension)
    write_flat_tiles(store, Bounds.from_center(CENTER, 5000.0), 12, elevation=1600.0)
    return store


class TestFlatAreaWithPeer:
    """A flat 1 km area with one peer 500 m from center"""

    @pytest.mark.asyncio
    async def test_good_direct_coverage(self, engine_config, flat_terrain):
        """Test center cell reaches good coverage and no cell is unknown"""
        peers = {'relay-1': peer_at(90.0, 500.0)}
        service = create_coverage_service(engine_config, peer_provider=lambda: peers,
                                          strategy=ExecutionStrategy.SEQUENTIAL)

        grid = await service.get_coverage(make_request())

        assert grid.status is CoverageStatus.COMPLETE
        assert grid.unknown_count == 0

        center = grid.point_at(grid.rows // 2, grid.cols // 2)
        assert center.coverage_probability >= engine_config.coverage.high_coverage_threshold

        stats = service.statistics(grid)
        assert stats.unknown_cells == 0
        assert stats.covered_cells == stats.total_cells

    @pytest.mark.asyncio
    async def test_parallel_stack(self, engine_config, flat_terrain):
        """Test bounded-parallel execution gives the same fully known grid"""
        peers = {'relay-1': peer_at(90.0, 500.0)}
        sequential = await create_coverage_service(
            engine_config, peer_provider=lambda: peers, strategy=ExecutionStrategy.SEQUENTIAL
        ).get_coverage(make_request())
        parallel = await create_coverage_service(
            engine_config, peer_provider=lambda: peers,
            strategy=ExecutionStrategy.BOUNDED_PARALLEL
        ).get_coverage(make_request())

        assert parallel.unknown_count == 0
        assert parallel.probabilities().tolist() == sequential.probabilities().tolist()


class TestMissingTerrain:
    """No terrain tiles at the requested zoom or any fallback zoom"""

    @pytest.mark.asyncio
    async def test_all_cells_unknown(self, engine_config):
        """Test every cell is unknown and the run still completes in time"""
        service = create_coverage_service(engine_config, peer_provider=dict,
                                          strategy=ExecutionStrategy.SEQUENTIAL)
        timeout = engine_config.coverage.max_calculation_time_sec

        grid = await asyncio.wait_for(service.get_coverage(make_request()), timeout=timeout)

        assert grid.status is CoverageStatus.COMPLETE
        assert grid.rows > 0
        assert all(p.coverage_probability == UNKNOWN_COVERAGE for p in grid.points())
        assert grid.unknown_count == grid.rows * grid.cols


class TestReachabilityBoundary:
    """Direct reachability at the maximum configured link distance"""

    @pytest.mark.asyncio
    async def test_one_meter_inside_and_outside(self, engine_config):
        """Test a peer at max - 1 m is reached and one at max + 1 m is not"""
        engine_config.peers.max_hops = 1
        analyzer = PeerNetworkAnalyzer(PropagationModel(engine_config.propagation),
                                       engine_config.peers)
        peers = {
            'inside': peer_at(0.0, 4999.0),
            'outside': peer_at(180.0, 5001.0),
        }

        network = await analyzer.extended_coverage(CENTER, peers, max_distance_m=5000.0)

        assert [peer.peer_id for peer in network] == ['inside']
        assert network[0].hop_count == 1


class TestMeshDisabled:
    """Mesh extension switched off"""

    @pytest.mark.asyncio
    async def test_identical_to_direct_only(self, engine_config, flat_terrain):
        """Test the grid matches a run with no peers and the mesh is never consulted"""
        request = make_request(radius_m=1000.0, max_peer_distance_m=600.0)
        peers = {'relay-1': peer_at(90.0, 500.0)}

        direct_only = await create_coverage_service(
            engine_config, peer_provider=dict, strategy=ExecutionStrategy.SEQUENTIAL
        ).get_coverage(request)

        service = create_coverage_service(engine_config, peer_provider=lambda: peers,
                                          strategy=ExecutionStrategy.SEQUENTIAL)
        service.calculator.peers.extended_coverage = AsyncMock(return_value=[])
        disabled = await service.get_coverage(
            make_request(radius_m=1000.0, max_peer_distance_m=600.0,
                         include_mesh_extension=False)
        )

        service.calculator.peers.extended_coverage.assert_not_called()
        assert disabled.probabilities().tolist() == direct_only.probabilities().tolist()
        assert ([p.contributing_peers for p in disabled.points()]
                == [p.contributing_peers for p in direct_only.points()])

    @pytest.mark.asyncio
    async def test_enabled_mesh_extends_same_request(self, engine_config, flat_terrain):
        """Test the same peer does extend coverage when the mesh is enabled"""
        request = make_request(radius_m=1000.0, max_peer_distance_m=600.0)
        peers = {'relay-1': peer_at(90.0, 500.0)}

        direct_only = await create_coverage_service(
            engine_config, peer_provider=dict, strategy=ExecutionStrategy.SEQUENTIAL
        ).get_coverage(request)
        extended = await create_coverage_service(
            engine_config, peer_provider=lambda: peers, strategy=ExecutionStrategy.SEQUENTIAL
        ).get_coverage(request)

        gained = [
            (a.coverage_probability, b.coverage_probability)
            for a, b in zip(direct_only.points(), extended.points())
            if b.coverage_probability > a.coverage_probability
        ]
        assert gained
        assert all(after > before for before, after in gained)
