"""
Shared fixtures: offline configuration and synthetic terrain tiles
written to a temporary tile store.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common.config import MeshCoverageConfig
from common.geodesy import Bounds, lat_lon_to_tile
from terrain.tiles import TileStore

TILE_SIZE = 256


def tiles_covering(bounds: Bounds, zoom: int):
    """Every (x, y) tile touching the bounds at a zoom level"""
    x0, y0 = lat_lon_to_tile(bounds.north, bounds.west, zoom)
    x1, y1 = lat_lon_to_tile(bounds.south, bounds.east, zoom)
    return [(x, y) for x in range(x0, x1 + 1) for y in range(y0, y1 + 1)]


def write_flat_tiles(store: TileStore, bounds: Bounds, zoom: int, elevation: float = 100.0) -> int:
    """Write constant-elevation tiles over the bounds; returns the tile count"""
    tiles = tiles_covering(bounds, zoom)
    for x, y in tiles:
        store.write_elevations(zoom, x, y, np.full((TILE_SIZE, TILE_SIZE), elevation))
    return len(tiles)


@pytest.fixture
def offline_config():
    """Configuration that never touches the network and never sleeps"""
    config = MeshCoverageConfig()
    config.terrain.download_enabled = False
    config.terrain.inter_batch_pause_sec = 0.0
    config.terrain.fallback_backoff_sec = 0.0
    return config


@pytest.fixture
def tile_store(tmp_path):
    return TileStore(tmp_path / "tiles" / "terrain-dem", extension="png")
