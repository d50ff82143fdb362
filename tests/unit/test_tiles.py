"""
Unit Tests for Terrain Tiles

Tests cover:
- terrain-RGB encode/decode
- Bilinear sampling inside a tile
- Tile store writes, reads and corrupt files
- Point elevation lookups with lower-zoom fallback
"""

import pytest
import numpy as np
from PIL import Image, features
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / 'src'))

from common.config import TerrainConfig
from common.geodesy import lat_lon_to_tile
from terrain.tiles import (
    TerrainSource, TileStore, decode_terrain_rgb, encode_terrain_rgb,
    sample_bilinear, tile_key_str
)

LAT, LON = 39.74, -104.99


class TestTerrainRGB:
    """Test terrain-RGB codec"""

    def test_decode_known_pixel(self):
        """Test the published decode formula on one pixel"""
        # 1*65536 + 134*256 + 100 = 99940 counts
        image = Image.new('RGB', (1, 1), (1, 134, 100))
        assert decode_terrain_rgb(image)[0, 0] == pytest.approx(-6.0)

    def test_sea_level(self):
        """Test 0 m encodes to count 100000"""
        image = encode_terrain_rgb(np.zeros((2, 2)))
        assert image.getpixel((0, 0)) == (1, 134, 160)

    def test_encode_decode_precision(self):
        """Test elevations survive at 0.1 m resolution"""
        elevations = np.array([[-412.3, 0.0], [1234.5, 8848.8]])
        decoded = decode_terrain_rgb(encode_terrain_rgb(elevations))
        np.testing.assert_allclose(decoded, elevations, atol=0.05)

    def test_encode_clamps_below_offset(self):
        """Test elevations below the codec floor clamp to count 0"""
        decoded = decode_terrain_rgb(encode_terrain_rgb(np.full((1, 1), -20000.0)))
        assert decoded[0, 0] == pytest.approx(-10000.0)


class TestBilinear:
    """Test in-tile interpolation"""

    def test_constant_tile(self):
        tile = np.full((4, 4), 250.0)
        assert sample_bilinear(tile, 0.37, 0.81) == pytest.approx(250.0)

    def test_linear_ramp(self):
        """Test interpolation is exact on a linear east-west ramp"""
        tile = np.tile(np.arange(4, dtype=float) * 10.0, (4, 1))
        # Pixel centers at x = 0.125, 0.375, ... carry 0, 10, 20, 30
        assert sample_bilinear(tile, 0.25, 0.5) == pytest.approx(5.0)
        assert sample_bilinear(tile, 0.5, 0.5) == pytest.approx(15.0)

    def test_edges_clamped(self):
        """Test positions outside pixel centers clamp to edge pixels"""
        tile = np.tile(np.arange(4, dtype=float) * 10.0, (4, 1))
        assert sample_bilinear(tile, 0.0, 0.0) == pytest.approx(0.0)
        assert sample_bilinear(tile, 0.999, 0.999) == pytest.approx(30.0)


class TestTileStore:
    """Test on-disk tile storage"""

    def test_tile_path_layout(self, tmp_path):
        store = TileStore(tmp_path, "webp")
        assert store.tile_path(12, 851, 1554) == tmp_path / "12" / "851" / "1554.webp"

    def test_write_and_read(self, tile_store):
        tile_store.write_elevations(12, 1, 2, np.full((256, 256), 1600.0))

        assert tile_store.has_tile(12, 1, 2)
        tile = tile_store.read_tile(12, 1, 2)
        assert tile.shape == (256, 256)
        assert tile[100, 100] == pytest.approx(1600.0)

    @pytest.mark.skipif(not features.check('webp'), reason="Pillow built without WebP")
    def test_webp_lossless(self, tmp_path):
        store = TileStore(tmp_path, "webp")
        store.write_elevations(10, 3, 4, np.full((256, 256), 321.7))
        assert store.read_tile(10, 3, 4)[0, 0] == pytest.approx(321.7, abs=0.05)

    def test_missing_tile(self, tile_store):
        assert not tile_store.has_tile(12, 0, 0)
        assert tile_store.read_tile(12, 0, 0) is None

    def test_corrupt_tile_reads_as_missing(self, tile_store):
        """Test unreadable bytes do not raise"""
        tile_store.write_tile(12, 5, 5, b"not an image")
        assert tile_store.has_tile(12, 5, 5)
        assert tile_store.read_tile(12, 5, 5) is None

    def test_write_leaves_no_partial_files(self, tile_store):
        path = tile_store.write_tile(12, 7, 7, b"data")
        assert [p.name for p in path.parent.iterdir()] == ["7.png"]

    def test_key_string(self):
        assert tile_key_str(12, 851, 1554) == "12/851/1554"


class TestTerrainSource:
    """Test point elevation lookups"""

    def test_elevation_from_tile(self, tile_store):
        x, y = lat_lon_to_tile(LAT, LON, 12)
        tile_store.write_elevations(12, x, y, np.full((256, 256), 1609.0))
        source = TerrainSource(tile_store, config=TerrainConfig())

        assert source.elevation(LAT, LON, 12) == pytest.approx(1609.0)

    def test_elevation_missing(self, tile_store):
        source = TerrainSource(tile_store, config=TerrainConfig())
        assert source.elevation(LAT, LON, 12) is None

    def test_lower_zoom_fallback(self, tile_store):
        """Test a point is resolved from the parent zoom when its tile is absent"""
        x, y = lat_lon_to_tile(LAT, LON, 11)
        tile_store.write_elevations(11, x, y, np.full((256, 256), 1500.0))
        source = TerrainSource(tile_store, config=TerrainConfig())

        assert source.elevation(LAT, LON, 12) == pytest.approx(1500.0)
        assert source.elevation(LAT, LON, 12, allow_lower_zoom=False) is None

    def test_decoded_tiles_cached(self, tile_store):
        x, y = lat_lon_to_tile(LAT, LON, 12)
        tile_store.write_elevations(12, x, y, np.full((256, 256), 10.0))
        source = TerrainSource(tile_store, config=TerrainConfig())

        source.elevation(LAT, LON, 12)
        source.elevation(LAT + 0.0001, LON, 12)

        assert source.statistics['hits'] >= 1
        source.clear_cache()
        assert source.statistics['size'] == 0

    @pytest.mark.asyncio
    async def test_ensure_tile_without_downloader(self, tile_store):
        source = TerrainSource(tile_store, config=TerrainConfig())
        assert await source.ensure_tile(12, 0, 0) is False
