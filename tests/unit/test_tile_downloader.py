"""
Unit Tests for the Terrain Tile Downloader

Tests cover:
- HTTP fetch success and error handling (mocked aiohttp)
- Tile validation before storing
- Offline and max-zoom guards
- Per-tile download deduplication
- Area downloads from the availability sample grid
"""

import asyncio
import io
import pytest
import numpy as np
from unittest.mock import AsyncMock, MagicMock, patch
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / 'src'))

from common.config import TerrainConfig
from common.geodesy import Bounds, GeoPoint
from terrain.tile_downloader import (
    TileDownloader, availability_sample_count, tiles_for_bounds
)
from terrain.tiles import encode_terrain_rgb

TEMPLATE = "https://tiles.example.net/{z}/{x}/{y}.png?key={api_key}"


def png_tile_bytes(elevation: float = 500.0) -> bytes:
    buffer = io.BytesIO()
    encode_terrain_rgb(np.full((256, 256), elevation)).save(buffer, format='PNG')
    return buffer.getvalue()


def mock_http_response(status: int = 200, body: bytes = b""):
    response = AsyncMock()
    response.status = status
    response.read = AsyncMock(return_value=body)
    return response


class TestTileSelection:
    """Test which tiles an area touches"""

    def test_sample_count_by_zoom(self):
        assert availability_sample_count(14) == 8
        assert availability_sample_count(12) == 8
        assert availability_sample_count(10) == 6
        assert availability_sample_count(8) == 4

    def test_small_area_single_tile(self):
        bounds = Bounds.from_center(GeoPoint(39.74, -104.99), 200.0)
        tiles = tiles_for_bounds(bounds, 10, 4)
        assert len(tiles) == 1
        assert tiles[0][0] == 10

    def test_tiles_unique(self):
        bounds = Bounds.from_center(GeoPoint(39.74, -104.99), 20000.0)
        tiles = tiles_for_bounds(bounds, 12, 8)
        assert len(tiles) == len(set(tiles))
        assert len(tiles) > 1


class TestTileDownloader:
    """Test suite for TileDownloader"""

    @pytest.fixture
    def config(self):
        return TerrainConfig(tile_url_template=TEMPLATE, tile_api_key="secret",
                             inter_batch_pause_sec=0.0)

    @pytest.fixture
    def downloader(self, tile_store, config):
        return TileDownloader(tile_store, config=config)

    def test_initialization(self, downloader):
        assert downloader.enabled
        assert downloader.max_zoom == 14
        assert downloader.tile_url(12, 3, 4) == "https://tiles.example.net/12/3/4.png?key=secret"

    def test_disabled_without_api_key(self, tile_store):
        """Test a keyed template with no key never reaches the network"""
        config = TerrainConfig(tile_url_template=TEMPLATE, tile_api_key=None)
        assert not TileDownloader(tile_store, config=config).enabled

    def test_disabled_by_flag(self, tile_store, config):
        assert not TileDownloader(tile_store, enabled=False, config=config).enabled

    @pytest.mark.asyncio
    async def test_fetch_success(self, downloader):
        body = png_tile_bytes()
        with patch('aiohttp.ClientSession') as mock_session:
            session = mock_session.return_value.__aenter__.return_value
            session.get = MagicMock()
            session.get.return_value.__aenter__.return_value = \
                mock_http_response(200, body)

            data = await downloader.fetch_tile_bytes(downloader.tile_url(12, 1, 1))

        assert data == body

    @pytest.mark.asyncio
    async def test_fetch_http_error(self, downloader):
        with patch('aiohttp.ClientSession') as mock_session:
            session = mock_session.return_value.__aenter__.return_value
            session.get = MagicMock()
            session.get.return_value.__aenter__.return_value = \
                mock_http_response(404)

            data = await downloader.fetch_tile_bytes(downloader.tile_url(12, 1, 1))

        assert data is None

    @pytest.mark.asyncio
    async def test_fetch_empty_body(self, downloader):
        with patch('aiohttp.ClientSession') as mock_session:
            session = mock_session.return_value.__aenter__.return_value
            session.get = MagicMock()
            session.get.return_value.__aenter__.return_value = \
                mock_http_response(200, b"")

            assert await downloader.fetch_tile_bytes(downloader.tile_url(12, 1, 1)) is None

    @pytest.mark.asyncio
    async def test_download_stores_tile(self, downloader, tile_store):
        with patch('aiohttp.ClientSession') as mock_session:
            session = mock_session.return_value.__aenter__.return_value
            session.get = MagicMock()
            session.get.return_value.__aenter__.return_value = \
                mock_http_response(200, png_tile_bytes(812.0))

            assert await downloader.download_tile(12, 10, 20)

        assert tile_store.read_tile(12, 10, 20)[0, 0] == pytest.approx(812.0)
        assert downloader.statistics['tiles_fetched'] == 1

    @pytest.mark.asyncio
    async def test_invalid_bytes_not_stored(self, downloader, tile_store):
        """Test a non-image response is rejected before reaching disk"""
        downloader.fetch_tile_bytes = AsyncMock(return_value=b"<html>rate limited</html>")

        assert not await downloader.download_tile(12, 10, 20)
        assert not tile_store.has_tile(12, 10, 20)
        assert downloader.statistics['fetch_errors'] == 1

    @pytest.mark.asyncio
    async def test_existing_tile_not_fetched(self, downloader, tile_store):
        tile_store.write_elevations(12, 1, 1, np.zeros((4, 4)))
        downloader.fetch_tile_bytes = AsyncMock()

        assert await downloader.download_tile(12, 1, 1)
        downloader.fetch_tile_bytes.assert_not_called()

    @pytest.mark.asyncio
    async def test_above_max_zoom_skipped(self, downloader):
        downloader.fetch_tile_bytes = AsyncMock()

        assert not await downloader.download_tile(15, 1, 1)
        downloader.fetch_tile_bytes.assert_not_called()
        assert downloader.statistics['skipped_above_max_zoom'] == 1

    @pytest.mark.asyncio
    async def test_offline_returns_false(self, tile_store, config):
        downloader = TileDownloader(tile_store, enabled=False, config=config)
        downloader.fetch_tile_bytes = AsyncMock()

        assert not await downloader.download_tile(12, 1, 1)
        downloader.fetch_tile_bytes.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_requests_deduplicated(self, downloader, tile_store):
        """Test two callers for one tile produce a single request"""
        body = png_tile_bytes()

        async def slow_fetch(url):
            await asyncio.sleep(0.05)
            return body

        downloader.fetch_tile_bytes = AsyncMock(side_effect=slow_fetch)

        results = await asyncio.gather(
            downloader.download_tile(12, 5, 6),
            downloader.download_tile(12, 5, 6),
        )

        assert results == [True, True]
        assert downloader.fetch_tile_bytes.call_count == 1
        assert downloader.statistics['dedup_waits'] == 1
        assert not downloader.is_downloading(12, 5, 6)

    @pytest.mark.asyncio
    async def test_waiter_times_out(self, tile_store, config):
        """Test a waiting caller gives up after the wait timeout"""
        downloader = TileDownloader(tile_store, wait_timeout_sec=0.01, config=config)

        async def stalled_fetch(url):
            await asyncio.sleep(0.2)
            return png_tile_bytes()

        downloader.fetch_tile_bytes = AsyncMock(side_effect=stalled_fetch)

        first = asyncio.create_task(downloader.download_tile(12, 5, 6))
        await asyncio.sleep(0)
        assert await downloader.download_tile(12, 5, 6) is False
        assert await first is True

    @pytest.mark.asyncio
    async def test_download_tiles_batches(self, downloader):
        downloader.fetch_tile_bytes = AsyncMock(return_value=png_tile_bytes())
        tiles = [(12, x, 0) for x in range(7)]

        results = await downloader.download_tiles(tiles, batch_size=3)

        assert all(results.values())
        assert len(results) == 7
        assert downloader.fetch_tile_bytes.call_count == 7

    @pytest.mark.asyncio
    async def test_download_area(self, downloader, tile_store):
        downloader.fetch_tile_bytes = AsyncMock(return_value=png_tile_bytes())
        bounds = Bounds.from_center(GeoPoint(39.74, -104.99), 2000.0)

        available, missing = await downloader.download_area(bounds, 12)

        assert missing > 0
        assert available == missing
        # Second pass finds everything on disk
        assert await downloader.download_area(bounds, 12) == (0, 0)

    @pytest.mark.asyncio
    async def test_download_area_offline_reports_missing(self, tile_store, config):
        downloader = TileDownloader(tile_store, enabled=False, config=config)
        bounds = Bounds.from_center(GeoPoint(39.74, -104.99), 2000.0)

        available, missing = await downloader.download_area(bounds, 12)

        assert available == 0
        assert missing >= 1
