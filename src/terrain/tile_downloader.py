"""
Terrain Tile Downloader

Fetches terrain-RGB tiles from a remote XYZ tile service into the local
TileStore. Downloads are deduplicated per tile: a per-tile asyncio lock
plus an active-download set guarantee at most one request in flight for
any tile, and a second caller waits (bounded by a timeout) for the first
one to finish instead of issuing its own request.
"""

import asyncio
import io
from typing import Dict, Iterable, List, Optional, Set, Tuple

import aiohttp
from PIL import Image

from common.config import TerrainConfig, get_config
from common.geodesy import Bounds, lat_lon_to_tile
from common.logging_config import ServiceLogger, MetricsLogger
from .tiles import TileStore, TileKey, tile_key_str


def availability_sample_count(zoom: int) -> int:
    """Points per side of the availability sampling grid for a zoom level"""
    if zoom >= 12:
        return 8
    elif zoom >= 10:
        return 6
    return 4


def tiles_for_bounds(bounds: Bounds, zoom: int, samples_per_side: int) -> List[TileKey]:
    """Unique tiles touched by an n x n sample grid over the bounds, in sample order"""
    seen: Dict[TileKey, None] = {}
    for point in bounds.sample_points(samples_per_side):
        x, y = lat_lon_to_tile(point.lat, point.lon, zoom)
        seen.setdefault((zoom, x, y), None)
    return list(seen)


class TileDownloader:
    """
    Client for fetching terrain tiles from an XYZ tile service
    """

    def __init__(
        self,
        store: TileStore,
        url_template: str = None,
        api_key: str = None,
        max_zoom: int = None,
        timeout_sec: float = None,
        wait_timeout_sec: float = None,
        enabled: bool = None,
        config: Optional[TerrainConfig] = None
    ):
        """
        Initialize tile downloader

        Args:
            store: Local tile storage that receives downloaded tiles
            url_template: URL with {z}, {x}, {y} and optional {api_key} fields
            api_key: Key substituted into the URL template
            max_zoom: Highest zoom level ever requested from the service
            timeout_sec: HTTP request timeout
            wait_timeout_sec: How long a caller waits on another caller's download
            enabled: Set False to work offline from the local store only
            config: Terrain configuration (defaults from get_config())
        """
        config = config or get_config().terrain

        self.store = store
        self.url_template = url_template or config.tile_url_template
        self.api_key = api_key or config.tile_api_key
        self.max_zoom = max_zoom if max_zoom is not None else config.max_download_zoom
        self.timeout_sec = timeout_sec or config.download_timeout_sec
        self.wait_timeout_sec = wait_timeout_sec or config.download_wait_timeout_sec
        self._enabled = config.download_enabled if enabled is None else enabled

        self.batch_size = config.tile_batch_size
        self.inter_batch_pause_sec = config.inter_batch_pause_sec

        self.logger = ServiceLogger("coverage", "tile_downloader")
        self.metrics = MetricsLogger("coverage")

        # Download coordination
        self._locks: Dict[str, asyncio.Lock] = {}
        self._active: Set[str] = set()

        # Statistics
        self._tiles_fetched = 0
        self._fetch_errors = 0
        self._dedup_waits = 0
        self._skipped_zoom = 0

    @property
    def enabled(self) -> bool:
        """True when the downloader has somewhere to download from"""
        if not self._enabled or not self.url_template:
            return False
        if '{api_key}' in self.url_template and not self.api_key:
            return False
        return True

    def tile_url(self, zoom: int, x: int, y: int) -> str:
        return self.url_template.format(z=zoom, x=x, y=y, api_key=self.api_key or "")

    def is_downloading(self, zoom: int, x: int, y: int) -> bool:
        return tile_key_str(zoom, x, y) in self._active

    async def fetch_tile_bytes(self, url: str) -> Optional[bytes]:
        """
        Fetch raw tile bytes

        Args:
            url: Full tile URL

        Returns:
            Response body, or None if failed
        """
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_sec)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        self.logger.error(
                            f"HTTP {response.status} fetching terrain tile",
                            extra={'url': url.split('?')[0], 'status_code': response.status}
                        )
                        return None

                    data = await response.read()

                    if not data:
                        self.logger.warning("Empty terrain tile response",
                                            extra={'url': url.split('?')[0]})
                        return None

                    return data

        except asyncio.TimeoutError:
            self.logger.error(f"Timeout fetching terrain tile: {url.split('?')[0]}")
            return None
        except aiohttp.ClientError as e:
            self.logger.error(f"HTTP error fetching terrain tile: {e}", exc_info=True)
            return None

    @staticmethod
    def _is_valid_tile(data: bytes) -> bool:
        try:
            with Image.open(io.BytesIO(data)) as image:
                image.verify()
            return True
        except (OSError, ValueError, SyntaxError):
            return False

    async def download_tile(self, zoom: int, x: int, y: int) -> bool:
        """
        Ensure a tile is in the local store, downloading it at most once

        Returns:
            True if the tile is available locally afterwards
        """
        if self.store.has_tile(zoom, x, y):
            return True
        if not self.enabled:
            return False
        if zoom > self.max_zoom:
            self._skipped_zoom += 1
            self.logger.debug(f"Not requesting tile above max zoom {self.max_zoom}",
                              extra={'tile': tile_key_str(zoom, x, y)})
            return False

        key = tile_key_str(zoom, x, y)
        lock = self._locks.setdefault(key, asyncio.Lock())

        if key in self._active or lock.locked():
            return await self._wait_for_download(key, lock, zoom, x, y)

        async with lock:
            if self.store.has_tile(zoom, x, y):
                return True

            self._active.add(key)
            try:
                data = await self.fetch_tile_bytes(self.tile_url(zoom, x, y))

                if data is None or not self._is_valid_tile(data):
                    self._fetch_errors += 1
                    return False

                await asyncio.to_thread(self.store.write_tile, zoom, x, y, data)
                self._tiles_fetched += 1
                self.metrics.log_counter("terrain_tiles_downloaded")
                self.logger.debug(f"Downloaded terrain tile {key}", extra={'bytes': len(data)})
                return True

            except OSError as e:
                self._fetch_errors += 1
                self.logger.error(f"Failed to store terrain tile {key}: {e}", exc_info=True)
                return False

            finally:
                self._active.discard(key)
                self._locks.pop(key, None)

    async def _wait_for_download(self, key: str, lock: asyncio.Lock,
                                 zoom: int, x: int, y: int) -> bool:
        """Wait for another caller's in-flight download of the same tile"""
        self._dedup_waits += 1

        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.wait_timeout_sec)
        except asyncio.TimeoutError:
            self.logger.warning(f"Timed out waiting for download of tile {key}",
                                extra={'timeout_sec': self.wait_timeout_sec})
            return False

        lock.release()
        return self.store.has_tile(zoom, x, y)

    async def download_tiles(self, tiles: Iterable[TileKey], batch_size: int = None,
                             pause_sec: float = None) -> Dict[TileKey, bool]:
        """
        Download tiles in small concurrent batches with a pause between batches

        Args:
            tiles: (zoom, x, y) keys
            batch_size: Tiles per concurrent batch
            pause_sec: Pause between batches

        Returns:
            Availability of each tile after the run
        """
        batch_size = batch_size or self.batch_size
        pause_sec = self.inter_batch_pause_sec if pause_sec is None else pause_sec

        pending = list(dict.fromkeys(tiles))
        results: Dict[TileKey, bool] = {}

        for start in range(0, len(pending), batch_size):
            batch = pending[start:start + batch_size]
            outcomes = await asyncio.gather(
                *(self.download_tile(*tile) for tile in batch),
                return_exceptions=True
            )

            for tile, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    if isinstance(outcome, asyncio.CancelledError):
                        raise outcome
                    self._fetch_errors += 1
                    self.logger.error(f"Tile download failed for {tile_key_str(*tile)}: {outcome}")
                    results[tile] = False
                else:
                    results[tile] = outcome

            if start + batch_size < len(pending) and pause_sec > 0:
                await asyncio.sleep(pause_sec)

        return results

    async def download_area(self, bounds: Bounds, zoom: int,
                            samples_per_side: int = None) -> Tuple[int, int]:
        """
        Download every missing tile touched by the availability sample grid

        Returns:
            (tiles now available, tiles that were missing)
        """
        if zoom > self.max_zoom:
            self.logger.info(f"Skipping area download above max zoom {self.max_zoom}",
                             extra={'zoom': zoom})
            return 0, 0

        samples = samples_per_side or availability_sample_count(zoom)
        missing = [t for t in tiles_for_bounds(bounds, zoom, samples)
                   if not self.store.has_tile(*t)]

        if not missing or not self.enabled:
            return 0, len(missing)

        self.logger.info(f"Downloading {len(missing)} missing terrain tiles",
                         extra={'zoom': zoom})
        results = await self.download_tiles(missing)
        return sum(1 for ok in results.values() if ok), len(missing)

    @property
    def statistics(self) -> Dict[str, int]:
        """Get downloader statistics"""
        return {
            'tiles_fetched': self._tiles_fetched,
            'fetch_errors': self._fetch_errors,
            'dedup_waits': self._dedup_waits,
            'skipped_above_max_zoom': self._skipped_zoom,
            'active_downloads': len(self._active),
        }
