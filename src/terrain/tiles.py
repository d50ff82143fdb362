"""
Terrain Tile Storage and Elevation Source

Terrain is stored as terrain-RGB raster tiles on disk under
``{tile_dir}/{dataset}/{z}/{x}/{y}.{ext}``. Each pixel encodes an
elevation as

    elevation = -10000 + (R * 65536 + G * 256 + B) * 0.1   (meters)

TileStore handles files; TerrainSource answers point elevation queries
from decoded tiles and triggers downloads for tiles that are missing.
"""

import io
import math
import os
import tempfile
from pathlib import Path
from typing import Optional, Tuple, TYPE_CHECKING

import numpy as np
from PIL import Image

from common.cache import BoundedCache, EvictionPolicy
from common.config import TerrainConfig, get_config
from common.constants import TERRAIN_RGB_OFFSET_M, TERRAIN_RGB_SCALE_M
from common.geodesy import lat_lon_to_tile_fraction
from common.logging_config import ServiceLogger

if TYPE_CHECKING:
    from .tile_downloader import TileDownloader

TileKey = Tuple[int, int, int]  # (zoom, x, y)


def tile_key_str(zoom: int, x: int, y: int) -> str:
    """Canonical "z/x/y" string for a tile"""
    return f"{zoom}/{x}/{y}"


def decode_terrain_rgb(image: Image.Image) -> np.ndarray:
    """
    Decode a terrain-RGB image into an elevation array

    Args:
        image: Pillow image in any mode convertible to RGB

    Returns:
        2D float array of elevations (meters), indexed [row, col]
    """
    rgb = np.asarray(image.convert('RGB'), dtype=np.float64)
    counts = rgb[..., 0] * 65536.0 + rgb[..., 1] * 256.0 + rgb[..., 2]
    return TERRAIN_RGB_OFFSET_M + counts * TERRAIN_RGB_SCALE_M


def encode_terrain_rgb(elevations: np.ndarray) -> Image.Image:
    """
    Encode an elevation array as a terrain-RGB image

    Args:
        elevations: 2D array of elevations (meters)

    Returns:
        RGB Pillow image
    """
    counts = np.round((np.asarray(elevations, dtype=np.float64) - TERRAIN_RGB_OFFSET_M)
                      / TERRAIN_RGB_SCALE_M)
    counts = np.clip(counts, 0, 256 ** 3 - 1).astype(np.uint32)
    rgb = np.stack([
        (counts >> 16) & 0xFF,
        (counts >> 8) & 0xFF,
        counts & 0xFF,
    ], axis=-1).astype(np.uint8)
    return Image.fromarray(rgb)


def sample_bilinear(tile: np.ndarray, frac_x: float, frac_y: float) -> float:
    """
    Bilinear interpolation inside a decoded tile

    Args:
        tile: Elevation array [row, col]
        frac_x: Horizontal position inside the tile [0, 1)
        frac_y: Vertical position inside the tile [0, 1), 0 at the north edge

    Returns:
        Interpolated elevation (meters)
    """
    height, width = tile.shape
    # Pixel centers sit at half-integer positions
    px = min(max(frac_x * width - 0.5, 0.0), width - 1.0)
    py = min(max(frac_y * height - 0.5, 0.0), height - 1.0)

    x0 = int(math.floor(px))
    y0 = int(math.floor(py))
    x1 = min(x0 + 1, width - 1)
    y1 = min(y0 + 1, height - 1)
    dx = px - x0
    dy = py - y0

    top = tile[y0, x0] * (1 - dx) + tile[y0, x1] * dx
    bottom = tile[y1, x0] * (1 - dx) + tile[y1, x1] * dx
    return float(top * (1 - dy) + bottom * dy)


class TileStore:
    """
    On-disk terrain tile cache for one dataset
    """

    def __init__(self, root: Path, extension: str = "webp"):
        """
        Args:
            root: Dataset directory ({tile_dir}/{dataset})
            extension: Tile file extension
        """
        self.root = Path(root)
        self.extension = extension
        self.logger = ServiceLogger("coverage", "tile_store")

    @classmethod
    def from_config(cls, config: Optional[TerrainConfig] = None) -> 'TileStore':
        config = config or get_config().terrain
        return cls(Path(config.tile_dir) / config.dataset, config.tile_extension)

    def tile_path(self, zoom: int, x: int, y: int) -> Path:
        return self.root / str(zoom) / str(x) / f"{y}.{self.extension}"

    def has_tile(self, zoom: int, x: int, y: int) -> bool:
        return self.tile_path(zoom, x, y).is_file()

    def read_tile(self, zoom: int, x: int, y: int) -> Optional[np.ndarray]:
        """Decode a stored tile, or None if it is absent or unreadable"""
        path = self.tile_path(zoom, x, y)
        if not path.is_file():
            return None

        try:
            with Image.open(path) as image:
                return decode_terrain_rgb(image)
        except (OSError, ValueError) as e:
            self.logger.warning(f"Unreadable terrain tile {tile_key_str(zoom, x, y)}: {e}",
                                extra={'path': str(path)})
            return None

    def write_tile(self, zoom: int, x: int, y: int, data: bytes) -> Path:
        """Atomically store raw tile bytes"""
        path = self.tile_path(zoom, x, y)
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".part")
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
            os.replace(tmp_name, path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        return path

    def write_elevations(self, zoom: int, x: int, y: int, elevations: np.ndarray) -> Path:
        """Encode an elevation array as terrain-RGB and store it losslessly"""
        image = encode_terrain_rgb(elevations)
        buffer = io.BytesIO()
        if self.extension.lower() == 'webp':
            image.save(buffer, format='WEBP', lossless=True)
        else:
            image.save(buffer, format='PNG')
        return self.write_tile(zoom, x, y, buffer.getvalue())


class TerrainSource:
    """
    Point elevation lookups over a TileStore

    Decoded tiles are kept in a small LRU so path sampling does not
    re-decode the same image for every sample.
    """

    def __init__(self, store: TileStore, downloader: Optional['TileDownloader'] = None,
                 config: Optional[TerrainConfig] = None):
        """
        Args:
            store: Tile storage to read from
            downloader: Optional downloader used for missing tiles
            config: Terrain configuration (defaults from get_config())
        """
        self.config = config or get_config().terrain
        self.store = store
        self.downloader = downloader
        self.max_download_zoom = self.config.max_download_zoom

        self._tiles = BoundedCache(self.config.decoded_tile_cache_size,
                                   EvictionPolicy.LRU, name="decoded_tiles")

    def has_tile(self, zoom: int, x: int, y: int) -> bool:
        return self.store.has_tile(zoom, x, y)

    def load_tile(self, zoom: int, x: int, y: int) -> Optional[np.ndarray]:
        """Decoded elevation array for a tile, or None if unavailable"""
        key = (zoom, x, y)
        tile = self._tiles.get(key)
        if tile is not None:
            return tile

        tile = self.store.read_tile(zoom, x, y)
        if tile is not None:
            self._tiles.put(key, tile)
        return tile

    def elevation(self, lat: float, lon: float, zoom: int,
                  allow_lower_zoom: bool = True) -> Optional[float]:
        """
        Terrain elevation at a point

        Args:
            lat: Latitude (degrees)
            lon: Longitude (degrees)
            zoom: Preferred tile zoom level
            allow_lower_zoom: Try zoom - 1 when the exact tile is absent

        Returns:
            Elevation in meters, or None when no tile covers the point
        """
        zooms = (zoom, zoom - 1) if allow_lower_zoom and zoom > 0 else (zoom,)
        for z in zooms:
            fx, fy = lat_lon_to_tile_fraction(lat, lon, z)
            x, y = int(fx), int(fy)
            tile = self.load_tile(z, x, y)
            if tile is not None:
                return sample_bilinear(tile, fx - x, fy - y)
        return None

    async def ensure_tile(self, zoom: int, x: int, y: int) -> bool:
        """Make sure a tile is on disk, downloading it if allowed"""
        if self.store.has_tile(zoom, x, y):
            return True
        if self.downloader is None:
            return False
        return await self.downloader.download_tile(zoom, x, y)

    def clear_cache(self) -> None:
        self._tiles.clear()

    @property
    def statistics(self):
        return self._tiles.statistics
