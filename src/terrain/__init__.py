"""
Terrain data access and line-of-sight analysis
"""

from .models import (
    SamplingMethod,
    ShadowResult,
    TerrainCellData,
    TerrainDataUnavailableError,
    TerrainPoint,
    TerrainProfile
)
from .tiles import TerrainSource, TileStore
from .tile_downloader import TileDownloader
from .terrain_analyzer import TerrainAnalyzer

__all__ = [
    'SamplingMethod',
    'ShadowResult',
    'TerrainCellData',
    'TerrainDataUnavailableError',
    'TerrainPoint',
    'TerrainProfile',
    'TerrainSource',
    'TileStore',
    'TileDownloader',
    'TerrainAnalyzer'
]
