"""
Centralized Configuration Management for the Mesh Coverage Engine

This module provides a unified interface for loading and accessing
engine configuration from YAML files. Every tuned threshold, cap and
timeout used by the engine is a named field here so it can be
overridden without code changes.
"""

import os
import yaml
from pathlib import Path
from typing import Optional
from dataclasses import dataclass, field, asdict


@dataclass
class TerrainConfig:
    """Configuration for terrain tiles, sampling and caches"""

    # Tile storage and remote provider
    tile_dir: str = "data/tiles"
    dataset: str = "terrain-dem"
    tile_extension: str = "webp"
    tile_url_template: Optional[str] = "https://api.maptiler.com/tiles/terrain-rgb-v2/{z}/{x}/{y}.webp?key={api_key}"
    tile_api_key: Optional[str] = None
    download_enabled: bool = True
    max_download_zoom: int = 14
    download_timeout_sec: float = 30.0  # HTTP request timeout
    download_wait_timeout_sec: float = 10.0  # Wait on another caller's download

    # Availability checks
    min_fallback_zoom: int = 8
    max_fallback_zoom: int = 14
    availability_fraction: float = 0.5

    # Batch precompute
    tile_batch_size: int = 5
    inter_batch_pause_sec: float = 0.5
    fallback_batch_size: int = 3
    fallback_max_attempts: int = 3
    fallback_backoff_sec: float = 0.5

    # Profile sampling
    default_sample_distance_m: float = 200.0
    min_sample_distance_m: float = 100.0  # paths shorter than 1 km
    max_sample_distance_m: float = 500.0  # paths longer than 10 km
    short_path_m: float = 1000.0
    long_path_m: float = 10000.0
    min_terrain_samples: int = 3
    max_terrain_samples: int = 20

    # Shadow detection
    obstruction_threshold_m: float = 10.0
    fast_shadow_min_distance_m: float = 200.0
    binary_search_iterations: int = 6
    min_segment_length_m: float = 100.0
    fast_shadow_blocked_depth: float = 0.8
    fast_shadow_blocked_blockage: float = 0.9
    shadow_blockage_threshold: float = 0.5

    # Adaptive cell sampling
    detailed_sampling_min_cell_m: float = 100.0

    # Caches
    elevation_cache_size: int = 100
    analysis_cache_size: int = 50
    spatial_cache_size: int = 150
    decoded_tile_cache_size: int = 8
    cache_precision_deg: float = 0.001  # cell terrain summaries
    analysis_cache_precision_deg: float = 0.00001  # shadow results, about 1 m


@dataclass
class PropagationConfig:
    """Configuration for the RF propagation model"""

    frequency_hz: float = 915e6
    base_power_dbm: float = 14.0
    receiver_sensitivity_dbm: float = -130.0
    probability_slope: float = 0.3  # logistic slope per dB of margin
    probability_midpoint_db: float = 10.0  # margin at which probability is 0.5
    min_probability: float = 0.05
    max_probability: float = 1.0
    fresnel_clearance_factor: float = 0.6
    fresnel_table_max_m: float = 50000.0
    fresnel_table_step_m: float = 100.0
    min_path_distance_m: float = 1.0


@dataclass
class PeerNetworkConfig:
    """Configuration for mesh peer reachability analysis"""

    max_peer_distance_m: float = 160934.0  # 100 miles
    max_hops: int = 3
    receivability_threshold: float = 0.5
    early_exit_probability: float = 0.8
    spatial_grid_size_deg: float = 0.1
    parallel_direct_peer_threshold: int = 10
    parallel_relay_threshold: int = 5
    distance_cache_size: int = 500


@dataclass
class CoverageConfig:
    """Configuration for the coverage pipeline"""

    # Grid construction
    min_resolution_m: float = 20.0
    max_resolution_m: float = 600.0
    base_resolution_m: float = 200.0
    min_grid_size: int = 5
    max_grid_size: int = 100

    # Thresholds
    min_coverage_threshold: float = 0.2
    good_coverage_threshold: float = 0.5
    high_coverage_threshold: float = 0.8
    early_exit_fraction: float = 0.8
    refinement_threshold: float = 0.4
    max_refinement_areas: int = 10
    min_refinement_zoom: int = 14

    # Coverage adjustments
    shadow_penalty_factor: float = 0.9
    fresnel_penalty_factor: float = 0.3

    # Timing
    max_calculation_time_sec: float = 480.0
    parallel_stage_timeout_sec: float = 60.0
    quadrant_timeout_sec: float = 30.0
    incremental_update_frequency: int = 50

    # Execution strategy probe
    parallel_workers: int = 2
    parallel_min_cores: int = 2
    parallel_min_memory_bytes: int = 1024 * 1024 * 1024
    center_patch_fraction: float = 0.2

    # Session result cache
    result_cache_ttl_sec: float = 30.0
    result_cache_size: int = 10


@dataclass
class LoggingConfig:
    """Configuration for engine logging"""

    log_level: str = "INFO"
    log_file: Optional[str] = None
    json_format: bool = True


@dataclass
class MeshCoverageConfig:
    """Master configuration for the mesh coverage engine"""

    terrain: TerrainConfig = field(default_factory=TerrainConfig)
    propagation: PropagationConfig = field(default_factory=PropagationConfig)
    peers: PeerNetworkConfig = field(default_factory=PeerNetworkConfig)
    coverage: CoverageConfig = field(default_factory=CoverageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def tile_root(self) -> Path:
        """Directory holding the configured terrain dataset"""
        return Path(self.terrain.tile_dir) / self.terrain.dataset

    @classmethod
    def from_yaml(cls, yaml_path: str) -> 'MeshCoverageConfig':
        """Load configuration from YAML file"""
        with open(yaml_path, 'r') as f:
            config_dict = yaml.safe_load(f) or {}

        return cls(
            terrain=TerrainConfig(**config_dict.get('terrain', {})),
            propagation=PropagationConfig(**config_dict.get('propagation', {})),
            peers=PeerNetworkConfig(**config_dict.get('peers', {})),
            coverage=CoverageConfig(**config_dict.get('coverage', {})),
            logging=LoggingConfig(**config_dict.get('logging', {}))
        )

    def to_yaml(self, yaml_path: str) -> None:
        """Save configuration to YAML file"""
        config_dict = {
            'terrain': asdict(self.terrain),
            'propagation': asdict(self.propagation),
            'peers': asdict(self.peers),
            'coverage': asdict(self.coverage),
            'logging': asdict(self.logging)
        }

        with open(yaml_path, 'w') as f:
            yaml.dump(config_dict, f, default_flow_style=False)


def get_config(config_path: Optional[str] = None) -> MeshCoverageConfig:
    """
    Get engine configuration

    Priority:
    1. Provided config_path
    2. MESHCOV_CONFIG environment variable
    3. config/production.yml
    4. Default configuration
    """
    if config_path is None:
        config_path = os.getenv('MESHCOV_CONFIG')

    if config_path is None:
        # Try default paths
        default_paths = [
            Path(__file__).parent.parent.parent / 'config' / 'production.yml',
            Path('/config/production.yml'),
            Path('config/production.yml')
        ]

        for path in default_paths:
            if path.exists():
                config_path = str(path)
                break

    if config_path and Path(config_path).exists():
        return MeshCoverageConfig.from_yaml(config_path)

    # Return default configuration
    return MeshCoverageConfig()
