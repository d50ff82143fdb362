"""
Mesh Coverage Command Line

Runs a single coverage calculation and writes the grid as JSON.

Example:
    python -m coverage_engine.main --lat 39.74 --lon -104.99 --radius 5000 \\
        --zoom 12 --peers peers.yml --output coverage.json
"""

import asyncio
import argparse
import json
import sys
from pathlib import Path
from typing import Dict, Optional

import yaml

from common.config import get_config
from common.logging_config import setup_logging, ServiceLogger
from analysis.peer_network_analyzer import PeerLocation
from .coverage_service import create_coverage_service
from .models import CoverageRequest, GeoPoint


def load_peers(path: str) -> Dict[str, PeerLocation]:
    """
    Peer registry from a YAML or JSON mapping of id -> {lat, lon, ...}

    Example:
        relay-1: {lat: 39.75, lon: -104.98}
        relay-2: {lat: 39.77, lon: -104.95, altitude_m: 1650}
    """
    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Peer file {path} must contain a mapping of peer id to location")

    return {str(peer_id): PeerLocation(**fields) for peer_id, fields in data.items()}


def build_request(args: argparse.Namespace, max_peer_distance_m: float) -> CoverageRequest:
    return CoverageRequest(
        center=GeoPoint(args.lat, args.lon),
        radius_m=args.radius,
        zoom_level=args.zoom,
        resolution_m=args.resolution,
        user_antenna_height_ft=args.antenna_height,
        receiving_antenna_height_ft=args.receiver_height,
        max_peer_distance_m=max_peer_distance_m,
        include_mesh_extension=not args.no_mesh
    )


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Mesh radio terrain coverage calculation')
    parser.add_argument('--lat', type=float, required=True, help='Center latitude (degrees)')
    parser.add_argument('--lon', type=float, required=True, help='Center longitude (degrees)')
    parser.add_argument('--radius', type=float, default=5000.0, help='Coverage radius (meters)')
    parser.add_argument('--zoom', type=int, default=12, help='Terrain zoom level')
    parser.add_argument('--resolution', type=float, default=100.0, help='Requested cell size (meters)')
    parser.add_argument('--antenna-height', type=float, default=6.0,
                        help='Origin antenna height (feet)')
    parser.add_argument('--receiver-height', type=float, default=6.0,
                        help='Receiving antenna height (feet)')
    parser.add_argument('--max-peer-distance', type=float, default=None,
                        help='Maximum single-link distance (meters)')
    parser.add_argument('--peers', help='YAML or JSON file of peer locations')
    parser.add_argument('--no-mesh', action='store_true', help='Direct coverage only')
    parser.add_argument('--config', help='Path to configuration file')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level')
    parser.add_argument('--output', help='Write the coverage grid JSON to this file')
    return parser.parse_args(argv)


async def main(argv: Optional[list] = None) -> int:
    """Main entry point"""
    args = parse_args(argv)
    config = get_config(args.config)

    setup_logging(
        service_name="coverage",
        log_level=args.log_level,
        log_file=config.logging.log_file,
        json_format=config.logging.json_format
    )
    logger = ServiceLogger("coverage", "main")

    peers = load_peers(args.peers) if args.peers else {}
    logger.info(f"Loaded {len(peers)} peers")

    request = build_request(args, args.max_peer_distance or config.peers.max_peer_distance_m)
    service = create_coverage_service(config, peer_provider=lambda: peers)

    def report(fraction: float, message: str):
        logger.info(f"[{fraction:5.1%}] {message}")

    grid = await service.get_coverage(request, on_progress=report)
    stats = service.statistics(grid)

    print(f"Coverage grid {grid.rows}x{grid.cols} at {grid.resolution:.0f}m ({grid.status.value})")
    print(f"  Covered cells:  {stats.covered_cells}/{stats.total_cells} ({stats.coverage_percentage:.1f}%)")
    print(f"  Good cells:     {stats.good_cells}")
    print(f"  Unknown cells:  {stats.unknown_cells}")
    print(f"  Mean / max:     {stats.average_probability:.2f} / {stats.max_probability:.2f}")

    if args.output:
        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, 'w') as f:
            json.dump(grid.to_dict(), f)
        logger.info(f"Coverage grid written to {output_path}")

    return 0


def run():
    """Console script entry point"""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    run()
