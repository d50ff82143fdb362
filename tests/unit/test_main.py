"""
Unit Tests for the Command Line Entry Point
"""

import json
import pytest
import yaml
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / 'src'))

from coverage_engine.main import build_request, load_peers, main, parse_args


class TestLoadPeers:
    """Test peer registry files"""

    def test_yaml_mapping(self, tmp_path):
        path = tmp_path / "peers.yml"
        path.write_text(
            "relay-1: {lat: 39.75, lon: -104.98}\n"
            "relay-2: {lat: 39.77, lon: -104.95, altitude_m: 1650}\n"
        )

        peers = load_peers(str(path))

        assert set(peers) == {'relay-1', 'relay-2'}
        assert peers['relay-2'].altitude_m == 1650

    def test_json_mapping(self, tmp_path):
        path = tmp_path / "peers.json"
        path.write_text(json.dumps({"7": {"lat": 39.7, "lon": -105.0}}))

        assert load_peers(str(path))['7'].lat == 39.7

    def test_empty_file(self, tmp_path):
        path = tmp_path / "peers.yml"
        path.write_text("")
        assert load_peers(str(path)) == {}

    def test_list_rejected(self, tmp_path):
        path = tmp_path / "peers.yml"
        path.write_text("- {lat: 39.7, lon: -105.0}\n")
        with pytest.raises(ValueError):
            load_peers(str(path))


class TestArguments:
    """Test argument parsing"""

    def test_defaults(self):
        args = parse_args(['--lat', '39.74', '--lon', '-104.99'])

        assert args.radius == 5000.0
        assert args.zoom == 12
        assert args.max_peer_distance is None
        assert not args.no_mesh

    def test_build_request(self):
        args = parse_args(['--lat', '39.74', '--lon', '-104.99', '--radius', '2500',
                           '--antenna-height', '20', '--no-mesh'])
        request = build_request(args, 50000.0)

        assert request.radius_m == 2500.0
        assert request.user_antenna_height_ft == 20.0
        assert request.max_peer_distance_m == 50000.0
        assert not request.include_mesh_extension

    def test_missing_center(self):
        with pytest.raises(SystemExit):
            parse_args(['--lat', '39.74'])


class TestMain:
    """Test a full offline run"""

    @pytest.mark.asyncio
    async def test_offline_run_writes_grid(self, tmp_path, capsys):
        config_path = tmp_path / "config.yml"
        config_path.write_text(yaml.dump({
            'terrain': {'tile_dir': str(tmp_path / "tiles"), 'download_enabled': False},
            'coverage': {'parallel_workers': 1},
            'logging': {'json_format': False},
        }))
        peers_path = tmp_path / "peers.yml"
        peers_path.write_text("relay-1: {lat: 39.75, lon: -104.98}\n")
        output = tmp_path / "out" / "coverage.json"

        code = await main(['--lat', '39.74', '--lon', '-104.99', '--radius', '500',
                           '--peers', str(peers_path), '--config', str(config_path),
                           '--log-level', 'WARNING', '--output', str(output)])

        assert code == 0
        assert "Coverage grid" in capsys.readouterr().out
        data = json.loads(output.read_text())
        assert data['status'] == 'complete'
        assert data['rows'][0][0]['p'] == -1.0
