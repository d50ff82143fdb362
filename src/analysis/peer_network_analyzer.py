"""
Mesh Peer Network Analyzer

Determines which mesh peers can hear the origin, directly or through
relays, and how much coverage those peers add at a target location.

Relays are assumed to rebroadcast at full power, so a peer's signal at a
target depends only on its own distance to the target, not on how many
hops it took for the message to reach it.
"""

import asyncio
import math
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from common.cache import BoundedCache, EvictionPolicy
from common.concurrency import to_thread_joined
from common.config import PeerNetworkConfig, get_config
from common.constants import METERS_PER_DEGREE_LAT, DEG_TO_RAD
from common.geodesy import GeoPoint, haversine_distance
from common.logging_config import ServiceLogger
from propagation.propagation_model import PropagationModel

GridCell = Tuple[int, int]


@dataclass(frozen=True)
class PeerLocation:
    """Current position report of a mesh peer"""
    lat: float
    lon: float
    accuracy_m: Optional[float] = None
    altitude_m: Optional[float] = None
    timestamp: Optional[float] = None

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(self.lat, self.lon)


@dataclass(frozen=True)
class NetworkPeer:
    """A peer reachable from the origin through the mesh"""
    peer_id: str
    location: GeoPoint
    elevation: float
    signal_strength: float  # dBm received from the previous hop
    hop_count: int
    route: Tuple[str, ...]  # peer ids from the origin, ending with this peer
    can_receive_from_origin: bool = True

    @property
    def is_direct(self) -> bool:
        return self.hop_count == 1


@dataclass(frozen=True)
class NetworkCoverage:
    """Best peer contribution at a target location"""
    probability: float
    peer_id: Optional[str] = None
    distance_m: Optional[float] = None


class PeerNetworkAnalyzer:
    """
    Multi-hop mesh reachability analysis

    Builds a coarse grid index over peer coordinates, finds the peers the
    origin reaches directly, then expands breadth-first through relays up
    to max_hops. A global visited set keeps every peer in at most one route.
    """

    def __init__(
        self,
        propagation: Optional[PropagationModel] = None,
        config: Optional[PeerNetworkConfig] = None
    ):
        """
        Initialize peer network analyzer

        Args:
            propagation: Propagation model for link probabilities
            config: Peer network configuration (defaults from get_config())
        """
        self.config = config or get_config().peers
        self.propagation = propagation or PropagationModel()
        self.logger = ServiceLogger("coverage", "peer_network")

        self._distance_cache = BoundedCache(self.config.distance_cache_size,
                                            EvictionPolicy.EVICT_QUARTER, name="peer_distance")
        self._spatial_index: Dict[GridCell, List[str]] = {}

        # State
        self.last_network: List[NetworkPeer] = []

    # ------------------------------------------------------------------
    # Spatial index
    # ------------------------------------------------------------------

    def _grid_cell(self, lat: float, lon: float) -> GridCell:
        size = self.config.spatial_grid_size_deg
        return int(math.floor(lat / size)), int(math.floor(lon / size))

    def build_spatial_index(self, peers: Mapping[str, PeerLocation]) -> Dict[GridCell, List[str]]:
        """Bucket peer ids by grid cell, replacing any previous index"""
        index: Dict[GridCell, List[str]] = {}
        for peer_id, location in peers.items():
            index.setdefault(self._grid_cell(location.lat, location.lon), []).append(peer_id)
        self._spatial_index = index
        return index

    def peers_within(self, point: GeoPoint, radius_m: float,
                     peers: Mapping[str, PeerLocation]) -> List[Tuple[str, float]]:
        """
        Peers within radius_m of a point, nearest first

        Uses the current spatial index; only grid cells that can contain a
        peer inside the radius are visited.
        """
        size = self.config.spatial_grid_size_deg
        cell_lat, cell_lon = self._grid_cell(point.lat, point.lon)

        lat_span = int(radius_m / (size * METERS_PER_DEGREE_LAT)) + 1
        cos_lat = max(math.cos(point.lat * DEG_TO_RAD), 1e-6)
        lon_span = int(radius_m / (size * METERS_PER_DEGREE_LAT * cos_lat)) + 1

        found: List[Tuple[str, float]] = []
        for dlat in range(-lat_span, lat_span + 1):
            for dlon in range(-lon_span, lon_span + 1):
                for peer_id in self._spatial_index.get((cell_lat + dlat, cell_lon + dlon), ()):
                    location = peers[peer_id]
                    distance = self.distance(point, location.point)
                    if distance <= radius_m:
                        found.append((peer_id, distance))

        found.sort(key=lambda item: (item[1], item[0]))
        return found

    def distance(self, a: GeoPoint, b: GeoPoint) -> float:
        """Cached great circle distance; (a, b) and (b, a) share an entry"""
        ka = (round(a.lat, 6), round(a.lon, 6))
        kb = (round(b.lat, 6), round(b.lon, 6))
        key = (ka, kb) if ka <= kb else (kb, ka)

        cached = self._distance_cache.get(key)
        if cached is not None:
            return cached

        value = haversine_distance(a.lat, a.lon, b.lat, b.lon)
        self._distance_cache.put(key, value)
        return value

    def link_probability(self, distance_m: float) -> float:
        """Coverage probability of an unobstructed full-power link"""
        return self.propagation.coverage_probability(
            self.propagation.signal_strength(distance_m, 0.0)
        )

    # ------------------------------------------------------------------
    # Reachability
    # ------------------------------------------------------------------

    async def extended_coverage(self, origin: GeoPoint, peers: Mapping[str, PeerLocation],
                                max_distance_m: Optional[float] = None) -> List[NetworkPeer]:
        """
        Peers reachable from the origin, directly or through relays

        Args:
            origin: Transmitting node location
            peers: Current peer registry snapshot
            max_distance_m: Maximum single-link distance

        Returns:
            Reachable peers in discovery order (hop 1 first)
        """
        max_distance_m = max_distance_m or self.config.max_peer_distance_m
        threshold = self.config.receivability_threshold

        if not peers:
            self.last_network = []
            return []

        self.build_spatial_index(peers)
        visited = set()
        direct: List[NetworkPeer] = []

        for peer_id, distance in self.peers_within(origin, max_distance_m, peers):
            signal = self.propagation.signal_strength(distance, 0.0)
            if self.propagation.coverage_probability(signal) >= threshold:
                direct.append(NetworkPeer(
                    peer_id=peer_id,
                    location=peers[peer_id].point,
                    elevation=0.0,
                    signal_strength=signal,
                    hop_count=1,
                    route=(peer_id,),
                ))
                visited.add(peer_id)

        discovered = list(direct)
        frontier = direct
        hop = 1

        while frontier and hop < self.config.max_hops:
            hop += 1
            found = await self._expand(frontier, peers, frozenset(visited), max_distance_m, hop)

            new_peers: List[NetworkPeer] = []
            for peer in found:
                if peer.peer_id not in visited:
                    visited.add(peer.peer_id)
                    new_peers.append(peer)

            if not new_peers:
                break

            discovered.extend(new_peers)
            frontier = new_peers

        self.logger.debug(
            f"Mesh reach: {len(direct)} direct, {len(discovered) - len(direct)} via relays",
            extra={'peers': len(peers), 'max_hops': self.config.max_hops}
        )
        self.last_network = discovered
        return discovered

    async def _expand(self, relays: Sequence[NetworkPeer], peers: Mapping[str, PeerLocation],
                      visited: frozenset, max_distance_m: float, hop: int) -> List[NetworkPeer]:
        """Candidates heard by any relay of the current frontier, in relay order"""
        threshold = (self.config.parallel_direct_peer_threshold if hop == 2
                     else self.config.parallel_relay_threshold)

        if len(relays) <= threshold:
            found: List[NetworkPeer] = []
            for relay in relays:
                found.extend(self._discover_from_relay(relay, peers, visited, max_distance_m))
            return found

        outcomes = await asyncio.gather(
            *(to_thread_joined(self._discover_from_relay, relay, peers, visited, max_distance_m)
              for relay in relays),
            return_exceptions=True
        )

        found = []
        for relay, outcome in zip(relays, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                self.logger.error(f"Relay expansion failed for {relay.peer_id}: {outcome}")
                continue
            found.extend(outcome)
        return found

    def _discover_from_relay(self, relay: NetworkPeer, peers: Mapping[str, PeerLocation],
                             visited: frozenset, max_distance_m: float) -> List[NetworkPeer]:
        found = []
        for peer_id, distance in self.peers_within(relay.location, max_distance_m, peers):
            if peer_id in visited or peer_id in relay.route:
                continue

            signal = self.propagation.signal_strength(distance, 0.0)
            if self.propagation.coverage_probability(signal) < self.config.receivability_threshold:
                continue

            found.append(NetworkPeer(
                peer_id=peer_id,
                location=peers[peer_id].point,
                elevation=0.0,
                signal_strength=signal,
                hop_count=relay.hop_count + 1,
                route=relay.route + (peer_id,),
                can_receive_from_origin=relay.can_receive_from_origin,
            ))
        return found

    # ------------------------------------------------------------------
    # Target coverage
    # ------------------------------------------------------------------

    def best_peer_coverage(self, target: GeoPoint, network: Iterable[NetworkPeer],
                           max_distance_m: Optional[float] = None) -> NetworkCoverage:
        """
        Highest coverage any origin-reachable peer provides at the target

        Stops early once a peer reaches the early-exit probability.
        """
        max_distance_m = max_distance_m or self.config.max_peer_distance_m
        best = NetworkCoverage(probability=0.0)

        for peer in network:
            if not peer.can_receive_from_origin:
                continue

            distance = self.distance(peer.location, target)
            if distance > max_distance_m:
                continue

            probability = self.link_probability(distance)
            if probability > best.probability:
                best = NetworkCoverage(probability, peer.peer_id, distance)
                if probability >= self.config.early_exit_probability:
                    break

        return best

    def coverage_probability(self, target: GeoPoint, network: Iterable[NetworkPeer],
                             max_distance_m: Optional[float] = None) -> float:
        """Best reachable-peer coverage probability at the target [0, 1]"""
        return self.best_peer_coverage(target, network, max_distance_m).probability

    @staticmethod
    def with_elevations(network: Sequence[NetworkPeer],
                        elevations: Sequence[float]) -> List[NetworkPeer]:
        """Copies of the peers with ground elevations filled in"""
        return [replace(peer, elevation=elevation) for peer, elevation in zip(network, elevations)]

    def clear_caches(self) -> None:
        """Drop distance cache, spatial index and the last computed network"""
        self._distance_cache.clear()
        self._spatial_index = {}
        self.last_network = []

    @property
    def statistics(self) -> Dict[str, object]:
        hops: Dict[int, int] = {}
        for peer in self.last_network:
            hops[peer.hop_count] = hops.get(peer.hop_count, 0) + 1
        return {
            'reachable_peers': len(self.last_network),
            'peers_by_hop': hops,
            'indexed_cells': len(self._spatial_index),
            'distance_cache': self._distance_cache.statistics,
        }
