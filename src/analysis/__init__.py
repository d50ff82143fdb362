"""
Mesh Peer Network Analysis

Provides tools for:
- Spatial indexing of peer position reports
- Multi-hop reachability from the origin through relays
- Best-peer coverage at a target location
"""

from .peer_network_analyzer import (
    PeerLocation,
    NetworkPeer,
    NetworkCoverage,
    PeerNetworkAnalyzer
)

__all__ = [
    'PeerLocation',
    'NetworkPeer',
    'NetworkCoverage',
    'PeerNetworkAnalyzer'
]
