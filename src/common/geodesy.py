"""
Geodesy and Tile Coordinate Utilities

This module provides great-circle distance and interpolation, metric
offsets in degrees, geographic bounds, and the slippy-map tile math used
to address terrain tiles.
"""

import math
from dataclasses import dataclass
from typing import Iterator, Tuple

from .constants import (
    EARTH_RADIUS_M, METERS_PER_DEGREE_LAT, MAX_MERCATOR_LATITUDE,
    DEG_TO_RAD, RAD_TO_DEG
)


@dataclass(frozen=True)
class GeoPoint:
    """A latitude/longitude pair in degrees"""

    lat: float
    lon: float

    def distance_to(self, other: 'GeoPoint') -> float:
        """Great circle distance to another point (meters)"""
        return haversine_distance(self.lat, self.lon, other.lat, other.lon)


@dataclass(frozen=True)
class Bounds:
    """Latitude/longitude rectangle (degrees)"""

    north: float
    south: float
    east: float
    west: float

    def __post_init__(self):
        if self.north < self.south:
            raise ValueError(f"north ({self.north}) must not be below south ({self.south})")
        if self.east < self.west:
            raise ValueError(f"east ({self.east}) must not be below west ({self.west})")

    @classmethod
    def from_center(cls, center: GeoPoint, radius_m: float) -> 'Bounds':
        """Square bounds extending radius_m from the center in every direction"""
        lat_delta = meters_to_lat_degrees(radius_m)
        lon_delta = meters_to_lon_degrees(radius_m, center.lat)
        return cls(
            north=min(center.lat + lat_delta, MAX_MERCATOR_LATITUDE),
            south=max(center.lat - lat_delta, -MAX_MERCATOR_LATITUDE),
            east=min(center.lon + lon_delta, 180.0),
            west=max(center.lon - lon_delta, -180.0)
        )

    def extended(self, radius_m: float) -> 'Bounds':
        """Bounds grown by radius_m on each side"""
        lat_delta = meters_to_lat_degrees(radius_m)
        lon_delta = meters_to_lon_degrees(radius_m, self.center.lat)
        return Bounds(
            north=min(self.north + lat_delta, MAX_MERCATOR_LATITUDE),
            south=max(self.south - lat_delta, -MAX_MERCATOR_LATITUDE),
            east=min(self.east + lon_delta, 180.0),
            west=max(self.west - lon_delta, -180.0)
        )

    @property
    def center(self) -> GeoPoint:
        return GeoPoint((self.north + self.south) / 2.0, (self.east + self.west) / 2.0)

    @property
    def height_m(self) -> float:
        """North-south extent (meters)"""
        return (self.north - self.south) * METERS_PER_DEGREE_LAT

    @property
    def width_m(self) -> float:
        """East-west extent at the center latitude (meters)"""
        return (self.east - self.west) * METERS_PER_DEGREE_LAT * math.cos(self.center.lat * DEG_TO_RAD)

    def contains(self, lat: float, lon: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lon <= self.east

    def sample_points(self, n: int) -> Iterator[GeoPoint]:
        """Yield an n x n grid of points spanning the bounds, edges included"""
        n = max(n, 1)
        for i in range(n):
            lat = self.south + (self.north - self.south) * (i / (n - 1) if n > 1 else 0.5)
            for j in range(n):
                lon = self.west + (self.east - self.west) * (j / (n - 1) if n > 1 else 0.5)
                yield GeoPoint(lat, lon)


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate great circle distance between two points using Haversine formula

    Args:
        lat1: Latitude of point 1 (degrees)
        lon1: Longitude of point 1 (degrees)
        lat2: Latitude of point 2 (degrees)
        lon2: Longitude of point 2 (degrees)

    Returns:
        Distance in meters
    """
    lat1_rad = lat1 * DEG_TO_RAD
    lat2_rad = lat2 * DEG_TO_RAD
    dlat = (lat2 - lat1) * DEG_TO_RAD
    dlon = (lon2 - lon1) * DEG_TO_RAD

    a = (math.sin(dlat / 2)**2 +
         math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2)**2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(max(0.0, 1 - a)))

    return EARTH_RADIUS_M * c


def destination_point(lat: float, lon: float, bearing_deg: float, distance_m: float) -> Tuple[float, float]:
    """
    Point reached by travelling distance_m from (lat, lon) along an initial bearing

    Args:
        lat: Start latitude (degrees)
        lon: Start longitude (degrees)
        bearing_deg: Initial bearing (degrees, 0=North, 90=East)
        distance_m: Distance to travel (meters)

    Returns:
        (lat, lon) of the destination (degrees)
    """
    angular = distance_m / EARTH_RADIUS_M
    bearing = bearing_deg * DEG_TO_RAD
    lat1 = lat * DEG_TO_RAD
    lon1 = lon * DEG_TO_RAD

    lat2 = math.asin(math.sin(lat1) * math.cos(angular) +
                     math.cos(lat1) * math.sin(angular) * math.cos(bearing))
    lon2 = lon1 + math.atan2(math.sin(bearing) * math.sin(angular) * math.cos(lat1),
                             math.cos(angular) - math.sin(lat1) * math.sin(lat2))

    return lat2 * RAD_TO_DEG, normalize_longitude(lon2 * RAD_TO_DEG)


def intermediate_point(lat1: float, lon1: float, lat2: float, lon2: float,
                       fraction: float) -> Tuple[float, float]:
    """
    Point at a fraction of the way along the great circle from point 1 to point 2

    Args:
        lat1, lon1: Start point (degrees)
        lat2, lon2: End point (degrees)
        fraction: 0.0 returns the start, 1.0 returns the end

    Returns:
        (lat, lon) of the intermediate point (degrees)
    """
    if fraction <= 0.0:
        return lat1, lon1
    if fraction >= 1.0:
        return lat2, lon2

    delta = haversine_distance(lat1, lon1, lat2, lon2) / EARTH_RADIUS_M
    if delta < 1e-12:
        return lat1, lon1

    phi1, lam1 = lat1 * DEG_TO_RAD, lon1 * DEG_TO_RAD
    phi2, lam2 = lat2 * DEG_TO_RAD, lon2 * DEG_TO_RAD

    a = math.sin((1 - fraction) * delta) / math.sin(delta)
    b = math.sin(fraction * delta) / math.sin(delta)

    x = a * math.cos(phi1) * math.cos(lam1) + b * math.cos(phi2) * math.cos(lam2)
    y = a * math.cos(phi1) * math.sin(lam1) + b * math.cos(phi2) * math.sin(lam2)
    z = a * math.sin(phi1) + b * math.sin(phi2)

    lat = math.atan2(z, math.sqrt(x**2 + y**2))
    lon = math.atan2(y, x)

    return lat * RAD_TO_DEG, lon * RAD_TO_DEG


def meters_to_lat_degrees(meters: float) -> float:
    """Convert a north-south distance to degrees of latitude"""
    return meters / METERS_PER_DEGREE_LAT


def meters_to_lon_degrees(meters: float, lat: float) -> float:
    """Convert an east-west distance at a given latitude to degrees of longitude"""
    cos_lat = max(math.cos(lat * DEG_TO_RAD), 1e-6)
    return meters / (METERS_PER_DEGREE_LAT * cos_lat)


def normalize_longitude(lon: float) -> float:
    """
    Normalize longitude to [-180, 180] range

    Args:
        lon: Longitude (degrees)

    Returns:
        Normalized longitude (degrees)
    """
    while lon > 180:
        lon -= 360
    while lon < -180:
        lon += 360
    return lon


def lat_lon_to_tile_fraction(lat: float, lon: float, zoom: int) -> Tuple[float, float]:
    """
    Fractional slippy-map tile coordinates of a point

    Args:
        lat: Latitude (degrees), clamped to the Web Mercator limit
        lon: Longitude (degrees)
        zoom: Tile zoom level

    Returns:
        (x, y) where the integer part is the tile index and the
        fractional part is the position inside the tile
    """
    n = 2 ** zoom
    lat = max(-MAX_MERCATOR_LATITUDE, min(MAX_MERCATOR_LATITUDE, lat))
    lat_rad = lat * DEG_TO_RAD

    x = (normalize_longitude(lon) + 180.0) / 360.0 * n
    y = (1.0 - math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0 * n

    # Keep the east and south edges inside the last tile
    x = min(max(x, 0.0), n - 1e-9)
    y = min(max(y, 0.0), n - 1e-9)
    return x, y


def lat_lon_to_tile(lat: float, lon: float, zoom: int) -> Tuple[int, int]:
    """Slippy-map tile (x, y) containing a point"""
    x, y = lat_lon_to_tile_fraction(lat, lon, zoom)
    return int(math.floor(x)), int(math.floor(y))


def tile_to_lat_lon(x: float, y: float, zoom: int) -> Tuple[float, float]:
    """Latitude/longitude of a (possibly fractional) tile coordinate's north-west corner"""
    n = 2 ** zoom
    lon = x / n * 360.0 - 180.0
    lat = math.atan(math.sinh(math.pi * (1 - 2 * y / n))) * RAD_TO_DEG
    return lat, lon


def tile_bounds(x: int, y: int, zoom: int) -> Bounds:
    """Geographic bounds covered by a tile"""
    north, west = tile_to_lat_lon(x, y, zoom)
    south, east = tile_to_lat_lon(x + 1, y + 1, zoom)
    return Bounds(north=north, south=south, east=east, west=west)
