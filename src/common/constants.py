"""
Physical and Mathematical Constants for the Mesh Coverage Engine

This module contains fundamental constants used throughout the
terrain, propagation and coverage calculations.
"""

import numpy as np

# Earth parameters
EARTH_RADIUS_M = 6378137.0  # WGS-84 equatorial radius in meters
EARTH_RADIUS_KM = EARTH_RADIUS_M / 1000.0
METERS_PER_DEGREE_LAT = 111320.0  # Approximate meters per degree of latitude

# Physical constants
SPEED_OF_LIGHT = 2.99792458e8  # Speed of light in vacuum (m/s)

# Free-space path loss constant for FSPL(dB) = 20log10(d[m]) + 20log10(f[Hz]) + FSPL_CONSTANT_DB
FSPL_CONSTANT_DB = -147.55

# Slippy-map tile geometry
MAX_MERCATOR_LATITUDE = 85.05112878  # Web Mercator latitude limit (degrees)
TERRAIN_RGB_OFFSET_M = -10000.0  # terrain-RGB elevation offset
TERRAIN_RGB_SCALE_M = 0.1  # terrain-RGB elevation step per count

# Conversion factors
FEET_TO_METERS = 0.3048
MHZ_TO_HZ = 1e6  # MHz to Hz conversion
DEG_TO_RAD = np.pi / 180.0  # Degrees to radians
RAD_TO_DEG = 180.0 / np.pi  # Radians to degrees

# Coverage sentinels
UNKNOWN_COVERAGE = -1.0  # Probability value for cells without terrain data
NO_SIGNAL_DBM = -140.0  # Signal strength reported for unknown or filtered cells
