"""
Abstract interfaces for sensors and pose sources.

The same mapping code runs against real middleware adapters or the
simulators shipped in ``rolling_slam.simulation``.
"""

from .sensor_interface import (
    ILaserSource,
    IPoseSource,
    LaserScan,
)

__all__ = [
    'ILaserSource',
    'IPoseSource',
    'LaserScan',
]
