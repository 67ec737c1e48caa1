"""
Rolling-window occupancy-grid SLAM.

A particle-filter mapper whose grid has a fixed extent and follows the
platform, forgetting what lies behind it.
"""

from .slam import RollingWindowMapper, PublishedSnapshot, MapStateError
from .config import RollingMapperConfig

__version__ = "0.1.0"

__all__ = [
    'RollingWindowMapper',
    'RollingMapperConfig',
    'PublishedSnapshot',
    'MapStateError',
]
