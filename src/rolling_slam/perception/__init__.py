"""
Perception Module

Frame and pose utilities used by the rolling-window mapper.
"""

from .transforms import (
    Pose2D,
    Transform2D,
    normalize_angle,
    map_to_odom_correction,
)

__all__ = [
    'Pose2D',
    'Transform2D',
    'normalize_angle',
    'map_to_odom_correction',
]
