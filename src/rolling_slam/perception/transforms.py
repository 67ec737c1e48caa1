"""
Coordinate Transformations

Planar poses and rigid transforms shared by the mapper, the particle
engine and the publish loop:
- Odometry frame (platform pose as reported by wheel/IMU odometry)
- Map frame (pose as estimated by the particle filter)
- Map -> odometry correction broadcast by the publish loop

Conventions:
- X = forward (front of robot)
- Y = left
- Angles are counter-clockwise from X axis, normalized to [-pi, pi]
"""

import math
from typing import Tuple
from dataclasses import dataclass
import numpy as np


@dataclass(frozen=True)
class Pose2D:
    """2D pose (position + orientation)."""
    x: float
    y: float
    theta: float  # Orientation in radians

    def __add__(self, other: 'Pose2D') -> 'Pose2D':
        """Compose two poses (other relative to self)."""
        cos_t = math.cos(self.theta)
        sin_t = math.sin(self.theta)
        x = self.x + cos_t * other.x - sin_t * other.y
        y = self.y + sin_t * other.x + cos_t * other.y
        theta = normalize_angle(self.theta + other.theta)
        return Pose2D(x, y, theta)

    def __sub__(self, other: 'Pose2D') -> 'Pose2D':
        """Express self relative to other (odometry delta)."""
        return other.inverse() + self

    def inverse(self) -> 'Pose2D':
        """Return inverse transformation."""
        cos_t = math.cos(-self.theta)
        sin_t = math.sin(-self.theta)
        x = -(cos_t * self.x - sin_t * self.y)
        y = -(sin_t * self.x + cos_t * self.y)
        return Pose2D(x, y, normalize_angle(-self.theta))


@dataclass(frozen=True)
class Transform2D:
    """2D rigid transformation (rotation + translation)."""
    x: float        # Translation X
    y: float        # Translation Y
    theta: float    # Rotation angle

    def to_matrix(self) -> np.ndarray:
        """Convert to 3x3 homogeneous transformation matrix."""
        cos_t = math.cos(self.theta)
        sin_t = math.sin(self.theta)
        return np.array([
            [cos_t, -sin_t, self.x],
            [sin_t,  cos_t, self.y],
            [0,      0,     1]
        ])

    @staticmethod
    def from_matrix(matrix: np.ndarray) -> 'Transform2D':
        """Create from 3x3 homogeneous transformation matrix."""
        theta = math.atan2(matrix[1, 0], matrix[0, 0])
        x = float(matrix[0, 2])
        y = float(matrix[1, 2])
        return Transform2D(x, y, theta)

    @staticmethod
    def from_pose(pose: Pose2D) -> 'Transform2D':
        return Transform2D(pose.x, pose.y, pose.theta)

    def apply(self, point: Tuple[float, float]) -> Tuple[float, float]:
        """Apply transformation to a point."""
        cos_t = math.cos(self.theta)
        sin_t = math.sin(self.theta)
        x = cos_t * point[0] - sin_t * point[1] + self.x
        y = sin_t * point[0] + cos_t * point[1] + self.y
        return (x, y)

    def inverse(self) -> 'Transform2D':
        """Return inverse transformation."""
        cos_t = math.cos(-self.theta)
        sin_t = math.sin(-self.theta)
        x = -(cos_t * self.x - sin_t * self.y)
        y = -(sin_t * self.x + cos_t * self.y)
        return Transform2D(x, y, -self.theta)

    def compose(self, other: 'Transform2D') -> 'Transform2D':
        """Compose with another transformation (self * other)."""
        result = self.to_matrix() @ other.to_matrix()
        return Transform2D.from_matrix(result)

    @staticmethod
    def identity() -> 'Transform2D':
        """Return identity transformation."""
        return Transform2D(0.0, 0.0, 0.0)


def normalize_angle(angle: float) -> float:
    """Normalize angle to [-pi, pi]."""
    while angle > math.pi:
        angle -= 2 * math.pi
    while angle < -math.pi:
        angle += 2 * math.pi
    return angle


def map_to_odom_correction(map_pose: Pose2D, odom_pose: Pose2D) -> Transform2D:
    """
    Compute the map -> odometry correction.

    The correction is the transform T such that T * odom_pose == map_pose,
    i.e. map_pose composed with the inverse of odom_pose.

    Args:
        map_pose: Platform pose estimated in the map frame
        odom_pose: Platform pose reported by odometry at the same instant

    Returns:
        Transform2D from the map frame to the odometry frame
    """
    return Transform2D.from_pose(map_pose).compose(
        Transform2D.from_pose(odom_pose).inverse()
    )
