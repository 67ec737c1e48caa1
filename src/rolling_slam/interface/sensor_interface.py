"""
Abstract interfaces for the mapper's external collaborators.

These interfaces define the contract that real (hardware / middleware)
and simulated implementations must respect:
- ILaserSource: stream of timestamped range scans
- IPoseSource: odometry pose lookup at a given timestamp
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from ..perception.transforms import Pose2D


@dataclass
class LaserScan:
    """Complete planar range scan."""
    ranges: np.ndarray = field(default_factory=lambda: np.zeros(0))
    angle_min: float = 0.0          # Angle of first beam (radians)
    angle_max: float = 0.0          # Angle of last beam (radians)
    angle_increment: float = 0.0    # Angle between beams (radians)
    range_min: float = 0.0          # Readings below are invalid (m)
    range_max: float = 30.0         # Max usable reading (m)
    timestamp: float = 0.0

    def __post_init__(self):
        self.ranges = np.asarray(self.ranges, dtype=np.float64)

    @property
    def num_beams(self) -> int:
        return len(self.ranges)

    @property
    def angles(self) -> np.ndarray:
        """Beam angles relative to the sensor, one per range."""
        return self.angle_min + np.arange(self.num_beams) * self.angle_increment

    @property
    def is_consistent(self) -> bool:
        """Beam count agrees with the declared angular parameters."""
        if self.num_beams == 0 or self.angle_increment == 0.0:
            return False
        expected = int(round((self.angle_max - self.angle_min) / self.angle_increment)) + 1
        return expected == self.num_beams


class ILaserSource(ABC):
    """Abstract interface for a laser scanner."""

    @abstractmethod
    def start(self) -> bool:
        """Start the sensor. Returns True on success."""
        pass

    @abstractmethod
    def stop(self):
        """Stop the sensor."""
        pass

    @abstractmethod
    def get_scan(self) -> Optional[LaserScan]:
        """Return the latest complete scan."""
        pass

    @abstractmethod
    def is_running(self) -> bool:
        """Whether the sensor is active."""
        pass


class IPoseSource(ABC):
    """Abstract interface for odometry pose resolution."""

    @abstractmethod
    def lookup_pose(self, timestamp: float) -> Optional[Pose2D]:
        """
        Resolve the platform pose in the odometry frame.

        Args:
            timestamp: Time of the measurement to resolve

        Returns:
            Pose2D or None if no pose is available for that time
        """
        pass
