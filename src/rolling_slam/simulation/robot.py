"""
Simulated platform: ground-truth motion, drifting odometry and a laser.

The robot keeps its own clock; every update appends the odometry pose to
an OdometryRecorder, which is what the mapper queries by timestamp.
"""

import bisect
import logging
import math
import threading
from typing import List, Optional

import numpy as np

from ..interface.sensor_interface import ILaserSource, IPoseSource, LaserScan
from ..perception.transforms import Pose2D, normalize_angle
from .world import SimulatedWorld

logger = logging.getLogger(__name__)


class OdometryRecorder(IPoseSource):
    """
    Time-indexed odometry buffer.

    ``lookup_pose`` interpolates between the two samples around the
    requested time and returns None outside the recorded span (plus
    ``tolerance`` seconds on either side).
    """

    def __init__(self, tolerance: float = 0.05, max_samples: int = 10000):
        self.tolerance = tolerance
        self.max_samples = max_samples
        self._times: List[float] = []
        self._poses: List[Pose2D] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._times)

    def record(self, timestamp: float, pose: Pose2D):
        """Append a sample; timestamps must not go backwards."""
        with self._lock:
            if self._times and timestamp < self._times[-1]:
                raise ValueError(
                    f"Odometry sample at {timestamp} older than last sample {self._times[-1]}"
                )
            self._times.append(timestamp)
            self._poses.append(pose)
            if len(self._times) > self.max_samples:
                del self._times[0]
                del self._poses[0]

    def lookup_pose(self, timestamp: float) -> Optional[Pose2D]:
        with self._lock:
            if not self._times:
                return None
            if timestamp < self._times[0] - self.tolerance:
                return None
            if timestamp > self._times[-1] + self.tolerance:
                return None

            i = bisect.bisect_left(self._times, timestamp)
            if i == 0:
                return self._poses[0]
            if i >= len(self._times):
                return self._poses[-1]

            t0, t1 = self._times[i - 1], self._times[i]
            p0, p1 = self._poses[i - 1], self._poses[i]

        if t1 == t0:
            return p1
        a = (timestamp - t0) / (t1 - t0)
        dtheta = normalize_angle(p1.theta - p0.theta)
        return Pose2D(
            p0.x + a * (p1.x - p0.x),
            p0.y + a * (p1.y - p0.y),
            normalize_angle(p0.theta + a * dtheta),
        )


class SimulatedRobot:
    """Simulated robot moving in the world."""

    def __init__(self, world: SimulatedWorld, x: float = 0.0, y: float = 0.0,
                 theta: float = 0.0, odometry_noise: float = 0.0,
                 rng: Optional[np.random.Generator] = None):
        """
        Args:
            world: World to scan
            x, y, theta: Initial ground-truth pose
            odometry_noise: Relative std of the odometry increments
            rng: Random generator for odometry and range noise
        """
        self.world = world
        self.x = x
        self.y = y
        self.theta = theta
        self.time = 0.0

        self.velocity = 0.0
        self.angular_velocity = 0.0

        self.odometry_noise = odometry_noise
        self.rng = rng if rng is not None else np.random.default_rng()

        # Odometry starts at the origin of its own frame
        self.odom = Pose2D(0.0, 0.0, 0.0)
        self.odometry = OdometryRecorder()
        self.odometry.record(self.time, self.odom)

        # Path history
        self.path_x = [self.x]
        self.path_y = [self.y]

    @property
    def pose(self) -> Pose2D:
        return Pose2D(self.x, self.y, self.theta)

    def update(self, dt: float = 0.1):
        """Advance the ground truth and the odometry by ``dt`` seconds."""
        ds = self.velocity * dt
        dtheta = self.angular_velocity * dt

        self.x += ds * math.cos(self.theta)
        self.y += ds * math.sin(self.theta)
        self.theta = normalize_angle(self.theta + dtheta)
        self.time += dt

        if self.odometry_noise > 0:
            ds *= 1.0 + self.rng.normal(0, self.odometry_noise)
            dtheta *= 1.0 + self.rng.normal(0, self.odometry_noise)
        self.odom = self.odom + Pose2D(ds, 0.0, dtheta)
        self.odometry.record(self.time, self.odom)

        self.path_x.append(self.x)
        self.path_y.append(self.y)
        if len(self.path_x) > 1000:
            self.path_x.pop(0)
            self.path_y.pop(0)

    def get_scan(self, num_beams: int = 360, max_range: float = 12.0,
                 noise_std: float = 0.0) -> LaserScan:
        """Scan from the current ground-truth pose, stamped with the robot clock."""
        return self.world.get_scan(self.x, self.y, self.theta, self.time,
                                   num_beams, max_range, noise_std, self.rng)


class SimulatedLaserAdapter(ILaserSource):
    """Laser source reading scans from a simulated robot."""

    def __init__(self, robot: SimulatedRobot, num_beams: int = 360,
                 max_range: float = 12.0, noise_std: float = 0.0):
        self.robot = robot
        self.num_beams = num_beams
        self.max_range = max_range
        self.noise_std = noise_std
        self._running = False

    def start(self) -> bool:
        self._running = True
        logger.info("[LASER] Simulated laser started (%d beams, %.1f m)",
                    self.num_beams, self.max_range)
        return True

    def stop(self):
        self._running = False

    def get_scan(self) -> Optional[LaserScan]:
        if not self._running:
            return None
        return self.robot.get_scan(self.num_beams, self.max_range, self.noise_std)

    def is_running(self) -> bool:
        return self._running
