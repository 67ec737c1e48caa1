"""
Grid Particle Engine

Reference particle-filter engine driving the rolling-window mapper. Each
particle carries a pose hypothesis, a weight, its own occupancy grid and
a reference to the tip of its lineage in the shared measurement history.

This is a deliberately small Rao-Blackwellized filter:
- Motion model with odometry-proportional noise (srr, srt, str, stt)
- Endpoint likelihood against each particle's own grid
- Low variance resampling when the effective particle count drops
- Native incremental map (each processed scan painted into every grid)

References:
- Probabilistic Robotics (Thrun, Burgard, Fox)
- Grisetti et al., "Improved Techniques for Grid Mapping with
  Rao-Blackwellized Particle Filters"
"""

import logging
import math
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np

from ..interface.sensor_interface import LaserScan
from ..perception.transforms import Pose2D, normalize_angle
from .history import HistoryNode, MeasurementHistory
from .occupancy_grid import GridBounds, OccupancyGrid
from .scan_footprint import compute_footprint, valid_beams

logger = logging.getLogger(__name__)


class MapStateError(RuntimeError):
    """The particle set cannot produce a meaningful map."""


@dataclass
class ParticleEngineConfig:
    """Configuration for the particle engine."""
    # Number of particles
    num_particles: int = 30

    # Odometry error model
    srr: float = 0.1        # translation error from translation
    srt: float = 0.2        # translation error from rotation
    str_: float = 0.1       # rotation error from translation
    stt: float = 0.2        # rotation error from rotation

    # Sensor parameters
    max_range: float = 30.0             # readings above are ignored (m)
    max_urange: float = 8.0             # readings are trusted up to (m)
    lskip: int = 0                      # beams skipped in the likelihood
    likelihood_gain: float = 3.0        # smooths the weight distribution

    # Update thresholds (process a scan only after this much motion)
    linear_update: float = 1.0          # meters
    angular_update: float = 0.5         # radians
    temporal_update: float = -1.0       # seconds, <= 0 disables

    # Resampling
    resample_threshold: float = 0.5     # effective particle ratio threshold

    # Map parameters
    resolution: float = 0.05            # meters per cell
    occupied_threshold: float = 0.25


@dataclass
class Particle:
    """Single particle: pose hypothesis, weight, own map and lineage tip."""
    x: float
    y: float
    theta: float
    weight: float
    grid: OccupancyGrid
    node: Optional[HistoryNode] = None
    log_weight: float = 0.0

    @property
    def pose(self) -> Pose2D:
        return Pose2D(self.x, self.y, self.theta)


@dataclass(frozen=True)
class MapHandle:
    """Immutable map produced by the engine on request."""
    grid: OccupancyGrid
    particle_index: int
    node_id: Optional[int]

    @property
    def bounds(self) -> GridBounds:
        return self.grid.bounds


class GridParticleEngine:
    """
    Particle filter with one occupancy grid per particle.

    Usage:
        engine = GridParticleEngine(config, history, map_lock=lock)

        # First valid scan
        engine.initialize(Pose2D(0, 0, 0), bounds, scan, odom_pose, t)
        engine.register_scan()

        # In main loop:
        if engine.move(odom_pose, t):
            engine.integrate(scan, t)
            engine.register_scan()

        # Best hypothesis
        pose = engine.best_pose()
    """

    def __init__(self, config: ParticleEngineConfig, history: MeasurementHistory,
                 rng: Optional[np.random.Generator] = None,
                 map_lock: Optional[threading.Lock] = None,
                 on_swap: Optional[Callable[[], None]] = None):
        """
        Initialize the engine.

        Args:
            config: Configuration parameters
            history: Shared measurement history the lineages are recorded in
            rng: Random generator (seeded by the caller for reproducible runs)
            map_lock: Lock guarding the particle list and grids
            on_swap: Called with ``map_lock`` held whenever the particle
                list is replaced
        """
        self.config = config
        self.history = history
        self.rng = rng if rng is not None else np.random.default_rng()
        self._lock = map_lock if map_lock is not None else threading.Lock()
        self._on_swap = on_swap

        self.particles: List[Particle] = []

        # Odometry bookkeeping
        self._last_odom: Optional[Pose2D] = None
        self._last_update_time = 0.0
        self._linear_distance = 0.0
        self._angular_distance = 0.0

        self.update_count = 0
        self.resample_count = 0

    @property
    def initialized(self) -> bool:
        return len(self.particles) > 0

    def _swap_particles(self, particles: List[Particle]):
        with self._lock:
            self.particles = particles
            if self._on_swap is not None:
                self._on_swap()

    def initialize(self, pose: Pose2D, bounds: GridBounds, scan: LaserScan,
                   odom_pose: Pose2D, timestamp: float):
        """
        Create the particle set at ``pose`` with the first scan as a shared root.

        Args:
            pose: Initial pose in the map frame
            bounds: Bounds of the first window
            scan: First valid scan
            odom_pose: Odometry pose at the scan time
            timestamp: Scan time
        """
        n = self.config.num_particles
        if n <= 0:
            raise MapStateError("Cannot initialize an engine with no particles")

        root = self.history.add(None, pose, timestamp, scan, self._footprint(pose, scan))
        particles = []
        for _ in range(n):
            grid = OccupancyGrid(bounds, self.config.occupied_threshold)
            particles.append(Particle(pose.x, pose.y, pose.theta, 1.0 / n, grid, root))
            self.history.acquire(root)
        self._swap_particles(particles)

        self._last_odom = odom_pose
        self._last_update_time = timestamp
        self._linear_distance = 0.0
        self._angular_distance = 0.0
        logger.info("[ENGINE] Initialized %d particles at (%.2f, %.2f, %.2f)",
                    n, pose.x, pose.y, pose.theta)

    def move(self, odom_pose: Pose2D, timestamp: float) -> bool:
        """
        Apply the odometry motion since the last call to every particle.

        Returns:
            True if the platform moved (or waited) enough for the scan to
            be integrated
        """
        if not self.initialized:
            raise MapStateError("Engine used before initialization")

        delta = odom_pose - self._last_odom
        self._last_odom = odom_pose
        self.motion_update(delta)

        self._linear_distance += math.hypot(delta.x, delta.y)
        self._angular_distance += abs(delta.theta)

        temporal = (self.config.temporal_update > 0
                    and timestamp - self._last_update_time > self.config.temporal_update)
        return (self._linear_distance >= self.config.linear_update
                or self._angular_distance >= self.config.angular_update
                or temporal)

    def integrate(self, scan: LaserScan, timestamp: float):
        """Weight the particles with ``scan``, extend the lineages, resample."""
        if not self.initialized:
            raise MapStateError("Engine used before initialization")

        self._linear_distance = 0.0
        self._angular_distance = 0.0
        self._last_update_time = timestamp

        self.update_weights(scan)
        self.add_nodes(scan, timestamp)
        self._resample_if_needed()
        self.update_count += 1

    def process_scan(self, scan: LaserScan, odom_pose: Pose2D, timestamp: float) -> bool:
        """
        Move the particles and, if the platform moved enough, integrate the scan.

        Returns:
            True if the scan was integrated (new history nodes were added)
        """
        if not self.move(odom_pose, timestamp):
            return False
        self.integrate(scan, timestamp)
        return True

    def motion_update(self, delta: Pose2D):
        """
        Update particles with motion model.

        Args:
            delta: Odometry motion expressed in the previous robot frame
        """
        n = len(self.particles)
        if n == 0:
            return

        trans = math.hypot(delta.x, delta.y)
        rot = abs(delta.theta)
        sxy = 0.3 * self.config.srr

        noisy_dx = delta.x + self.rng.normal(
            0, self.config.srr * abs(delta.x) + self.config.srt * rot + sxy * abs(delta.y), n)
        noisy_dy = delta.y + self.rng.normal(
            0, self.config.srr * abs(delta.y) + self.config.srt * rot + sxy * abs(delta.x), n)
        noisy_dtheta = delta.theta + self.rng.normal(
            0, self.config.stt * rot + self.config.str_ * trans, n)

        for i, particle in enumerate(self.particles):
            cos_theta = math.cos(particle.theta)
            sin_theta = math.sin(particle.theta)
            particle.x += noisy_dx[i] * cos_theta - noisy_dy[i] * sin_theta
            particle.y += noisy_dx[i] * sin_theta + noisy_dy[i] * cos_theta
            particle.theta = normalize_angle(particle.theta + noisy_dtheta[i])

    def update_weights(self, scan: LaserScan):
        """
        Weight particles by how well the scan endpoints match their own grid.

        Endpoints landing on occupied cells raise the weight, endpoints on
        known free cells lower it, unknown cells are neutral.
        """
        valid = valid_beams(scan, self.config.max_urange)
        step = self.config.lskip + 1
        ranges = scan.ranges[valid][::step]
        angles = scan.angles[valid][::step]
        if len(ranges) == 0:
            return

        log_p_occ = math.log(0.9)
        log_p_free = math.log(0.1)
        log_p_unknown = math.log(0.5)

        for particle in self.particles:
            world = particle.theta + angles
            ex = particle.x + ranges * np.cos(world)
            ey = particle.y + ranges * np.sin(world)
            prob = particle.grid.get_probabilities_world(ex, ey)

            log_lik = np.where(
                prob < 0.0, log_p_unknown,
                np.where(prob > particle.grid.occupied_threshold, log_p_occ, log_p_free)
            )
            particle.log_weight += float(np.sum(log_lik))

        self._normalize()

    def _normalize(self):
        """Turn accumulated log weights into normalized weights."""
        n = len(self.particles)
        log_weights = np.array([p.log_weight for p in self.particles])
        gain = 1.0 / (self.config.likelihood_gain * n)

        # Use log-sum-exp trick for numerical stability
        weights = np.exp(gain * (log_weights - np.max(log_weights)))
        weight_sum = np.sum(weights)
        if weight_sum > 0:
            weights = weights / weight_sum
        else:
            weights = np.ones(n) / n

        for particle, w in zip(self.particles, weights):
            particle.weight = float(w)

    def add_nodes(self, scan: LaserScan, timestamp: float):
        """Extend every lineage with a node holding the scan at the particle's pose."""
        for particle in self.particles:
            pose = particle.pose
            node = self.history.add(particle.node, pose, timestamp, scan,
                                    self._footprint(pose, scan))
            self.history.acquire(node)
            if particle.node is not None:
                self.history.release(particle.node)
            particle.node = node

    def _footprint(self, pose: Pose2D, scan: LaserScan):
        return compute_footprint(pose, scan, self.config.resolution,
                                 self.config.max_range, self.config.max_urange)

    @property
    def effective_particles(self) -> float:
        weights = np.array([p.weight for p in self.particles])
        return float(1.0 / np.sum(weights ** 2))

    def _resample_if_needed(self):
        """Resample particles if effective particle count is low."""
        n = len(self.particles)
        if self.effective_particles < self.config.resample_threshold * n:
            self._resample()

    def _resample(self):
        """Low variance resampling."""
        n = len(self.particles)
        cumsum = np.cumsum([p.weight for p in self.particles])

        # Random start
        r = self.rng.uniform(0, 1.0 / n)

        # Systematic resampling
        indices = []
        j = 0
        for i in range(n):
            u = r + i / n
            while u > cumsum[j] and j < n - 1:
                j += 1
            indices.append(j)

        # The first survivor keeps the original grid, duplicates get copies
        survivors = []
        claimed = set()
        for j in indices:
            src = self.particles[j]
            grid = src.grid.copy() if j in claimed else src.grid
            claimed.add(j)
            if src.node is not None:
                self.history.acquire(src.node)
            survivors.append(Particle(src.x, src.y, src.theta, 1.0 / n, grid, src.node))

        previous = self.particles
        self._swap_particles(survivors)
        for particle in previous:
            if particle.node is not None:
                self.history.release(particle.node)

        self.resample_count += 1
        logger.debug("[ENGINE] Resampled, %d distinct ancestors", len(claimed))

    def register_scan(self):
        """Paint every particle's newest node into its own grid (native incremental map)."""
        for particle in self.particles:
            node = particle.node
            if node is not None and node.usable:
                particle.grid.apply_footprint(node.footprint)

    def best_particle_index(self) -> int:
        """Index of the particle with the highest weight."""
        if not self.particles:
            raise MapStateError("No particles to choose a best hypothesis from")
        return int(np.argmax([p.weight for p in self.particles]))

    def best_particle(self) -> Particle:
        return self.particles[self.best_particle_index()]

    def best_pose(self) -> Pose2D:
        return self.best_particle().pose

    def generate_map(self, particle_index: int) -> MapHandle:
        """
        Build a fresh map from a particle's complete lineage.

        Every node that still holds a measurement is painted, whatever its
        retention flag: this map does not forget.
        """
        if not self.particles:
            raise MapStateError("No particles to generate a map from")
        particle = self.particles[particle_index]
        grid = OccupancyGrid(particle.grid.bounds, self.config.occupied_threshold)
        for node in self.history.lineage(particle.node):
            if node.footprint is not None:
                grid.apply_footprint(node.footprint)
        node_id = particle.node.node_id if particle.node is not None else None
        return MapHandle(grid, particle_index, node_id)

    def get_weights(self) -> np.ndarray:
        return np.array([p.weight for p in self.particles])
