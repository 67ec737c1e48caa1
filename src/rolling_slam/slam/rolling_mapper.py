"""
Rolling Window Mapper

Glue between the laser stream, the particle engine and the rolling
window. Each scan goes through:

    throttle -> odometry lookup -> (first scan) map initialization
    -> motion update -> window check -> [resize all grids -> retention
    -> erase discarded -> forget] -> (enough motion) scan integration
    -> map generation -> map->odom correction

The publish loop runs on its own thread and only reads the grids under
``map_lock`` (see publisher.py). Every change to the grids bumps the
generation counter inside the critical section that made it.
"""

import logging
import math
import threading
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..interface.sensor_interface import IPoseSource, LaserScan
from ..perception.transforms import Pose2D, Transform2D, map_to_odom_correction
from .history import HistoryNode, MeasurementHistory, NodeIdAllocator
from .map_generator import GenerationMode, MapGenerator, create_map_generator
from .particle_engine import GridParticleEngine, MapStateError
from .publisher import MapPublisher, PublishedSnapshot
from .resizer import GridResizer
from .retention import RetentionMode, RetentionPolicy, create_retention_policy
from .window import BoundsStatus, WindowTracker

if TYPE_CHECKING:
    from ..config import RollingMapperConfig

logger = logging.getLogger(__name__)

# Strategies that paint each scan in place and cannot skip one
IN_PLACE_MODES = (GenerationMode.NATIVE, GenerationMode.INCREMENTAL)

EntropyListener = Callable[[float], None]


class RollingWindowMapper:
    """
    Occupancy-grid SLAM mapper whose map follows the platform.

    Usage:
        config = RollingMapperConfig.from_yaml("config/rolling_slam.yaml")
        mapper = RollingWindowMapper(config, odometry)
        mapper.publisher.add_map_listener(on_map)
        mapper.start()

        # From the laser driver thread:
        mapper.laser_callback(scan)

        snapshot = mapper.get_map()
        mapper.stop()
    """

    def __init__(self, config: 'RollingMapperConfig', pose_source: IPoseSource,
                 rng: Optional[np.random.Generator] = None):
        """
        Args:
            config: Mapper configuration (validated here)
            pose_source: Odometry lookup by timestamp
            rng: Random generator for the particle filter, defaults to one
                seeded with ``config.seed``
        """
        config.validate()
        self.config = config
        self.pose_source = pose_source
        self.rng = rng if rng is not None else np.random.default_rng(config.seed)

        # Guards the particle grids and the generation counter
        self.map_lock = threading.Lock()
        # Guards the map -> odometry correction
        self.map_to_odom_lock = threading.Lock()

        self.history = MeasurementHistory(NodeIdAllocator())
        self.engine: Optional[GridParticleEngine] = None
        self.tracker = WindowTracker(
            config.window_size, config.resize_margin, config.delta, config.window_lookahead
        )
        self.resizer = GridResizer(self.map_lock, on_swap=self._bump_generation)
        self.generator: MapGenerator = create_map_generator(
            config.generation_mode, self.map_lock, on_swap=self._bump_generation
        )
        self.retention: Optional[RetentionPolicy] = None

        self._map_to_odom = Transform2D.identity()
        self._generation = 0
        self._snapshot_cache: Optional[PublishedSnapshot] = None
        self._last_map_update: Optional[float] = None
        self._entropy_listeners: List[EntropyListener] = []

        # Statistics
        self.scan_count = 0
        self.processed_count = 0
        self.skipped_count = 0
        self.last_entropy = 0.0

        self.publisher = MapPublisher(
            self.take_snapshot,
            self.get_map_to_odom,
            period=config.transform_publish_period,
            tf_delay=config.effective_tf_delay,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Start the publish loop."""
        return self.publisher.start()

    def stop(self):
        """Stop the publish loop."""
        self.publisher.stop()

    @property
    def initialized(self) -> bool:
        return self.engine is not None and self.engine.initialized

    @property
    def generation(self) -> int:
        with self.map_lock:
            return self._generation

    def add_entropy_listener(self, callback: EntropyListener):
        """Call ``callback(entropy)`` after every processed scan."""
        self._entropy_listeners.append(callback)

    # ------------------------------------------------------------------
    # Scan path
    # ------------------------------------------------------------------

    def laser_callback(self, scan: LaserScan) -> bool:
        """
        Process one laser scan.

        Returns:
            True if the scan was integrated into the map
        """
        self.scan_count += 1
        if self.scan_count % self.config.throttle_scans != 0:
            return False

        odom_pose = self.pose_source.lookup_pose(scan.timestamp)
        if odom_pose is None:
            self.skipped_count += 1
            logger.warning("[MAPPER] No odometry at t=%.3f, skipping scan", scan.timestamp)
            return False

        if self.engine is None:
            return self._initialize_map(scan, odom_pose)

        # The window follows every pose, not only the integrated ones
        integrate = self.engine.move(odom_pose, scan.timestamp)
        self._update_window()

        if integrate:
            self.engine.integrate(scan, scan.timestamp)
            self.processed_count += 1
            # Resampling may have changed the best particle
            self._update_window()
            self._update_map(scan.timestamp)

        self._update_map_to_odom(odom_pose)
        if integrate:
            self._emit_entropy()
        return integrate

    def _bump_generation(self):
        # Runs with map_lock held, in the critical section that changed the grids
        self._generation += 1

    def _initialize_map(self, scan: LaserScan, odom_pose: Pose2D) -> bool:
        """Create particles and grids around the first usable scan."""
        if not scan.is_consistent:
            logger.warning("[MAPPER] Inconsistent first scan (%d beams), waiting for another",
                           scan.num_beams)
            return False

        engine_config = self.config.engine_config(scan.range_max)
        engine = GridParticleEngine(engine_config, self.history, self.rng,
                                    map_lock=self.map_lock, on_swap=self._bump_generation)
        self.retention = self._create_retention(engine_config.max_urange)

        # Map and odometry frames coincide at start
        bounds = self.tracker.initial_bounds(odom_pose)
        engine.initialize(odom_pose, bounds, scan, odom_pose, scan.timestamp)
        self.tracker.commit(bounds)
        self.engine = engine

        self.generator.update(self.engine, True, [])
        self._last_map_update = scan.timestamp
        self._update_map_to_odom(odom_pose)

        logger.info(
            "[MAPPER] Map initialized: %dx%d cells at %.3f m, window %.1f m, "
            "retention %s, generation %s",
            bounds.width, bounds.height, bounds.resolution, self.config.window_size,
            self.retention.mode.name, self.generator.mode.name,
        )
        return True

    def _create_retention(self, usable_range: float) -> RetentionPolicy:
        mode = self.config.delete_mode
        if not self.generator.forgets and mode != RetentionMode.NONE:
            logger.warning("[MAPPER] %s generation does not forget, retention %s forced to NONE",
                           self.generator.mode.name, mode.name)
            mode = RetentionMode.NONE
        return create_retention_policy(mode, usable_range)

    def _update_window(self):
        """Move the window if the best pose is too close to an edge."""
        check = self.tracker.check_bounds(self.engine.best_pose())
        if check.status != BoundsStatus.RESIZE_NEEDED:
            return

        if not self.resizer.resize_all(self.engine.particles, check.new_bounds):
            return
        self.tracker.commit(check.new_bounds)

        discarded = self.retention.apply(self.history, check.new_bounds)
        if discarded:
            # Erase (or rebuild without) the discarded scans, then drop them
            self.generator.update(self.engine, False, discarded)
            self.history.forget(discarded)
            self.history.prune()

    def _update_map(self, timestamp: float):
        """Run the generator for the scan just integrated."""
        due = (self._last_map_update is None
               or timestamp - self._last_map_update >= self.config.map_update_interval)
        if not due and self.generator.mode not in IN_PLACE_MODES:
            return

        self.generator.update(self.engine, True, [])
        self._last_map_update = timestamp
        self.history.prune()

    def _update_map_to_odom(self, odom_pose: Pose2D):
        correction = map_to_odom_correction(self.engine.best_pose(), odom_pose)
        with self.map_to_odom_lock:
            self._map_to_odom = correction

    def _emit_entropy(self):
        self.last_entropy = self.compute_pose_entropy()
        logger.debug("[MAPPER] Pose entropy %.4f", self.last_entropy)
        for callback in self._entropy_listeners:
            try:
                callback(self.last_entropy)
            except Exception:
                logger.exception("[MAPPER] Entropy listener %r failed", callback)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_map_to_odom(self) -> Transform2D:
        """Current map -> odometry correction."""
        with self.map_to_odom_lock:
            return self._map_to_odom

    def compute_pose_entropy(self) -> float:
        """
        Shannon entropy of the normalized particle weights (nats).

        Raises:
            MapStateError: no particles
        """
        if self.engine is None:
            raise MapStateError("Pose entropy requested before map initialization")
        if not self.engine.particles:
            raise MapStateError("No particles to compute a pose entropy from")
        weights = self.engine.get_weights()
        total = float(np.sum(weights))
        if total <= 0.0:
            return math.log(len(weights))
        weights = weights / total
        weights = weights[weights > 0.0]
        return float(-np.sum(weights * np.log(weights)))

    def take_snapshot(self) -> Optional[PublishedSnapshot]:
        """
        Snapshot of the published particle's grid.

        The published particle is ``config.publish_specific_map`` if set,
        the best particle otherwise. Returns None before the map exists;
        an unchanged map returns the previous snapshot.

        Raises:
            MapStateError: the particle set is empty
        """
        engine = self.engine
        if engine is None:
            return None

        with self.map_lock:
            if not engine.particles:
                raise MapStateError("No particles to publish a map from")
            if self.config.publish_specific_map >= 0:
                index = self.config.publish_specific_map
            else:
                index = engine.best_particle_index()

            cached = self._snapshot_cache
            if (cached is not None and cached.generation == self._generation
                    and cached.particle_index == index):
                return cached

            grid = engine.particles[index].grid
            snapshot = PublishedSnapshot.from_grid(grid, self._generation, index)
            self._snapshot_cache = snapshot
        return snapshot

    def get_map(self) -> Optional[PublishedSnapshot]:
        """On-demand map query (latest snapshot, rebuilt only if the map changed)."""
        return self.take_snapshot()

    def get_particle_map(self, index: int) -> PublishedSnapshot:
        """
        Snapshot of a specific particle's grid.

        Raises:
            MapStateError: before map initialization
            IndexError: no such particle
        """
        if self.engine is None:
            raise MapStateError("Particle map requested before map initialization")
        with self.map_lock:
            particles = self.engine.particles
            if not particles:
                raise MapStateError("No particles to take a map from")
            if not 0 <= index < len(particles):
                raise IndexError(f"Particle index {index} out of range [0, {len(particles)})")
            return PublishedSnapshot.from_grid(particles[index].grid, self._generation, index)

    def _path(self, tip: Optional[HistoryNode]) -> List[Tuple[float, Pose2D]]:
        path = [(node.timestamp, node.pose) for node in self.history.lineage(tip)]
        path.reverse()
        return path

    def get_current_path(self) -> List[Tuple[float, Pose2D]]:
        """
        Trajectory of the best particle, oldest first, as (timestamp, pose).

        Only nodes still present in the history appear.
        """
        if not self.initialized:
            return []
        return self._path(self.engine.best_particle().node)

    def get_all_paths(self) -> List[List[Tuple[float, Pose2D]]]:
        """Trajectory of every particle, in particle order."""
        if not self.initialized:
            return []
        return [self._path(particle.node) for particle in self.engine.particles]

    def get_stats(self) -> Dict[str, float]:
        stats = {
            'scans': self.scan_count,
            'processed': self.processed_count,
            'skipped': self.skipped_count,
            'resizes': self.tracker.resize_count,
            'history_nodes': len(self.history),
            'retained_nodes': retained_node_count(self.history.nodes()),
            'generation': self.generation,
            'entropy': self.last_entropy,
            'publish_ticks': self.publisher.tick_count,
        }
        if self.engine is not None:
            stats['resamples'] = self.engine.resample_count
        return stats


def retained_node_count(nodes: Sequence[HistoryNode]) -> int:
    """Number of nodes still usable for map building."""
    return sum(1 for node in nodes if node.usable)


def create_mapper(config: Optional['RollingMapperConfig'], pose_source: IPoseSource,
                  start: bool = False) -> RollingWindowMapper:
    """
    Factory function to create a rolling window mapper.

    Args:
        config: Configuration (defaults if None)
        pose_source: Odometry lookup by timestamp
        start: Also start the publish loop

    Returns:
        RollingWindowMapper instance
    """
    from ..config import RollingMapperConfig

    mapper = RollingWindowMapper(config or RollingMapperConfig(), pose_source)
    if start:
        mapper.start()
    return mapper

