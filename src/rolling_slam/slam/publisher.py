"""
Map publishing.

A background loop that, on a fixed period independent of scan arrival,
takes an immutable snapshot of the best particle's grid and hands it to
map listeners together with the current map -> odometry correction.
On-demand queries return the most recent snapshot without recomputation.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np

from ..perception.transforms import Transform2D
from .occupancy_grid import OccupancyGrid
from .particle_engine import MapStateError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishedSnapshot:
    """
    Immutable copy of one grid.

    ``data`` is the binarized grid flattened row by row from the
    bottom-left cell (-1 unknown, 0 free, 100 occupied) and is read-only.
    Every field was taken in the same critical section and belongs to
    the same ``generation``.
    """
    resolution: float
    origin_x: float         # world x of the bottom-left cell corner
    origin_y: float         # world y of the bottom-left cell corner
    width: int              # cells
    height: int             # cells
    data: np.ndarray
    generation: int
    timestamp: float
    particle_index: int

    @classmethod
    def from_grid(cls, grid: OccupancyGrid, generation: int, particle_index: int,
                  timestamp: Optional[float] = None,
                  occupied_threshold: Optional[float] = None) -> 'PublishedSnapshot':
        data = grid.to_occupancy_data(occupied_threshold).ravel()
        data.setflags(write=False)
        return cls(
            resolution=grid.resolution,
            origin_x=grid.origin_x,
            origin_y=grid.origin_y,
            width=grid.width,
            height=grid.height,
            data=data,
            generation=generation,
            timestamp=time.time() if timestamp is None else timestamp,
            particle_index=particle_index,
        )

    @property
    def is_consistent(self) -> bool:
        return self.data.size == self.width * self.height

    def as_array(self) -> np.ndarray:
        """Read-only (height x width) view of the data."""
        return self.data.reshape((self.height, self.width))

    def occupied_fraction(self) -> float:
        known = np.count_nonzero(self.data >= 0)
        if known == 0:
            return 0.0
        return float(np.count_nonzero(self.data == 100)) / known


MapListener = Callable[[PublishedSnapshot], None]
TransformListener = Callable[[Transform2D, float], None]


class MapPublisher:
    """
    Periodic publisher of map snapshots and the map -> odometry correction.

    Usage:
        publisher = MapPublisher(mapper.take_snapshot, mapper.get_map_to_odom,
                                 period=0.05)
        publisher.add_map_listener(on_map)
        publisher.add_transform_listener(on_tf)
        publisher.start()
        ...
        latest = publisher.get_map()
        publisher.stop()
    """

    def __init__(
        self,
        snapshot_source: Callable[[], Optional[PublishedSnapshot]],
        transform_source: Callable[[], Transform2D],
        period: float = 0.05,
        tf_delay: float = 0.0,
    ):
        """
        Args:
            snapshot_source: Returns a fresh snapshot, or None before the map exists
            transform_source: Returns the current map -> odometry correction
            period: Seconds between ticks; <= 0 disables the loop
            tf_delay: Added to the stamp of every broadcast correction (s)
        """
        self._snapshot_source = snapshot_source
        self._transform_source = transform_source
        self.period = period
        self.tf_delay = tf_delay

        self._latest: Optional[PublishedSnapshot] = None
        self._snapshot_lock = threading.Lock()

        self._map_listeners: List[MapListener] = []
        self._transform_listeners: List[TransformListener] = []

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self.error: Optional[BaseException] = None
        self.tick_count = 0

    def add_map_listener(self, callback: MapListener):
        """Call ``callback(snapshot)`` on every tick with a map."""
        self._map_listeners.append(callback)

    def add_transform_listener(self, callback: TransformListener):
        """Call ``callback(transform, stamp)`` on every tick."""
        self._transform_listeners.append(callback)

    def start(self) -> bool:
        """
        Start the publish loop.

        Returns:
            True if the loop is running
        """
        if self.period <= 0:
            logger.info("[PUBLISH] Publish period <= 0, loop disabled")
            return False
        if self.is_running():
            return True

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._publish_loop,
            daemon=True,
            name="MapPublisher"
        )
        self._thread.start()
        return True

    def stop(self):
        """Stop the publish loop."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def get_map(self) -> Optional[PublishedSnapshot]:
        """Most recent snapshot (None before the first tick with a map)."""
        with self._snapshot_lock:
            return self._latest

    def publish_once(self) -> Optional[PublishedSnapshot]:
        """
        Run one tick synchronously.

        Raises:
            MapStateError: the map cannot be produced
        """
        snapshot = self._snapshot_source()
        if snapshot is not None:
            with self._snapshot_lock:
                self._latest = snapshot
            for callback in self._map_listeners:
                self._notify(callback, snapshot)

        transform = self._transform_source()
        stamp = time.time() + self.tf_delay
        for callback in self._transform_listeners:
            self._notify(callback, transform, stamp)

        self.tick_count += 1
        return snapshot

    def _notify(self, callback, *args):
        try:
            callback(*args)
        except Exception:
            logger.exception("[PUBLISH] Listener %r failed", callback)

    def _publish_loop(self):
        """Tick until stopped; a fatal map state halts the loop."""
        while not self._stop_event.wait(self.period):
            try:
                self.publish_once()
            except MapStateError as e:
                logger.critical("[PUBLISH] Cannot produce a map, halting publisher: %s", e)
                self.error = e
                return
