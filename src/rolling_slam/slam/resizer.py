"""
Grid Resizer

Moves every particle's grid to new window bounds in one pass. New grids
are built in side buffers without holding the map lock; they are swapped
in for the whole particle set inside a single critical section, so the
publish loop sees either all old grids or all new ones.
"""

import logging
import threading
import time
from typing import Callable, Optional, Sequence

from .occupancy_grid import GridBounds

logger = logging.getLogger(__name__)


def check_uniform_geometry(particles: Sequence, bounds: Optional[GridBounds] = None):
    """
    Raise if the particle grids do not all share the same bounds.

    Args:
        particles: Objects carrying a ``grid`` attribute
        bounds: Expected bounds (defaults to the first particle's)

    Raises:
        RuntimeError: the particle set is desynchronized
    """
    if not particles:
        return
    reference = bounds if bounds is not None else particles[0].grid.bounds
    for i, particle in enumerate(particles):
        if particle.grid.bounds != reference:
            raise RuntimeError(
                f"Particle {i} grid bounds {particle.grid.bounds} differ from {reference}"
            )


class GridResizer:
    """
    Resizes all particle grids uniformly.

    Usage:
        resizer = GridResizer(map_lock)
        if not resizer.resize_all(engine.particles, new_bounds):
            ...  # allocation failed, old bounds still in force
    """

    def __init__(self, map_lock: threading.Lock,
                 on_swap: Optional[Callable[[], None]] = None):
        """
        Args:
            map_lock: Lock guarding the particle grids
            on_swap: Called with ``map_lock`` held right after the swap
        """
        self._lock = map_lock
        self._on_swap = on_swap
        self.last_duration = 0.0

    def resize_all(self, particles: Sequence, new_bounds: GridBounds) -> bool:
        """
        Resize every particle grid to ``new_bounds``.

        Overlapping cells keep their values, new cells are unknown.

        Returns:
            True if the resize was applied, False if it was aborted because
            the new buffers could not be allocated (nothing changed)

        Raises:
            RuntimeError: the swap left the particle set desynchronized
        """
        started = time.time()

        try:
            new_grids = [particle.grid.resized(new_bounds) for particle in particles]
        except MemoryError:
            logger.error(
                "[RESIZE] Could not allocate %d grids of %dx%d cells, keeping current bounds",
                len(particles), new_bounds.width, new_bounds.height,
            )
            return False

        with self._lock:
            for particle, grid in zip(particles, new_grids):
                particle.grid = grid
            check_uniform_geometry(particles, new_bounds)
            if self._on_swap is not None:
                self._on_swap()

        self.last_duration = time.time() - started
        logger.info(
            "[RESIZE] %d grids moved to [%.2f, %.2f]x[%.2f, %.2f] in %.3fs",
            len(particles), new_bounds.xmin, new_bounds.xmax,
            new_bounds.ymin, new_bounds.ymax, self.last_duration,
        )
        return True
