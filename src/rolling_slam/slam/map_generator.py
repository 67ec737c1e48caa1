"""
Map Generator

Strategies that bring the particle grids up to date after a scan has been
integrated and history has possibly been forgotten. One strategy is picked
at configuration time:

- NATIVE (0): the engine's own incremental map. Nothing is ever erased,
  so forgetting is off.
- INCREMENTAL (1): paint the new scan and erase the scans just discarded,
  in place. Light, but imprecise at the window edge: cells that entered
  the window after a scan was painted never held its evidence.
- SIDE_BUFFER (2): rebuild every grid from its retained lineage in a side
  buffer, then swap all buffers in under the map lock. Correct and safe
  for concurrent publication; cost scales with retained history x cells.
- ENGINE_DELEGATE (3): ask the engine for an immutable map handle built
  from the full lineage and swap it in like SIDE_BUFFER. Does not forget.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from enum import IntEnum
from typing import Callable, Optional, Sequence

from .history import HistoryNode
from .occupancy_grid import OccupancyGrid
from .particle_engine import GridParticleEngine, MapStateError

logger = logging.getLogger(__name__)


class GenerationMode(IntEnum):
    """How particle grids are rebuilt."""
    NATIVE = 0
    INCREMENTAL = 1
    SIDE_BUFFER = 2
    ENGINE_DELEGATE = 3


class MapGenerator(ABC):
    """Base class for map generation strategies."""

    mode: GenerationMode

    # Whether the strategy honours the retention policy
    forgets: bool = True

    def __init__(self, map_lock: threading.Lock,
                 on_swap: Optional[Callable[[], None]] = None):
        """
        Args:
            map_lock: Lock guarding the particle grids
            on_swap: Called with ``map_lock`` held after every grid change
        """
        self._lock = map_lock
        self._on_swap = on_swap
        self.last_duration = 0.0

    def update(self, engine: GridParticleEngine, new_scan: bool,
               discarded: Sequence[HistoryNode]) -> bool:
        """
        Bring the particle grids up to date.

        Args:
            engine: Engine owning the particles
            new_scan: Whether the engine integrated a scan since the last call
            discarded: Nodes discarded by retention since the last call; their
                footprints are still available

        Returns:
            True if any grid changed
        """
        if not engine.particles:
            raise MapStateError("No particles to generate maps for")

        started = time.time()
        changed = self._update(engine, new_scan, discarded)
        self.last_duration = time.time() - started
        if changed:
            logger.debug("[MAPGEN] %s update took %.3fs", self.mode.name, self.last_duration)
        return changed

    @abstractmethod
    def _update(self, engine: GridParticleEngine, new_scan: bool,
                discarded: Sequence[HistoryNode]) -> bool:
        pass

    def _changed(self):
        # Caller holds the map lock
        if self._on_swap is not None:
            self._on_swap()


class NativeGenerator(MapGenerator):
    """Mode 0: rely on the engine's incremental map."""

    mode = GenerationMode.NATIVE
    forgets = False

    def _update(self, engine, new_scan, discarded):
        if not new_scan:
            return False
        with self._lock:
            engine.register_scan()
            self._changed()
        return True


class IncrementalGenerator(MapGenerator):
    """Mode 1: paint new scans, erase discarded ones, in place."""

    mode = GenerationMode.INCREMENTAL

    def _update(self, engine, new_scan, discarded):
        if not new_scan and not discarded:
            return False

        discarded_ids = {node.node_id for node in discarded}
        with self._lock:
            if new_scan:
                engine.register_scan()
            if discarded_ids:
                for particle in engine.particles:
                    for node in engine.history.lineage(particle.node):
                        if node.node_id in discarded_ids and node.footprint is not None:
                            particle.grid.apply_footprint(node.footprint, sign=-1)
            self._changed()
        return True


def build_from_lineage(engine: GridParticleEngine, particle, bounds) -> OccupancyGrid:
    """Fresh grid painted with every retained node of a particle's lineage."""
    grid = OccupancyGrid(bounds, engine.config.occupied_threshold)
    nodes = [node for node in engine.history.lineage(particle.node) if node.usable]
    # Oldest first so counters accumulate in recording order
    for node in reversed(nodes):
        grid.apply_footprint(node.footprint)
    return grid


class SideBufferGenerator(MapGenerator):
    """Mode 2: full regeneration into side buffers, then one swap."""

    mode = GenerationMode.SIDE_BUFFER

    def _update(self, engine, new_scan, discarded):
        if not new_scan and not discarded:
            return False

        particles = list(engine.particles)
        bounds = particles[0].grid.bounds
        buffers = [build_from_lineage(engine, particle, bounds) for particle in particles]

        with self._lock:
            for particle, grid in zip(particles, buffers):
                particle.grid = grid
            self._changed()
        return True


class EngineDelegateGenerator(MapGenerator):
    """
    Mode 3: the engine builds each map from its full lineage.

    The engine hands back immutable map handles; they are swapped in under
    the map lock exactly like side buffers. Retention is not applied.
    """

    mode = GenerationMode.ENGINE_DELEGATE
    forgets = False

    def _update(self, engine, new_scan, discarded):
        if not new_scan:
            return False

        handles = [engine.generate_map(i) for i in range(len(engine.particles))]
        bounds = handles[0].bounds
        for handle in handles:
            if handle.bounds != bounds:
                raise RuntimeError(
                    f"Map handle for particle {handle.particle_index} has bounds "
                    f"{handle.bounds}, expected {bounds}"
                )

        grids = [handle.grid.copy() for handle in handles]
        with self._lock:
            for particle, grid in zip(engine.particles, grids):
                particle.grid = grid
            self._changed()
        return True


def create_map_generator(mode: GenerationMode, map_lock: threading.Lock,
                         on_swap: Optional[Callable[[], None]] = None) -> MapGenerator:
    """
    Factory function to create a map generator.

    Args:
        mode: Generation mode
        map_lock: Lock guarding the particle grids
        on_swap: Called with the lock held after every grid change

    Returns:
        MapGenerator instance
    """
    mode = GenerationMode(mode)
    if mode == GenerationMode.NATIVE:
        return NativeGenerator(map_lock, on_swap)
    elif mode == GenerationMode.INCREMENTAL:
        return IncrementalGenerator(map_lock, on_swap)
    elif mode == GenerationMode.SIDE_BUFFER:
        return SideBufferGenerator(map_lock, on_swap)
    elif mode == GenerationMode.ENGINE_DELEGATE:
        logger.warning("[MAPGEN] ENGINE_DELEGATE maps are built from the full lineage, "
                       "history outside the window is not forgotten")
        return EngineDelegateGenerator(map_lock, on_swap)
    else:
        raise ValueError(f"Unknown generation mode: {mode}")
