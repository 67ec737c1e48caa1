#!/usr/bin/env python3
"""
Unit tests for the map publisher
================================
- Immutable, self-consistent snapshots
- Listener dispatch and transform stamping
- Halting on a fatal map state
- Snapshot consistency while grids are resized concurrently
"""

import sys
import threading
import time
import unittest
from pathlib import Path
from types import SimpleNamespace

import numpy as np

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from rolling_slam.perception import Transform2D
from rolling_slam.slam.occupancy_grid import GridBounds, OccupancyGrid
from rolling_slam.slam.particle_engine import MapStateError
from rolling_slam.slam.publisher import MapPublisher, PublishedSnapshot
from rolling_slam.slam.resizer import GridResizer


class TestPublishedSnapshot(unittest.TestCase):
    """Tests for PublishedSnapshot."""

    def setUp(self):
        self.bounds = GridBounds(10, -5, 8, 4, 0.5)
        self.grid = OccupancyGrid(self.bounds)
        self.grid.set_cell(1, 0, 1, 1)
        self.grid.set_cell(2, 0, 0, 1)

    def test_from_grid(self):
        snapshot = PublishedSnapshot.from_grid(self.grid, generation=7, particle_index=2,
                                               timestamp=12.5)
        self.assertTrue(snapshot.is_consistent)
        self.assertEqual((snapshot.width, snapshot.height), (8, 4))
        self.assertAlmostEqual(snapshot.origin_x, 5.0)
        self.assertAlmostEqual(snapshot.origin_y, -2.5)
        self.assertEqual(snapshot.generation, 7)
        self.assertEqual(snapshot.particle_index, 2)
        self.assertEqual(snapshot.timestamp, 12.5)
        self.assertEqual(snapshot.data[1], 100)
        self.assertEqual(snapshot.data[2], 0)
        self.assertEqual(snapshot.data[0], -1)
        self.assertAlmostEqual(snapshot.occupied_fraction(), 0.5)

    def test_read_only(self):
        snapshot = PublishedSnapshot.from_grid(self.grid, 0, 0)
        with self.assertRaises(ValueError):
            snapshot.data[0] = 100
        with self.assertRaises(AttributeError):
            snapshot.generation = 3

    def test_independent_of_grid(self):
        snapshot = PublishedSnapshot.from_grid(self.grid, 0, 0)
        self.grid.set_cell(0, 0, 1, 1)
        self.assertEqual(snapshot.data[0], -1)

    def test_as_array(self):
        snapshot = PublishedSnapshot.from_grid(self.grid, 0, 0)
        array = snapshot.as_array()
        self.assertEqual(array.shape, (4, 8))
        self.assertEqual(array[0, 1], 100)

    def test_threshold_override(self):
        self.grid.set_cell(3, 0, 1, 3)
        strict = PublishedSnapshot.from_grid(self.grid, 0, 0, occupied_threshold=0.5)
        loose = PublishedSnapshot.from_grid(self.grid, 0, 0, occupied_threshold=0.25)
        self.assertEqual(strict.data[3], 0)
        self.assertEqual(loose.data[3], 100)


class TestMapPublisher(unittest.TestCase):
    """Tests for MapPublisher."""

    def setUp(self):
        self.grid = OccupancyGrid(GridBounds(0, 0, 10, 10, 0.1))
        self.generation = 0
        self.transform = Transform2D(1.0, 2.0, 0.5)

    def snapshot_source(self):
        self.generation += 1
        return PublishedSnapshot.from_grid(self.grid, self.generation, 0)

    def test_publish_once(self):
        publisher = MapPublisher(self.snapshot_source, lambda: self.transform, tf_delay=0.25)
        maps, transforms = [], []
        publisher.add_map_listener(maps.append)
        publisher.add_transform_listener(lambda tf, stamp: transforms.append((tf, stamp)))

        before = time.time()
        snapshot = publisher.publish_once()
        self.assertIs(publisher.get_map(), snapshot)
        self.assertEqual(maps, [snapshot])
        self.assertEqual(transforms[0][0], self.transform)
        self.assertGreaterEqual(transforms[0][1], before + 0.25)
        self.assertEqual(publisher.tick_count, 1)

    def test_no_map_yet(self):
        publisher = MapPublisher(lambda: None, Transform2D.identity)
        maps, transforms = [], []
        publisher.add_map_listener(maps.append)
        publisher.add_transform_listener(lambda tf, stamp: transforms.append(tf))
        self.assertIsNone(publisher.publish_once())
        self.assertIsNone(publisher.get_map())
        self.assertEqual(maps, [])
        self.assertEqual(len(transforms), 1)

    def test_listener_failure_contained(self):
        publisher = MapPublisher(self.snapshot_source, Transform2D.identity)

        def broken(snapshot):
            raise RuntimeError("listener down")

        received = []
        publisher.add_map_listener(broken)
        publisher.add_map_listener(received.append)
        with self.assertLogs('rolling_slam.slam.publisher', level='ERROR'):
            publisher.publish_once()
        self.assertEqual(len(received), 1)

    def test_loop_ticks(self):
        publisher = MapPublisher(self.snapshot_source, Transform2D.identity, period=0.01)
        self.assertTrue(publisher.start())
        try:
            deadline = time.time() + 2.0
            while publisher.tick_count < 3 and time.time() < deadline:
                time.sleep(0.01)
        finally:
            publisher.stop()
        self.assertGreaterEqual(publisher.tick_count, 3)
        self.assertFalse(publisher.is_running())

    def test_disabled_loop(self):
        publisher = MapPublisher(self.snapshot_source, Transform2D.identity, period=0.0)
        self.assertFalse(publisher.start())
        self.assertFalse(publisher.is_running())

    def test_halts_on_map_state_error(self):
        def failing_source():
            raise MapStateError("no particles")

        publisher = MapPublisher(failing_source, Transform2D.identity, period=0.01)
        with self.assertLogs('rolling_slam.slam.publisher', level='CRITICAL'):
            publisher.start()
            publisher._thread.join(timeout=2.0)
        self.assertFalse(publisher.is_running())
        self.assertIsInstance(publisher.error, MapStateError)
        publisher.stop()

    def test_consistent_under_concurrent_resize(self):
        """Every snapshot matches one whole grid geometry while grids keep moving."""
        lock = threading.Lock()
        small = GridBounds(0, 0, 40, 40, 0.1)
        large = GridBounds(-30, 5, 90, 60, 0.1)
        particles = [SimpleNamespace(grid=OccupancyGrid(small)) for _ in range(3)]
        for particle in particles:
            particle.grid.set_cell(5, 5, 1, 1)
        resizer = GridResizer(lock)

        def source():
            with lock:
                return PublishedSnapshot.from_grid(particles[0].grid, 0, 0)

        snapshots = []
        publisher = MapPublisher(source, Transform2D.identity, period=0.001)
        publisher.add_map_listener(snapshots.append)
        publisher.start()
        try:
            i = 0
            deadline = time.time() + 5.0
            while (i < 60 or len(snapshots) < 20) and time.time() < deadline:
                resizer.resize_all(particles, large if i % 2 == 0 else small)
                i += 1
        finally:
            publisher.stop()

        geometries = {
            (small.width, small.height, small.xmin, small.ymin),
            (large.width, large.height, large.xmin, large.ymin),
        }
        self.assertGreater(len(snapshots), 0)
        for snapshot in snapshots:
            self.assertTrue(snapshot.is_consistent)
            key = (snapshot.width, snapshot.height, snapshot.origin_x, snapshot.origin_y)
            self.assertIn(key, geometries)
            self.assertEqual(np.count_nonzero(snapshot.data == 100), 1)


if __name__ == "__main__":
    unittest.main(verbosity=2)
