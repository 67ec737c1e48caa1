#!/usr/bin/env python3
"""
Unit tests for the particle engine and the map generators
=========================================================
- Engine initialization, update thresholds, lineage bookkeeping
- Native, incremental, side-buffer and engine-delegate generation
- Idempotent side-buffer regeneration
"""

import sys
import threading
import unittest
from pathlib import Path

import numpy as np

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from rolling_slam.perception import Pose2D
from rolling_slam.simulation import create_corridor_world
from rolling_slam.slam.history import MeasurementHistory, NodeIdAllocator
from rolling_slam.slam.map_generator import (
    EngineDelegateGenerator, GenerationMode, IncrementalGenerator, NativeGenerator,
    SideBufferGenerator, build_from_lineage, create_map_generator
)
from rolling_slam.slam.occupancy_grid import GridBounds, OccupancyGrid
from rolling_slam.slam.particle_engine import (
    GridParticleEngine, MapStateError, ParticleEngineConfig
)


def noiseless_config(**overrides) -> ParticleEngineConfig:
    params = dict(
        num_particles=4,
        srr=0.0, srt=0.0, str_=0.0, stt=0.0,
        max_range=7.9, max_urange=5.0,
        linear_update=0.5, angular_update=0.5,
        resolution=0.1,
    )
    params.update(overrides)
    return ParticleEngineConfig(**params)


class EngineFixture:
    """Engine driven along a simulated corridor with perfect odometry."""

    def __init__(self, map_lock=None, on_swap=None, **overrides):
        self.world = create_corridor_world(length=30.0)
        self.history = MeasurementHistory(NodeIdAllocator())
        self.engine = GridParticleEngine(noiseless_config(**overrides), self.history,
                                         np.random.default_rng(0),
                                         map_lock=map_lock, on_swap=on_swap)
        self.bounds = GridBounds.centered(0.0, 0.0, 8.0, 8.0, 0.1)
        self.x = 0.0
        self.t = 0.0
        pose = Pose2D(0.0, 0.0, 0.0)
        self.engine.initialize(pose, self.bounds, self.scan(), pose, self.t)

    def scan(self):
        return self.world.get_scan(self.x, 0.0, 0.0, self.t, num_beams=60, max_range=8.0)

    def advance(self, dx=0.6) -> bool:
        self.x += dx
        self.t += 1.0
        return self.engine.process_scan(self.scan(), Pose2D(self.x, 0.0, 0.0), self.t)


class TestGridParticleEngine(unittest.TestCase):
    """Tests for GridParticleEngine."""

    def test_initialize_shares_root(self):
        fx = EngineFixture()
        nodes = {p.node.node_id for p in fx.engine.particles}
        self.assertEqual(len(nodes), 1)
        root = fx.engine.particles[0].node
        self.assertEqual(root.refcount, 4)
        self.assertAlmostEqual(float(np.sum(fx.engine.get_weights())), 1.0)
        for particle in fx.engine.particles:
            self.assertEqual(particle.grid.bounds, fx.bounds)

    def test_update_thresholds(self):
        """Small motions move the particles without integrating the scan."""
        fx = EngineFixture()
        self.assertFalse(fx.advance(0.2))
        self.assertAlmostEqual(fx.engine.best_pose().x, 0.2)
        self.assertEqual(len(fx.history), 1)
        self.assertTrue(fx.advance(0.4))
        self.assertEqual(fx.engine.update_count, 1)
        self.assertEqual(len(fx.history), 5)

    def test_temporal_update(self):
        fx = EngineFixture(temporal_update=0.5)
        self.assertTrue(fx.advance(0.0))

    def test_lineages_extend(self):
        fx = EngineFixture()
        for _ in range(3):
            fx.advance()
        for particle in fx.engine.particles:
            path = list(fx.history.lineage(particle.node))
            self.assertEqual(len(path), 4)
            self.assertEqual(particle.node.refcount, 1)

    def test_empty_engine_errors(self):
        history = MeasurementHistory(NodeIdAllocator())
        engine = GridParticleEngine(noiseless_config(), history)
        with self.assertRaises(MapStateError):
            engine.best_particle_index()
        with self.assertRaises(MapStateError):
            engine.generate_map(0)
        with self.assertRaises(MapStateError):
            engine.process_scan(None, Pose2D(0, 0, 0), 0.0)
        with self.assertRaises(MapStateError):
            GridParticleEngine(noiseless_config(num_particles=0), history).initialize(
                Pose2D(0, 0, 0), GridBounds(0, 0, 10, 10, 0.1), None, Pose2D(0, 0, 0), 0.0)

    def test_resample_copies_grids(self):
        """Resampled duplicates own separate grids and share lineage nodes."""
        fx = EngineFixture()
        fx.engine.particles[0].weight = 0.97
        for particle in fx.engine.particles[1:]:
            particle.weight = 0.01
        fx.engine._resample()
        grids = [id(p.grid) for p in fx.engine.particles]
        self.assertEqual(len(set(grids)), 4)
        self.assertEqual(fx.engine.resample_count, 1)
        root = fx.engine.particles[0].node
        self.assertEqual(root.refcount, 4)

    def test_particle_swaps_under_lock(self):
        """Initialization and resampling swap the particle list with the map lock held."""
        lock = threading.Lock()
        swaps = []

        def on_swap():
            swaps.append(lock.locked())

        fx = EngineFixture(map_lock=lock, on_swap=on_swap)
        self.assertEqual(swaps, [True])
        self.assertEqual(len(fx.engine.particles), 4)

        previous = fx.engine.particles
        fx.engine._resample()
        self.assertEqual(swaps, [True, True])
        self.assertEqual(len(fx.engine.particles), 4)
        self.assertIsNot(fx.engine.particles, previous)
        self.assertFalse(lock.locked())

    def test_move_then_integrate(self):
        """Motion and integration are separate steps."""
        fx = EngineFixture()
        self.assertTrue(fx.engine.move(Pose2D(0.6, 0.0, 0.0), 1.0))
        self.assertAlmostEqual(fx.engine.best_pose().x, 0.6)
        self.assertEqual(len(fx.history), 1)

        fx.engine.integrate(fx.world.get_scan(0.6, 0.0, 0.0, 1.0, num_beams=60, max_range=8.0), 1.0)
        self.assertEqual(fx.engine.update_count, 1)
        self.assertEqual(len(fx.history), 5)
        self.assertFalse(fx.engine.move(Pose2D(0.7, 0.0, 0.0), 2.0))


class TestMapGenerators(unittest.TestCase):
    """Tests for the generation strategies."""

    def setUp(self):
        self.lock = threading.Lock()

    def test_factory(self):
        self.assertIsInstance(create_map_generator(0, self.lock), NativeGenerator)
        self.assertIsInstance(create_map_generator(1, self.lock), IncrementalGenerator)
        self.assertIsInstance(create_map_generator(2, self.lock), SideBufferGenerator)
        with self.assertLogs('rolling_slam.slam.map_generator', level='WARNING'):
            generator = create_map_generator(GenerationMode.ENGINE_DELEGATE, self.lock)
        self.assertIsInstance(generator, EngineDelegateGenerator)
        self.assertFalse(generator.forgets)
        self.assertFalse(NativeGenerator.forgets)
        self.assertTrue(SideBufferGenerator.forgets)
        with self.assertRaises(ValueError):
            create_map_generator(9, self.lock)

    def test_no_particles(self):
        history = MeasurementHistory(NodeIdAllocator())
        engine = GridParticleEngine(noiseless_config(), history)
        with self.assertRaises(MapStateError):
            SideBufferGenerator(self.lock).update(engine, True, [])

    def test_native_paints_every_scan(self):
        fx = EngineFixture()
        generator = NativeGenerator(self.lock)
        generator.update(fx.engine, True, [])
        known = fx.engine.particles[0].grid.known_cells
        self.assertGreater(known, 0)
        fx.advance()
        self.assertTrue(generator.update(fx.engine, True, []))
        self.assertGreater(fx.engine.particles[0].grid.known_cells, known)
        self.assertFalse(generator.update(fx.engine, False, []))

    def test_incremental_erases_discarded(self):
        """Erasing a discarded node leaves exactly the retained evidence."""
        fx = EngineFixture()
        generator = IncrementalGenerator(self.lock)
        generator.update(fx.engine, True, [])
        fx.advance()
        generator.update(fx.engine, True, [])

        root = fx.history.get(0)
        fx.history.mark_discarded(root)
        self.assertTrue(generator.update(fx.engine, False, [root]))

        for particle in fx.engine.particles:
            expected = build_from_lineage(fx.engine, particle, particle.grid.bounds)
            self.assertTrue(particle.grid.same_content(expected))

    def test_side_buffer_matches_lineage(self):
        fx = EngineFixture()
        generator = SideBufferGenerator(self.lock)
        for _ in range(3):
            fx.advance()
        generator.update(fx.engine, True, [])

        reference = OccupancyGrid(fx.bounds, fx.engine.config.occupied_threshold)
        for node in reversed(list(fx.history.lineage(fx.engine.particles[0].node))):
            reference.apply_footprint(node.footprint)
        self.assertTrue(fx.engine.particles[0].grid.same_content(reference))

    def test_side_buffer_idempotent(self):
        """Regenerating twice without new input yields the same grids."""
        fx = EngineFixture()
        generator = SideBufferGenerator(self.lock)
        for _ in range(3):
            fx.advance()
        generator.update(fx.engine, True, [])
        first = [p.grid.copy() for p in fx.engine.particles]
        generator.update(fx.engine, True, [])
        for grid, particle in zip(first, fx.engine.particles):
            self.assertTrue(particle.grid.same_content(grid))

    def test_side_buffer_skips_discarded(self):
        fx = EngineFixture()
        generator = SideBufferGenerator(self.lock)
        fx.advance()
        generator.update(fx.engine, True, [])
        full = fx.engine.particles[0].grid.copy()

        root = fx.history.get(0)
        fx.history.mark_discarded(root)
        generator.update(fx.engine, False, [root])
        grid = fx.engine.particles[0].grid
        self.assertFalse(grid.same_content(full))
        self.assertLessEqual(grid.known_cells, full.known_cells)

    def test_side_buffer_swaps_grid_objects(self):
        fx = EngineFixture()
        before = [p.grid for p in fx.engine.particles]
        fx.advance()
        SideBufferGenerator(self.lock).update(fx.engine, True, [])
        for grid, particle in zip(before, fx.engine.particles):
            self.assertIsNot(grid, particle.grid)

    def test_swap_callback_inside_lock(self):
        """Every strategy reports a grid change with the lock held, and only then."""
        for mode in GenerationMode:
            with self.subTest(mode=mode.name):
                fx = EngineFixture()
                seen = []
                with self.assertLogs('rolling_slam.slam.map_generator', level='DEBUG'):
                    generator = create_map_generator(
                        mode, self.lock, on_swap=lambda: seen.append(self.lock.locked()))
                    fx.advance()
                    self.assertFalse(generator.update(fx.engine, False, []))
                    self.assertEqual(seen, [])
                    self.assertTrue(generator.update(fx.engine, True, []))
                self.assertEqual(seen, [True])
                self.assertFalse(self.lock.locked())

    def test_engine_delegate_uses_full_lineage(self):
        """Delegated maps keep discarded evidence until it is forgotten."""
        fx = EngineFixture()
        generator = EngineDelegateGenerator(self.lock)
        fx.advance()
        fx.history.mark_discarded(fx.history.get(0))
        generator.update(fx.engine, True, [])

        for i, particle in enumerate(fx.engine.particles):
            handle = fx.engine.generate_map(i)
            self.assertEqual(handle.particle_index, i)
            self.assertEqual(handle.node_id, particle.node.node_id)
            self.assertTrue(particle.grid.same_content(handle.grid))
            self.assertIsNot(particle.grid, handle.grid)

    def test_engine_delegate_rejects_stale_bounds(self):
        fx = EngineFixture()
        generator = EngineDelegateGenerator(self.lock)
        fx.advance()
        fx.engine.particles[1].grid = OccupancyGrid(fx.bounds.shifted(5, 0))
        with self.assertRaises(RuntimeError):
            generator.update(fx.engine, True, [])


if __name__ == "__main__":
    unittest.main(verbosity=2)
