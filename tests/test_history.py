#!/usr/bin/env python3
"""
Unit tests for the measurement history and retention policies
=============================================================
- Reference counting and cascading collection
- Discard / forget lifecycle
- Retention modes, superset property, no resurrection
"""

import sys
import unittest
from pathlib import Path

import numpy as np

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from rolling_slam.interface import LaserScan
from rolling_slam.perception import Pose2D
from rolling_slam.slam.history import MeasurementHistory, NodeIdAllocator
from rolling_slam.slam.occupancy_grid import GridBounds
from rolling_slam.slam.retention import (
    NoForgetting, RetentionMode, WindowRangeRetention, WindowRetention,
    create_retention_policy
)
from rolling_slam.slam.scan_footprint import ScanFootprint


def dummy_scan() -> LaserScan:
    return LaserScan(ranges=np.ones(4), angle_min=0.0, angle_max=0.3, angle_increment=0.1)


def build_chain(xs):
    """History with one lineage through poses (x, 0), tip acquired by one particle."""
    history = MeasurementHistory(NodeIdAllocator())
    node = None
    for i, x in enumerate(xs):
        child = history.add(node, Pose2D(x, 0.0, 0.0), float(i), dummy_scan(),
                            ScanFootprint.empty())
        history.acquire(child)
        if node is not None:
            history.release(node)
        node = child
    return history, node


class TestNodeIdAllocator(unittest.TestCase):

    def test_monotonic(self):
        allocator = NodeIdAllocator(start=5)
        self.assertEqual([allocator.allocate() for _ in range(3)], [5, 6, 7])
        self.assertEqual(allocator.next_id, 8)

    def test_shared_between_arenas(self):
        allocator = NodeIdAllocator()
        a = MeasurementHistory(allocator)
        b = MeasurementHistory(allocator)
        n1 = a.add(None, Pose2D(0, 0, 0), 0.0)
        n2 = b.add(None, Pose2D(0, 0, 0), 0.0)
        self.assertNotEqual(n1.node_id, n2.node_id)


class TestMeasurementHistory(unittest.TestCase):
    """Tests for MeasurementHistory."""

    def setUp(self):
        self.history = MeasurementHistory(NodeIdAllocator())

    def test_refcount_children_and_tips(self):
        root = self.history.add(None, Pose2D(0, 0, 0), 0.0)
        self.history.acquire(root)
        child = self.history.add(root, Pose2D(1, 0, 0), 1.0)
        self.assertEqual(root.refcount, 2)
        self.history.acquire(child)
        self.history.release(root)
        self.assertEqual(root.refcount, 1)
        self.assertEqual(child.refcount, 1)
        self.assertEqual([n.node_id for n in self.history.lineage(child)],
                         [child.node_id, root.node_id])

    def test_over_release(self):
        root = self.history.add(None, Pose2D(0, 0, 0), 0.0)
        with self.assertRaises(RuntimeError):
            self.history.release(root)

    def test_discarded_node_kept_while_referenced(self):
        """A discarded ancestor stays linked until its descendants go."""
        history, tip = build_chain([0.0, 1.0, 2.0])
        root = history.get(0)
        self.assertTrue(history.mark_discarded(root))
        self.assertFalse(history.mark_discarded(root))
        history.forget([root])
        self.assertIsNone(root.reading)
        self.assertIsNone(root.footprint)
        self.assertFalse(root.usable)
        self.assertIn(root.node_id, history)
        self.assertEqual(len(list(history.lineage(tip))), 3)

    def test_cascading_collection(self):
        """Releasing the last tip of a fully discarded lineage empties the arena."""
        history, tip = build_chain([0.0, 1.0, 2.0, 3.0])
        nodes = history.nodes()
        for node in nodes:
            history.mark_discarded(node)
        history.forget(nodes)
        self.assertEqual(len(history), 4)

        history.release(tip)
        self.assertEqual(len(history), 0)

    def test_prune_keeps_retained(self):
        history = MeasurementHistory(NodeIdAllocator())
        keep = history.add(None, Pose2D(0, 0, 0), 0.0)
        gone = history.add(None, Pose2D(9, 0, 0), 0.0)
        history.mark_discarded(gone)
        self.assertEqual(history.prune(), 1)
        self.assertIn(keep.node_id, history)
        self.assertNotIn(gone.node_id, history)

    def test_forget_retained_rejected(self):
        history, tip = build_chain([0.0])
        with self.assertRaises(RuntimeError):
            history.forget([tip])


class TestRetention(unittest.TestCase):
    """Tests for the retention policies."""

    XS = [k + 0.5 for k in range(30)]

    def setUp(self):
        # [15, 25] x [-5, 5]
        self.bounds = GridBounds.centered(20.0, 0.0, 10.0, 10.0, 0.05)

    def retained_xs(self, history):
        return sorted(node.pose.x for node in history.nodes() if node.retained)

    def test_factory(self):
        self.assertIsInstance(create_retention_policy(RetentionMode.NONE), NoForgetting)
        self.assertIsInstance(create_retention_policy(1), WindowRetention)
        policy = create_retention_policy(RetentionMode.WINDOW_RANGE, 4.0)
        self.assertIsInstance(policy, WindowRangeRetention)
        self.assertEqual(policy.sensor_range, 4.0)
        with self.assertRaises(ValueError):
            create_retention_policy(7)
        with self.assertRaises(ValueError):
            WindowRangeRetention(-1.0)

    def test_none_keeps_everything(self):
        history, _ = build_chain(self.XS)
        self.assertEqual(NoForgetting().apply(history, self.bounds), [])
        self.assertEqual(len(self.retained_xs(history)), 30)

    def test_window(self):
        history, _ = build_chain(self.XS)
        discarded = WindowRetention().apply(history, self.bounds)
        self.assertEqual(self.retained_xs(history), [k + 0.5 for k in range(15, 25)])
        self.assertEqual(len(discarded), 20)

    def test_window_range(self):
        """Window grown by a 4 m range keeps [11, 29]."""
        history, _ = build_chain(self.XS)
        WindowRangeRetention(4.0).apply(history, self.bounds)
        self.assertEqual(self.retained_xs(history), [k + 0.5 for k in range(11, 29)])

    def test_window_range_scenario(self):
        """
        Window of 10 m around 20 m with an 8 m usable range: a node recorded
        at 10.5 m is kept, one at 5.5 m is dropped.
        """
        history, _ = build_chain([5.5, 10.5, 20.0])
        WindowRangeRetention(8.0).apply(history, self.bounds)
        self.assertEqual(self.retained_xs(history), [10.5, 20.0])

    def test_five_meter_range(self):
        """With a 5 m range, 4 m outside the window is kept and 6 m outside dropped."""
        history, _ = build_chain([9.0, 11.0, 20.0])
        discarded = WindowRangeRetention(5.0).apply(history, self.bounds)
        self.assertEqual(self.retained_xs(history), [11.0, 20.0])
        self.assertEqual([node.pose.x for node in discarded], [9.0])

    def test_range_retention_is_superset(self):
        window_history, _ = build_chain(self.XS)
        range_history, _ = build_chain(self.XS)
        WindowRetention().apply(window_history, self.bounds)
        WindowRangeRetention(4.0).apply(range_history, self.bounds)
        self.assertTrue(set(self.retained_xs(window_history))
                        <= set(self.retained_xs(range_history)))

    def test_no_resurrection(self):
        """A node discarded once stays discarded when the window comes back."""
        history, _ = build_chain(self.XS)
        policy = WindowRetention()
        policy.apply(history, self.bounds)
        back = GridBounds.centered(5.0, 0.0, 10.0, 10.0, 0.05)
        discarded = policy.apply(history, back)
        self.assertEqual(self.retained_xs(history), [])
        self.assertEqual(len(discarded), 10)


if __name__ == "__main__":
    unittest.main(verbosity=2)
