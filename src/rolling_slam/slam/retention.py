"""
Retention Policy

Decides which history nodes stay usable for map building once the window
has moved. Three modes, from no forgetting at all to forgetting anything
recorded outside the window:

- NONE: never discard. The window only crops what is drawn.
- WINDOW: discard nodes recorded outside the window. Cheap, but a node
  recorded just inside still paints cells up to the sensor range beyond
  the window, so the visible map edge is not crisp.
- WINDOW_RANGE: discard nodes recorded outside the window grown by the
  sensor range. Keeps every node that can still paint a cell inside the
  window, at the price of retaining more history.
"""

import logging
from abc import ABC, abstractmethod
from enum import IntEnum
from typing import List

from .history import HistoryNode, MeasurementHistory
from .occupancy_grid import GridBounds

logger = logging.getLogger(__name__)


class RetentionMode(IntEnum):
    """Which history survives a window move."""
    NONE = 0
    WINDOW = 1
    WINDOW_RANGE = 2


class RetentionPolicy(ABC):
    """Base class for retention policies."""

    mode: RetentionMode

    @abstractmethod
    def should_retain(self, node: HistoryNode, bounds: GridBounds) -> bool:
        """Whether ``node`` stays usable for the window ``bounds``."""
        pass

    def apply(self, history: MeasurementHistory, bounds: GridBounds) -> List[HistoryNode]:
        """
        Evaluate every node of the history against the window.

        Nodes that fail ``should_retain`` are flagged discarded; nodes
        already discarded are left alone (no resurrection).

        Returns:
            Nodes discarded by this call, oldest first
        """
        discarded = []
        for node in history.nodes():
            if not node.retained:
                continue
            if not self.should_retain(node, bounds):
                history.mark_discarded(node)
                discarded.append(node)

        if discarded:
            logger.info(
                "[RETENTION] %s: discarded %d of %d history nodes",
                self.mode.name, len(discarded), len(history),
            )
        return discarded


class NoForgetting(RetentionPolicy):
    """Mode 0: keep everything (plain unbounded mapping)."""

    mode = RetentionMode.NONE

    def should_retain(self, node: HistoryNode, bounds: GridBounds) -> bool:
        return True

    def apply(self, history: MeasurementHistory, bounds: GridBounds) -> List[HistoryNode]:
        return []


class WindowRetention(RetentionPolicy):
    """Mode 1: keep nodes recorded inside the window."""

    mode = RetentionMode.WINDOW

    def should_retain(self, node: HistoryNode, bounds: GridBounds) -> bool:
        return bounds.contains(node.pose.x, node.pose.y)


class WindowRangeRetention(RetentionPolicy):
    """Mode 2: keep nodes recorded inside the window grown by the sensor range."""

    mode = RetentionMode.WINDOW_RANGE

    def __init__(self, sensor_range: float):
        if sensor_range < 0:
            raise ValueError(f"Sensor range must be non-negative, got {sensor_range}")
        self.sensor_range = sensor_range

    def should_retain(self, node: HistoryNode, bounds: GridBounds) -> bool:
        return bounds.contains_expanded(node.pose.x, node.pose.y, self.sensor_range)


def create_retention_policy(mode: RetentionMode, sensor_range: float = 0.0) -> RetentionPolicy:
    """
    Factory function to create a retention policy.

    Args:
        mode: Retention mode
        sensor_range: Usable sensor range, only used by WINDOW_RANGE

    Returns:
        RetentionPolicy instance
    """
    mode = RetentionMode(mode)
    if mode == RetentionMode.NONE:
        return NoForgetting()
    elif mode == RetentionMode.WINDOW:
        return WindowRetention()
    elif mode == RetentionMode.WINDOW_RANGE:
        return WindowRangeRetention(sensor_range)
    else:
        raise ValueError(f"Unknown retention mode: {mode}")
