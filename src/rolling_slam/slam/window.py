"""
Rolling Window Tracker

Keeps the bounds of the mapped window and decides when the platform has
come too close to an edge. New bounds are centered on the platform and,
along every axis whose margin was violated, pushed ahead in the direction
of travel (lookahead). The lookahead is the hysteresis: right after a
resize the platform sits well away from both edges of that axis, so
oscillating motion near the old edge does not trigger another resize.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..perception.transforms import Pose2D
from .occupancy_grid import GridBounds

logger = logging.getLogger(__name__)


class BoundsStatus(Enum):
    """Outcome of a bounds check."""
    STABLE = 1
    RESIZE_NEEDED = 2
    SKIPPED = 3


@dataclass(frozen=True)
class BoundsCheck:
    """Result of WindowTracker.check_bounds."""
    status: BoundsStatus
    new_bounds: Optional[GridBounds] = None

    @property
    def resize_needed(self) -> bool:
        return self.status == BoundsStatus.RESIZE_NEEDED


class WindowTracker:
    """
    Tracks the rolling window.

    Usage:
        tracker = WindowTracker(window_size=10.0, margin=1.0, resolution=0.05)
        tracker.commit(tracker.initial_bounds(pose))

        check = tracker.check_bounds(pose)
        if check.resize_needed:
            if resizer.resize_all(particles, check.new_bounds):
                tracker.commit(check.new_bounds)
    """

    def __init__(
        self,
        window_size: float,
        margin: float,
        resolution: float,
        lookahead: Optional[float] = None,
    ):
        """
        Args:
            window_size: Side of the square window (m)
            margin: Minimum distance from the platform to any edge (m)
            resolution: Cell size (m)
            lookahead: Offset of the new window center ahead of the
                platform on a violated axis (m). Defaults to
                window_size / 2 - 2 * margin.
        """
        if window_size <= 0 or resolution <= 0:
            raise ValueError("Window size and resolution must be positive")
        if margin < 0 or 2 * margin >= window_size:
            raise ValueError(
                f"Margin {margin} m does not fit a {window_size} m window"
            )

        self.window_size = window_size
        self.margin = margin
        self.resolution = resolution

        # The platform must keep the margin (plus half a cell of snapping) to
        # the trailing edge once the window has been pushed ahead
        max_lookahead = max(0.0, window_size / 2.0 - margin - resolution)
        if lookahead is None:
            lookahead = window_size / 2.0 - 2.0 * margin
        self.lookahead = min(max(0.0, lookahead), max_lookahead)

        self.bounds: Optional[GridBounds] = None
        self.resize_count = 0

    @property
    def initialized(self) -> bool:
        return self.bounds is not None

    def initial_bounds(self, pose: Pose2D) -> GridBounds:
        """Window centered on the first pose."""
        return GridBounds.centered(
            pose.x, pose.y, self.window_size, self.window_size, self.resolution
        )

    def check_bounds(self, pose: Optional[Pose2D]) -> BoundsCheck:
        """
        Decide whether the window must move.

        Args:
            pose: Current platform pose in the map frame, or None if it
                could not be resolved

        Returns:
            BoundsCheck: STABLE, RESIZE_NEEDED with the new bounds, or
            SKIPPED if there is no pose or no window yet
        """
        if pose is None:
            logger.warning("[WINDOW] No pose available, keeping current bounds")
            return BoundsCheck(BoundsStatus.SKIPPED)

        if self.bounds is None:
            return BoundsCheck(BoundsStatus.SKIPPED)

        left, right, bottom, top = self.bounds.edge_distances(pose.x, pose.y)
        if min(left, right, bottom, top) >= self.margin:
            return BoundsCheck(BoundsStatus.STABLE)

        cx, cy = pose.x, pose.y
        if right < self.margin:
            cx += self.lookahead
        elif left < self.margin:
            cx -= self.lookahead
        if top < self.margin:
            cy += self.lookahead
        elif bottom < self.margin:
            cy -= self.lookahead

        new_bounds = GridBounds.centered(
            cx, cy, self.window_size, self.window_size, self.resolution
        )
        logger.info(
            "[WINDOW] Pose (%.2f, %.2f) within %.2f m of an edge, moving window "
            "[%.2f, %.2f]x[%.2f, %.2f] -> [%.2f, %.2f]x[%.2f, %.2f]",
            pose.x, pose.y, self.margin,
            self.bounds.xmin, self.bounds.xmax, self.bounds.ymin, self.bounds.ymax,
            new_bounds.xmin, new_bounds.xmax, new_bounds.ymin, new_bounds.ymax,
        )
        return BoundsCheck(BoundsStatus.RESIZE_NEEDED, new_bounds)

    def commit(self, bounds: GridBounds):
        """Make ``bounds`` current (after the grids were resized)."""
        if self.bounds is not None:
            self.resize_count += 1
        self.bounds = bounds
