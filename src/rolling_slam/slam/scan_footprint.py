"""
Scan rasterization.

Turns one laser scan taken at a given pose into the set of global grid
cells it marks as free (crossed by a beam) and as hit (beam endpoint).
Footprints are expressed in global cell indices, independent of any
grid's bounds, so they can be cached per history node and painted into
whichever window is current.

Rays are sampled at half-cell steps with numpy instead of walking
Bresenham lines beam by beam; each crossed cell is counted once per beam.
"""

import math
from dataclasses import dataclass

import numpy as np

from ..interface.sensor_interface import LaserScan
from ..perception.transforms import Pose2D


@dataclass(frozen=True)
class ScanFootprint:
    """Cells touched by one scan, in global cell indices."""
    free_ix: np.ndarray
    free_iy: np.ndarray
    hit_ix: np.ndarray
    hit_iy: np.ndarray

    @property
    def num_updates(self) -> int:
        return len(self.free_ix) + len(self.hit_ix)

    @staticmethod
    def empty() -> 'ScanFootprint':
        none = np.zeros(0, dtype=np.int64)
        return ScanFootprint(none, none, none, none)


def valid_beams(scan: LaserScan, max_range: float) -> np.ndarray:
    """Mask of readings that carry information."""
    r = scan.ranges
    with np.errstate(invalid='ignore'):
        return np.isfinite(r) & (r > 0.0) & (r > scan.range_min) & (r <= max_range)


def compute_footprint(
    pose: Pose2D,
    scan: LaserScan,
    resolution: float,
    max_range: float,
    usable_range: float,
) -> ScanFootprint:
    """
    Rasterize a scan taken at ``pose``.

    Readings that are not finite, at or below the sensor minimum, or above
    ``max_range`` are ignored. Readings beyond ``usable_range`` are cut to
    that length and only clear free space; their endpoint is not a hit.

    Args:
        pose: Sensor pose in the map frame
        scan: Laser scan
        resolution: Cell size (m)
        max_range: Readings above this carry no information (m)
        usable_range: Readings are trusted up to this range (m)

    Returns:
        ScanFootprint in global cell indices
    """
    valid = valid_beams(scan, max_range)
    if not np.any(valid):
        return ScanFootprint.empty()

    ranges = scan.ranges[valid]
    angles = pose.theta + scan.angles[valid]
    out_of_range = ranges > usable_range
    d = np.minimum(ranges, usable_range)

    cos_a = np.cos(angles)
    sin_a = np.sin(angles)
    end_ix = np.floor((pose.x + d * cos_a) / resolution).astype(np.int64)
    end_iy = np.floor((pose.y + d * sin_a) / resolution).astype(np.int64)

    # Sample every beam at half-cell steps from the sensor to its endpoint
    step = resolution * 0.5
    n_steps = int(math.ceil(float(np.max(d)) / step)) + 1
    t = np.arange(n_steps) * step
    along = t[None, :] < d[:, None]

    ix = np.floor((pose.x + t[None, :] * cos_a[:, None]) / resolution).astype(np.int64)
    iy = np.floor((pose.y + t[None, :] * sin_a[:, None]) / resolution).astype(np.int64)

    at_end = (ix == end_ix[:, None]) & (iy == end_iy[:, None])
    repeated = np.zeros_like(along)
    repeated[:, 1:] = (ix[:, 1:] == ix[:, :-1]) & (iy[:, 1:] == iy[:, :-1])
    free = along & ~at_end & ~repeated

    hit = ~out_of_range
    return ScanFootprint(
        free_ix=ix[free],
        free_iy=iy[free],
        hit_ix=end_ix[hit],
        hit_iy=end_iy[hit],
    )
