"""
Simulated world for the mapper.

Walls are line segments, obstacles are circles. Scans are produced by
ray casting from a pose and returned as LaserScan messages, so the same
mapping code runs on recorded or simulated data.
"""

import math
from typing import List, Optional, Tuple

import numpy as np

from ..interface.sensor_interface import LaserScan

Segment = Tuple[Tuple[float, float], Tuple[float, float]]
Circle = Tuple[float, float, float]


class SimulatedWorld:
    """Simulated world with obstacles and walls."""

    def __init__(self, walls: Optional[List[Segment]] = None,
                 obstacles: Optional[List[Circle]] = None):
        if walls is None and obstacles is None:
            walls, obstacles = _default_rooms()
        self.walls: List[Segment] = list(walls or [])
        self.obstacles: List[Circle] = list(obstacles or [])

    @property
    def extent(self) -> Tuple[float, float, float, float]:
        """(x_min, x_max, y_min, y_max) covering every wall and obstacle."""
        xs, ys = [], []
        for (x1, y1), (x2, y2) in self.walls:
            xs += [x1, x2]
            ys += [y1, y2]
        for ox, oy, r in self.obstacles:
            xs += [ox - r, ox + r]
            ys += [oy - r, oy + r]
        if not xs:
            return (0.0, 0.0, 0.0, 0.0)
        return (min(xs), max(xs), min(ys), max(ys))

    def ray_cast(self, x: float, y: float, theta: float, max_range: float = 12.0) -> float:
        """Cast ray and return distance to first obstacle (max_range if none)."""
        min_dist = max_range

        dx = math.cos(theta)
        dy = math.sin(theta)

        for (x1, y1), (x2, y2) in self.walls:
            dist = self._ray_line_intersection(x, y, dx, dy, x1, y1, x2, y2)
            if dist is not None and dist < min_dist:
                min_dist = dist

        for ox, oy, r in self.obstacles:
            dist = self._ray_circle_intersection(x, y, dx, dy, ox, oy, r)
            if dist is not None and dist < min_dist:
                min_dist = dist

        return min_dist

    def _ray_line_intersection(self, x, y, dx, dy, x1, y1, x2, y2):
        """Ray-line segment intersection."""
        lx = x2 - x1
        ly = y2 - y1

        denom = dx * ly - dy * lx
        if abs(denom) < 1e-10:
            return None

        t = ((x1 - x) * ly - (y1 - y) * lx) / denom
        s = ((x1 - x) * dy - (y1 - y) * dx) / denom

        if t > 0.01 and 0 <= s <= 1:
            return t
        return None

    def _ray_circle_intersection(self, x, y, dx, dy, cx, cy, r):
        """Ray-circle intersection."""
        fx = x - cx
        fy = y - cy

        a = dx*dx + dy*dy
        b = 2 * (fx*dx + fy*dy)
        c = fx*fx + fy*fy - r*r

        discriminant = b*b - 4*a*c
        if discriminant < 0:
            return None

        t1 = (-b - math.sqrt(discriminant)) / (2*a)
        t2 = (-b + math.sqrt(discriminant)) / (2*a)

        if t1 > 0.01:
            return t1
        if t2 > 0.01:
            return t2
        return None

    def get_scan(self, x: float, y: float, theta: float, timestamp: float = 0.0,
                 num_beams: int = 360, max_range: float = 12.0, noise_std: float = 0.0,
                 rng: Optional[np.random.Generator] = None) -> LaserScan:
        """
        Generate a full-turn scan from a pose.

        Beams that hit nothing read exactly ``max_range``.
        """
        increment = 2 * math.pi / num_beams
        angle_min = -math.pi
        ranges = np.zeros(num_beams)

        for i in range(num_beams):
            dist = self.ray_cast(x, y, theta + angle_min + i * increment, max_range)
            if noise_std > 0 and dist < max_range:
                noise = rng.normal(0, noise_std) if rng is not None else np.random.normal(0, noise_std)
                dist = min(max_range, max(0.05, dist + noise))
            ranges[i] = dist

        return LaserScan(
            ranges=ranges,
            angle_min=angle_min,
            angle_max=angle_min + (num_beams - 1) * increment,
            angle_increment=increment,
            range_min=0.05,
            range_max=max_range,
            timestamp=timestamp,
        )


def _default_rooms() -> Tuple[List[Segment], List[Circle]]:
    walls = [
        # Outer walls
        ((-8, -8), (-8, 8)),
        ((-8, 8), (8, 8)),
        ((8, 8), (8, -8)),
        ((8, -8), (-8, -8)),

        # Inner walls (rooms)
        ((-8, 0), (-2, 0)),
        ((2, 0), (8, 0)),
        ((0, -8), (0, -3)),
        ((0, 3), (0, 8)),

        # Furniture
        ((-5, -5), (-3, -5)),
        ((-3, -5), (-3, -3)),
        ((4, 4), (6, 4)),
        ((6, 4), (6, 6)),
    ]
    obstacles = [
        (-4, 4, 0.5),   # x, y, radius
        (5, -3, 0.8),
        (-6, -6, 0.3),
        (3, 5, 0.4),
    ]
    return walls, obstacles


def create_corridor_world(length: float = 40.0, width: float = 4.0,
                          pillar_spacing: float = 3.0) -> SimulatedWorld:
    """
    Long straight corridor along +x starting at x = -2.

    Pillars along both walls give the scan matcher structure to lock onto
    while the window rolls.
    """
    half = width / 2.0
    walls = [
        ((-2.0, -half), (length, -half)),
        ((-2.0, half), (length, half)),
        ((-2.0, -half), (-2.0, half)),
    ]
    obstacles = []
    x = 1.0
    while x < length:
        obstacles.append((x, -half + 0.3, 0.2))
        obstacles.append((x + pillar_spacing / 2.0, half - 0.3, 0.2))
        x += pillar_spacing
    return SimulatedWorld(walls, obstacles)
