"""
Occupancy Grid Map

Bounded 2D occupancy grid used by every particle of the rolling-window
mapper. Compatible with the ROS map_server format.

Features:
- Hit / visit counters per cell (evidence can be added and removed)
- Integer-cell bounds snapped to the global resolution lattice
- Resize with exact overlap copy
- Coordinate transformations
- Map I/O (PGM, PNG, YAML)
"""

import math
import os
import numpy as np
import yaml
from typing import Tuple, Optional
from dataclasses import dataclass


# Published cell values (nav_msgs/OccupancyGrid convention)
CELL_UNKNOWN = -1
CELL_FREE = 0
CELL_OCCUPIED = 100


@dataclass(frozen=True)
class GridBounds:
    """
    Axis-aligned grid bounds expressed in global cell indices.

    Cell (ix, iy) covers [ix * resolution, (ix + 1) * resolution) on X and
    the same on Y. Keeping bounds on the integer lattice makes any two
    grids of the same resolution overlap on whole cells.
    """
    ix_min: int
    iy_min: int
    width: int              # cells
    height: int             # cells
    resolution: float       # meters per cell

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Grid must have positive size, got {self.width}x{self.height}")
        if self.resolution <= 0:
            raise ValueError(f"Resolution must be positive, got {self.resolution}")

    @classmethod
    def centered(cls, cx: float, cy: float, size_x: float, size_y: float,
                 resolution: float) -> 'GridBounds':
        """Bounds of the given extent centered on (cx, cy), snapped to cells."""
        width = int(round(size_x / resolution))
        height = int(round(size_y / resolution))
        ix_min = int(round(cx / resolution - width / 2.0))
        iy_min = int(round(cy / resolution - height / 2.0))
        return cls(ix_min, iy_min, width, height, resolution)

    @property
    def ix_max(self) -> int:
        """Exclusive upper cell index on X."""
        return self.ix_min + self.width

    @property
    def iy_max(self) -> int:
        """Exclusive upper cell index on Y."""
        return self.iy_min + self.height

    @property
    def xmin(self) -> float:
        return self.ix_min * self.resolution

    @property
    def ymin(self) -> float:
        return self.iy_min * self.resolution

    @property
    def xmax(self) -> float:
        return self.ix_max * self.resolution

    @property
    def ymax(self) -> float:
        return self.iy_max * self.resolution

    @property
    def center(self) -> Tuple[float, float]:
        return ((self.xmin + self.xmax) / 2.0, (self.ymin + self.ymax) / 2.0)

    def edge_distances(self, x: float, y: float) -> Tuple[float, float, float, float]:
        """Signed distances (left, right, bottom, top) from a point to each edge."""
        return (x - self.xmin, self.xmax - x, y - self.ymin, self.ymax - y)

    def contains(self, x: float, y: float, margin: float = 0.0) -> bool:
        """True if (x, y) lies inside with at least ``margin`` to every edge."""
        return min(self.edge_distances(x, y)) >= margin

    def contains_expanded(self, x: float, y: float, distance: float) -> bool:
        """True if (x, y) lies inside the bounds grown by ``distance``."""
        return min(self.edge_distances(x, y)) >= -distance

    def overlap(self, other: 'GridBounds') -> Optional[Tuple[int, int, int, int]]:
        """
        Global cell range shared with another grid.

        Returns:
            (ix_lo, ix_hi, iy_lo, iy_hi) with exclusive upper ends,
            or None when the grids do not intersect
        """
        ix_lo = max(self.ix_min, other.ix_min)
        ix_hi = min(self.ix_max, other.ix_max)
        iy_lo = max(self.iy_min, other.iy_min)
        iy_hi = min(self.iy_max, other.iy_max)
        if ix_lo >= ix_hi or iy_lo >= iy_hi:
            return None
        return ix_lo, ix_hi, iy_lo, iy_hi

    def shifted(self, dx_cells: int, dy_cells: int) -> 'GridBounds':
        return GridBounds(self.ix_min + dx_cells, self.iy_min + dy_cells,
                          self.width, self.height, self.resolution)


class OccupancyGrid:
    """
    2D Occupancy Grid Map.

    Every cell keeps two counters: how many beams ended in it (hits) and
    how many beams crossed or ended in it (visits). The occupancy estimate
    is hits / visits; a cell never visited is unknown. Counters make the
    evidence of a single scan removable, which the incremental map
    generator relies on when history is forgotten.

    Usage:
        bounds = GridBounds.centered(0.0, 0.0, 10.0, 10.0, 0.05)
        grid = OccupancyGrid(bounds)

        # Paint a rasterized scan
        grid.apply_footprint(footprint)

        # Query
        occupied = grid.is_occupied(x, y)

        # Save
        grid.save("map.pgm", "map.yaml")
    """

    def __init__(self, bounds: GridBounds, occupied_threshold: float = 0.25):
        """
        Initialize an all-unknown grid.

        Args:
            bounds: Cell bounds of the grid
            occupied_threshold: Occupancy above which a cell is occupied
        """
        self.bounds = bounds
        self.occupied_threshold = occupied_threshold

        self._hits = np.zeros((bounds.height, bounds.width), dtype=np.int32)
        self._visits = np.zeros((bounds.height, bounds.width), dtype=np.int32)

    @property
    def width(self) -> int:
        return self.bounds.width

    @property
    def height(self) -> int:
        return self.bounds.height

    @property
    def resolution(self) -> float:
        return self.bounds.resolution

    @property
    def origin_x(self) -> float:
        return self.bounds.xmin

    @property
    def origin_y(self) -> float:
        return self.bounds.ymin

    def world_to_map(self, x: float, y: float) -> Tuple[int, int]:
        """Convert world coordinates to map indices."""
        mx = math.floor(x / self.resolution) - self.bounds.ix_min
        my = math.floor(y / self.resolution) - self.bounds.iy_min
        return mx, my

    def map_to_world(self, mx: int, my: int) -> Tuple[float, float]:
        """Convert map indices to world coordinates (cell center)."""
        x = (mx + self.bounds.ix_min + 0.5) * self.resolution
        y = (my + self.bounds.iy_min + 0.5) * self.resolution
        return x, y

    def in_bounds(self, mx: int, my: int) -> bool:
        """Check if map indices are in bounds."""
        return 0 <= mx < self.width and 0 <= my < self.height

    def get_cell(self, mx: int, my: int) -> Tuple[int, int]:
        """Return (hits, visits) of a cell."""
        if not self.in_bounds(mx, my):
            raise IndexError(f"Cell ({mx}, {my}) outside {self.width}x{self.height} grid")
        return int(self._hits[my, mx]), int(self._visits[my, mx])

    def set_cell(self, mx: int, my: int, hits: int, visits: int):
        """Overwrite the counters of a cell."""
        if not self.in_bounds(mx, my):
            raise IndexError(f"Cell ({mx}, {my}) outside {self.width}x{self.height} grid")
        if hits < 0 or visits < hits:
            raise ValueError(f"Invalid counters hits={hits} visits={visits}")
        self._hits[my, mx] = hits
        self._visits[my, mx] = visits

    def get_probability(self, mx: int, my: int) -> float:
        """Get occupancy probability at map coordinates (-1.0 if unknown)."""
        if not self.in_bounds(mx, my):
            return -1.0

        visits = self._visits[my, mx]
        if visits == 0:
            return -1.0
        return float(self._hits[my, mx]) / float(visits)

    def get_probability_world(self, x: float, y: float) -> float:
        """Get occupancy probability at world coordinates."""
        mx, my = self.world_to_map(x, y)
        return self.get_probability(mx, my)

    def get_probabilities_world(self, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
        """Vectorized get_probability_world (-1.0 where unknown or outside)."""
        mx = np.floor(np.asarray(xs) / self.resolution).astype(np.int64) - self.bounds.ix_min
        my = np.floor(np.asarray(ys) / self.resolution).astype(np.int64) - self.bounds.iy_min
        prob = np.full(mx.shape, -1.0)

        inside = (mx >= 0) & (mx < self.width) & (my >= 0) & (my < self.height)
        visits = np.zeros(mx.shape, dtype=np.int64)
        visits[inside] = self._visits[my[inside], mx[inside]]
        known = visits > 0
        prob[known] = self._hits[my[known], mx[known]] / visits[known]
        return prob

    def is_occupied(self, x: float, y: float) -> bool:
        """Check if world position is occupied."""
        return self.get_probability_world(x, y) > self.occupied_threshold

    def is_unknown(self, x: float, y: float) -> bool:
        """Check if world position is unknown."""
        return self.get_probability_world(x, y) < 0.0

    def apply_footprint(self, footprint, sign: int = 1):
        """
        Add (sign=+1) or remove (sign=-1) the evidence of one scan.

        Cells of the footprint outside the grid are ignored. Removal clamps
        counters at zero: a cell that entered the grid after the scan was
        painted never received that scan's evidence.

        Args:
            footprint: ScanFootprint in global cell indices
            sign: +1 to paint, -1 to erase
        """
        self._accumulate(self._visits, footprint.free_ix, footprint.free_iy, sign)
        self._accumulate(self._visits, footprint.hit_ix, footprint.hit_iy, sign)
        self._accumulate(self._hits, footprint.hit_ix, footprint.hit_iy, sign)

        if sign < 0:
            np.maximum(self._visits, 0, out=self._visits)
            np.maximum(self._hits, 0, out=self._hits)
            np.minimum(self._hits, self._visits, out=self._hits)

    def _accumulate(self, layer: np.ndarray, ix: np.ndarray, iy: np.ndarray, sign: int):
        if len(ix) == 0:
            return
        mx = ix - self.bounds.ix_min
        my = iy - self.bounds.iy_min
        inside = (mx >= 0) & (mx < self.width) & (my >= 0) & (my < self.height)
        if not np.any(inside):
            return
        np.add.at(layer, (my[inside], mx[inside]), sign)

    def resized(self, new_bounds: GridBounds) -> 'OccupancyGrid':
        """
        Build a grid over new bounds.

        Cells inside the overlap of old and new bounds keep their counters
        exactly, all other cells start unknown. The original grid is not
        modified.
        """
        if new_bounds.resolution != self.resolution:
            raise ValueError(
                f"Cannot resize across resolutions ({self.resolution} -> {new_bounds.resolution})"
            )

        grid = OccupancyGrid(new_bounds, self.occupied_threshold)

        overlap = self.bounds.overlap(new_bounds)
        if overlap is None:
            return grid

        ix_lo, ix_hi, iy_lo, iy_hi = overlap
        src = (slice(iy_lo - self.bounds.iy_min, iy_hi - self.bounds.iy_min),
               slice(ix_lo - self.bounds.ix_min, ix_hi - self.bounds.ix_min))
        dst = (slice(iy_lo - new_bounds.iy_min, iy_hi - new_bounds.iy_min),
               slice(ix_lo - new_bounds.ix_min, ix_hi - new_bounds.ix_min))
        grid._hits[dst] = self._hits[src]
        grid._visits[dst] = self._visits[src]
        return grid

    def copy(self) -> 'OccupancyGrid':
        """Deep copy of the grid."""
        grid = OccupancyGrid.__new__(OccupancyGrid)
        grid.bounds = self.bounds
        grid.occupied_threshold = self.occupied_threshold
        grid._hits = self._hits.copy()
        grid._visits = self._visits.copy()
        return grid

    def same_content(self, other: 'OccupancyGrid') -> bool:
        """True if bounds and every counter match."""
        return (self.bounds == other.bounds
                and np.array_equal(self._hits, other._hits)
                and np.array_equal(self._visits, other._visits))

    @property
    def known_cells(self) -> int:
        """Number of cells with at least one visit."""
        return int(np.count_nonzero(self._visits))

    def to_occupancy_data(self, occupied_threshold: Optional[float] = None) -> np.ndarray:
        """
        Binarize the grid for publication.

        Returns:
            int8 array (height x width), row-major from the bottom-left cell:
            -1 unknown, 0 free, 100 occupied
        """
        threshold = self.occupied_threshold if occupied_threshold is None else occupied_threshold

        data = np.full((self.height, self.width), CELL_UNKNOWN, dtype=np.int8)
        known = self._visits > 0
        occupied = known & (self._hits > threshold * self._visits)
        data[known] = CELL_FREE
        data[occupied] = CELL_OCCUPIED
        return data

    def get_map_image(self) -> np.ndarray:
        """
        Get map as image (0-255, compatible with OpenCV).

        Values:
        - 254 = free (white)
        - 205 = unknown (gray)
        - 0 = occupied (black)

        Row 0 of the image is the top of the map.
        """
        data = self.to_occupancy_data()

        image = np.full((self.height, self.width), 205, dtype=np.uint8)
        image[data == CELL_FREE] = 254
        image[data == CELL_OCCUPIED] = 0

        return np.flipud(image)

    def save(self, image_path: str, yaml_path: Optional[str] = None):
        """
        Save map in ROS-compatible format.

        Args:
            image_path: Path for image (PNG or PGM)
            yaml_path: Path for metadata YAML (optional)
        """
        image = self.get_map_image()

        if image_path.endswith('.pgm'):
            self._save_pgm(image_path, image)
        else:
            import cv2
            if not cv2.imwrite(image_path, image):
                raise IOError(f"Could not write map image {image_path}")

        if yaml_path:
            self._save_yaml(yaml_path, image_path)

    def _save_pgm(self, path: str, image: np.ndarray):
        """Save as PGM (Portable Gray Map)."""
        with open(path, 'wb') as f:
            f.write(f"P5\n{self.width} {self.height}\n255\n".encode())
            f.write(image.tobytes())

    def _save_yaml(self, yaml_path: str, image_path: str):
        """Save YAML metadata (ROS map_server format)."""
        meta = {
            'image': os.path.basename(image_path),
            'resolution': float(self.resolution),
            'origin': [float(self.origin_x), float(self.origin_y), 0.0],
            'negate': 0,
            'occupied_thresh': float(self.occupied_threshold),
            'free_thresh': 0.196,
        }
        with open(yaml_path, 'w') as f:
            yaml.safe_dump(meta, f, default_flow_style=None, sort_keys=False)
