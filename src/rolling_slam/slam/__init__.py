"""
SLAM Module

Rolling-window occupancy-grid mapping on top of a Rao-Blackwellized
particle filter. The map follows the platform: when the best pose gets
too close to an edge, every particle grid is moved to new bounds and
history recorded far from the window is forgotten.

Components:
- RollingWindowMapper: laser callback, window management, map queries
- GridParticleEngine: particle filter with one grid per particle
- WindowTracker / GridResizer: when and how the window moves
- RetentionPolicy: which history survives a move
- MapGenerator: how particle grids are rebuilt
- MapPublisher: periodic snapshots and map -> odometry correction
- OccupancyGrid: 2D occupancy grid on a global cell lattice

Usage:
    from rolling_slam.slam import RollingWindowMapper
    from rolling_slam.config import RollingMapperConfig

    mapper = RollingWindowMapper(RollingMapperConfig(window_size=20.0), odometry)
    mapper.start()

    # For every scan
    mapper.laser_callback(scan)

    # Get map
    snapshot = mapper.get_map()
"""

from .occupancy_grid import (
    OccupancyGrid,
    GridBounds,
    CELL_UNKNOWN,
    CELL_FREE,
    CELL_OCCUPIED,
)

from .scan_footprint import (
    ScanFootprint,
    compute_footprint,
)

from .history import (
    MeasurementHistory,
    HistoryNode,
    NodeIdAllocator,
)

from .window import (
    WindowTracker,
    BoundsCheck,
    BoundsStatus,
)

from .resizer import (
    GridResizer,
    check_uniform_geometry,
)

from .retention import (
    RetentionMode,
    RetentionPolicy,
    NoForgetting,
    WindowRetention,
    WindowRangeRetention,
    create_retention_policy,
)

from .particle_engine import (
    GridParticleEngine,
    ParticleEngineConfig,
    Particle,
    MapHandle,
    MapStateError,
)

from .map_generator import (
    GenerationMode,
    MapGenerator,
    NativeGenerator,
    IncrementalGenerator,
    SideBufferGenerator,
    EngineDelegateGenerator,
    create_map_generator,
)

from .publisher import (
    MapPublisher,
    PublishedSnapshot,
)

from .rolling_mapper import (
    RollingWindowMapper,
    create_mapper,
)

__all__ = [
    # Main interfaces
    'RollingWindowMapper',
    'GridParticleEngine',
    'MapPublisher',
    'OccupancyGrid',

    # Configuration
    'ParticleEngineConfig',
    'RetentionMode',
    'GenerationMode',

    # Data classes
    'GridBounds',
    'ScanFootprint',
    'HistoryNode',
    'Particle',
    'MapHandle',
    'PublishedSnapshot',
    'BoundsCheck',
    'BoundsStatus',

    # Window management
    'WindowTracker',
    'GridResizer',
    'check_uniform_geometry',
    'MeasurementHistory',
    'NodeIdAllocator',
    'RetentionPolicy',
    'NoForgetting',
    'WindowRetention',
    'WindowRangeRetention',
    'MapGenerator',
    'NativeGenerator',
    'IncrementalGenerator',
    'SideBufferGenerator',
    'EngineDelegateGenerator',

    # Factories and helpers
    'create_mapper',
    'create_retention_policy',
    'create_map_generator',
    'compute_footprint',
    'MapStateError',
    'CELL_UNKNOWN',
    'CELL_FREE',
    'CELL_OCCUPIED',
]
