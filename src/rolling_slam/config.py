"""
Rolling-window mapper configuration.

Parameters keep the names of the gmapping ROS node where one exists
(delta, occ_thresh, srr, linearUpdate as linear_update, ...), so an
existing gmapping YAML file needs little more than the window section.

YAML files may be flat or grouped in sections:

    window:
      window_size: 10.0
      resize_margin: 1.0
      delete_mode: 2
      generation_mode: 2
    mapping:
      delta: 0.05
      occ_thresh: 0.25
    filter:
      particles: 30
      srr: 0.1
    laser:
      max_urange: 8.0
    publish:
      transform_publish_period: 0.05
"""

import logging
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

import yaml

from .slam.map_generator import GenerationMode
from .slam.particle_engine import ParticleEngineConfig
from .slam.retention import RetentionMode

logger = logging.getLogger(__name__)

SECTIONS = ('window', 'mapping', 'filter', 'laser', 'publish')

# Alternate spellings accepted in configuration files
ALIASES = {
    'windowsize': 'window_size',
    'rolling_window_delete_mode': 'delete_mode',
    'rolling_window_mode': 'generation_mode',
    'throttle': 'throttle_scans',
    'resolution': 'delta',
    'str': 'str_',
    'maxRange': 'max_range',
    'maxUrange': 'max_urange',
    'linearUpdate': 'linear_update',
    'angularUpdate': 'angular_update',
    'temporalUpdate': 'temporal_update',
    'resampleThreshold': 'resample_threshold',
    'num_particles': 'particles',
}


@dataclass
class RollingMapperConfig:
    """Configuration of the rolling-window mapper."""
    # Window
    window_size: float = 10.0               # side of the square window (m)
    resize_margin: float = 1.0              # min distance pose -> edge (m)
    window_lookahead: Optional[float] = None  # default window_size/2 - 2*margin
    delete_mode: RetentionMode = RetentionMode.WINDOW_RANGE
    generation_mode: GenerationMode = GenerationMode.SIDE_BUFFER

    # Scan handling
    throttle_scans: int = 1                 # process every Nth scan
    max_range: Optional[float] = None       # default: scan range_max - 0.01
    max_urange: Optional[float] = None      # default: max_range

    # Grid
    delta: float = 0.05                     # resolution (m)
    occ_thresh: float = 0.25                # occupancy threshold on publish

    # Particle filter
    particles: int = 30
    srr: float = 0.1
    srt: float = 0.2
    str_: float = 0.1
    stt: float = 0.2
    linear_update: float = 1.0              # m
    angular_update: float = 0.5             # rad
    temporal_update: float = -1.0           # s, <= 0 disables
    resample_threshold: float = 0.5
    lskip: int = 0
    ogain: float = 3.0
    seed: Optional[int] = None

    # Publishing
    map_update_interval: float = 0.0        # s between map updates, 0 = every scan
    transform_publish_period: float = 0.05  # s, <= 0 disables the publish loop
    tf_delay: Optional[float] = None        # default: transform_publish_period
    publish_specific_map: int = -1          # particle index to publish, -1 = best

    def __post_init__(self):
        self.delete_mode = RetentionMode(int(self.delete_mode))
        self.generation_mode = GenerationMode(int(self.generation_mode))

    @property
    def effective_tf_delay(self) -> float:
        return self.transform_publish_period if self.tf_delay is None else self.tf_delay

    def validate(self):
        """
        Check parameter consistency.

        Raises:
            ValueError: on the first invalid parameter
        """
        if self.window_size <= 0:
            raise ValueError(f"window_size must be positive, got {self.window_size}")
        if self.delta <= 0:
            raise ValueError(f"delta must be positive, got {self.delta}")
        if self.window_size < 4 * self.delta:
            raise ValueError(f"window_size {self.window_size} is smaller than 4 cells")
        if self.resize_margin < 0 or 2 * self.resize_margin >= self.window_size:
            raise ValueError(
                f"resize_margin {self.resize_margin} must be >= 0 and below half the window"
            )
        if self.particles <= 0:
            raise ValueError(f"particles must be positive, got {self.particles}")
        if self.throttle_scans < 1:
            raise ValueError(f"throttle_scans must be >= 1, got {self.throttle_scans}")
        if not 0.0 <= self.occ_thresh <= 1.0:
            raise ValueError(f"occ_thresh must be in [0, 1], got {self.occ_thresh}")
        if self.max_range is not None and self.max_range <= 0:
            raise ValueError(f"max_range must be positive, got {self.max_range}")
        if self.max_urange is not None and self.max_urange <= 0:
            raise ValueError(f"max_urange must be positive, got {self.max_urange}")
        if not 0.0 < self.resample_threshold <= 1.0:
            raise ValueError(
                f"resample_threshold must be in (0, 1], got {self.resample_threshold}"
            )
        if self.publish_specific_map >= self.particles:
            raise ValueError(
                f"publish_specific_map {self.publish_specific_map} >= particles {self.particles}"
            )

    def resolve_ranges(self, scan_range_max: float):
        """Range limits, falling back on the laser's declared maximum."""
        max_range = self.max_range if self.max_range is not None else scan_range_max - 0.01
        max_urange = self.max_urange if self.max_urange is not None else max_range
        return max_range, min(max_urange, max_range)

    def engine_config(self, scan_range_max: float) -> ParticleEngineConfig:
        """Particle engine parameters for a laser with the given maximum range."""
        max_range, max_urange = self.resolve_ranges(scan_range_max)
        return ParticleEngineConfig(
            num_particles=self.particles,
            srr=self.srr,
            srt=self.srt,
            str_=self.str_,
            stt=self.stt,
            max_range=max_range,
            max_urange=max_urange,
            lskip=self.lskip,
            likelihood_gain=self.ogain,
            linear_update=self.linear_update,
            angular_update=self.angular_update,
            temporal_update=self.temporal_update,
            resample_threshold=self.resample_threshold,
            resolution=self.delta,
            occupied_threshold=self.occ_thresh,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RollingMapperConfig':
        """
        Build a configuration from a (possibly sectioned) dictionary.

        Unknown keys are reported and ignored.
        """
        flat: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            if key in SECTIONS and isinstance(value, dict):
                flat.update(value)
            else:
                flat[key] = value

        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in flat.items():
            name = ALIASES.get(key, key)
            if name in known:
                kwargs[name] = value
            else:
                logger.warning("[CONFIG] Ignoring unknown parameter '%s'", key)

        config = cls(**kwargs)
        config.validate()
        return config

    @classmethod
    def from_yaml(cls, path: str) -> 'RollingMapperConfig':
        """Load and validate a YAML configuration file."""
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
        if data is not None and not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping at top level")
        logger.info("[CONFIG] Loaded %s", path)
        return cls.from_dict(data or {})
