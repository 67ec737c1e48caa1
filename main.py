#!/usr/bin/env python3
"""
ROLLING SLAM - Rolling-window occupancy-grid mapping
===================================================

Runs the rolling-window mapper on a simulated platform:

1. CORRIDOR (default):
   python main.py --env corridor
   - Long straight corridor, the window rolls several times
   - Shows retention and regeneration at work

2. ROOMS:
   python main.py --env rooms
   - Closed 16 m x 16 m floor with rooms and furniture
   - Useful to compare generation modes in a bounded area

Usage:
    python main.py --config config/rolling_slam.yaml
    python main.py --env corridor --steps 600 --save /tmp/rolling_map.pgm
    python main.py --generation-mode 1 --delete-mode 1 --log-level DEBUG
"""

import sys
import math
import time
import dataclasses
import logging
import argparse
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent / 'src'))

logger = logging.getLogger("rolling_slam.main")


def build_world(args):
    """World, start pose and control law for the chosen environment."""
    from rolling_slam.simulation import SimulatedWorld, create_corridor_world

    if args.env == 'corridor':
        world = create_corridor_world(length=args.length)

        def control(robot, t):
            robot.velocity = args.speed
            robot.angular_velocity = -0.5 * robot.y - 0.8 * robot.theta

        return world, (0.0, 0.0, 0.0), control

    world = SimulatedWorld()

    def control(robot, t):
        robot.velocity = args.speed
        robot.angular_velocity = 0.3 * math.sin(t * 0.3) + 0.1 * math.sin(t * 0.7)

    return world, (-5.0, -2.0, 0.0), control


def run(args):
    """Run the simulation and print a summary."""
    import numpy as np
    from rolling_slam import RollingMapperConfig, RollingWindowMapper
    from rolling_slam.simulation import SimulatedLaserAdapter, SimulatedRobot

    if args.config:
        config = RollingMapperConfig.from_yaml(args.config)
    else:
        config = RollingMapperConfig()

    # Command line overrides
    overrides = {
        name: getattr(args, name)
        for name in ('generation_mode', 'delete_mode', 'window_size', 'seed')
        if getattr(args, name) is not None
    }
    if overrides:
        config = dataclasses.replace(config, **overrides)
        config.validate()

    print("=" * 60)
    print("   ROLLING SLAM - SIMULATION")
    print("=" * 60)
    print(f"  Environment:     {args.env}")
    print(f"  Window:          {config.window_size:.1f} m, margin {config.resize_margin:.1f} m")
    print(f"  Resolution:      {config.delta:.3f} m")
    print(f"  Particles:       {config.particles}")
    print(f"  Retention:       {config.delete_mode.name}")
    print(f"  Generation:      {config.generation_mode.name}")
    print()

    world, (x0, y0, theta0), control = build_world(args)
    robot = SimulatedRobot(world, x0, y0, theta0, odometry_noise=args.odom_noise,
                           rng=np.random.default_rng(config.seed))
    laser = SimulatedLaserAdapter(robot, num_beams=args.beams, max_range=args.max_range,
                                  noise_std=args.range_noise)

    mapper = RollingWindowMapper(config, robot.odometry)
    mapper.start()
    laser.start()

    started = time.time()
    try:
        for step in range(args.steps):
            control(robot, robot.time)
            robot.update(args.dt)
            scan = laser.get_scan()
            if scan is None:
                continue
            mapper.laser_callback(scan)

            if step % args.report_every == 0 and mapper.initialized:
                est = mapper.engine.best_pose()
                bounds = mapper.tracker.bounds
                print(f"Step {step:4d}: "
                      f"odom=({robot.odom.x:6.2f}, {robot.odom.y:6.2f}) "
                      f"est=({est.x:6.2f}, {est.y:6.2f}) "
                      f"window=[{bounds.xmin:6.2f}, {bounds.xmax:6.2f}]x"
                      f"[{bounds.ymin:6.2f}, {bounds.ymax:6.2f}] "
                      f"H={mapper.last_entropy:.3f}")
    except KeyboardInterrupt:
        print("\nInterrupted")
    finally:
        laser.stop()
        mapper.stop()

    elapsed = time.time() - started
    stats = mapper.get_stats()
    snapshot = mapper.get_map()

    print("-" * 60)
    print(f"Scans: {stats['scans']}  processed: {stats['processed']}  "
          f"skipped: {stats['skipped']}  ({elapsed:.1f}s)")
    print(f"Window moves: {stats['resizes']}  history nodes: {stats['history_nodes']} "
          f"({stats['retained_nodes']} retained)")
    if snapshot is not None:
        data = snapshot.data
        total = data.size
        print(f"Map: {snapshot.width}x{snapshot.height} cells, origin "
              f"({snapshot.origin_x:.2f}, {snapshot.origin_y:.2f}), generation {snapshot.generation}")
        print(f"  Free:     {100.0 * np.count_nonzero(data == 0) / total:.1f}%")
        print(f"  Occupied: {100.0 * np.count_nonzero(data == 100) / total:.1f}%")
        print(f"  Unknown:  {100.0 * np.count_nonzero(data < 0) / total:.1f}%")

        if args.save:
            with mapper.map_lock:
                grid = mapper.engine.particles[snapshot.particle_index].grid.copy()
            yaml_path = str(Path(args.save).with_suffix('.yaml'))
            grid.save(args.save, yaml_path)
            print(f"\nMap saved to {args.save} ({yaml_path})")

    if mapper.publisher.error is not None:
        logger.error("Publisher halted: %s", mapper.publisher.error)
        return 1
    return 0


def main():
    parser = argparse.ArgumentParser(
        description='ROLLING SLAM - Rolling-window occupancy-grid mapping',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python main.py --env corridor --steps 600
    python main.py --env rooms --generation-mode 0
    python main.py --config config/rolling_slam.yaml --save /tmp/map.pgm
"""
    )

    parser.add_argument(
        '--config', '-c',
        type=str,
        help='YAML configuration file'
    )
    parser.add_argument(
        '--log-level',
        default='INFO',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (default: INFO)'
    )
    parser.add_argument(
        '--save',
        type=str,
        help='Save the final map (PGM or any OpenCV format) with its YAML'
    )

    sim_group = parser.add_argument_group('Simulation')
    sim_group.add_argument(
        '--env', '-e',
        choices=['corridor', 'rooms'],
        default='corridor',
        help='Simulated environment (default: corridor)'
    )
    sim_group.add_argument('--steps', type=int, default=400, help='Simulation steps')
    sim_group.add_argument('--dt', type=float, default=0.1, help='Step duration (s)')
    sim_group.add_argument('--speed', type=float, default=0.5, help='Forward speed (m/s)')
    sim_group.add_argument('--length', type=float, default=40.0, help='Corridor length (m)')
    sim_group.add_argument('--beams', type=int, default=180, help='Laser beams per scan')
    sim_group.add_argument('--max-range', type=float, default=12.0, help='Laser range (m)')
    sim_group.add_argument('--range-noise', type=float, default=0.01, help='Range noise std (m)')
    sim_group.add_argument('--odom-noise', type=float, default=0.02,
                           help='Relative odometry noise')
    sim_group.add_argument('--report-every', type=int, default=20, help='Steps between reports')

    map_group = parser.add_argument_group('Mapper overrides')
    map_group.add_argument('--window-size', type=float, help='Window side (m)')
    map_group.add_argument('--delete-mode', type=int, choices=[0, 1, 2],
                           help='Retention: 0 none, 1 window, 2 window + range')
    map_group.add_argument('--generation-mode', type=int, choices=[0, 1, 2, 3],
                           help='Generation: 0 native, 1 incremental, 2 side buffer, '
                                '3 engine delegate')
    map_group.add_argument('--seed', type=int, help='Random seed')

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    return run(args)


if __name__ == '__main__':
    sys.exit(main())
