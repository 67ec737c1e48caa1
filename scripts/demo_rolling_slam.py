#!/usr/bin/env python3
"""
Rolling SLAM Demo

Demonstrates the rolling-window mapper with simulated data:
- Mapping a long corridor with a fixed-size window
- Window moves, forgetting and regeneration
- Real-time visualization of the published map

This demo runs without hardware.

Usage:
    python scripts/demo_rolling_slam.py
    python scripts/demo_rolling_slam.py --generation-mode 1   # incremental
    python scripts/demo_rolling_slam.py --no-viz              # Console only
"""

import sys
import time
import dataclasses
import logging
import argparse
from pathlib import Path

import numpy as np
import matplotlib.pyplot as plt
from matplotlib.animation import FuncAnimation
from matplotlib.colors import LinearSegmentedColormap
from matplotlib.patches import Rectangle

# Add src to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / 'src'))

from rolling_slam import RollingMapperConfig, RollingWindowMapper
from rolling_slam.simulation import SimulatedRobot, create_corridor_world


def make_setup(args):
    """Config, world, robot and mapper for a demo run."""
    if args.config:
        config = RollingMapperConfig.from_yaml(args.config)
    else:
        config = RollingMapperConfig(
            window_size=args.window_size,
            resize_margin=1.5,
            particles=15,
            linear_update=0.3,
            angular_update=0.2,
            max_urange=8.0,
            seed=7,
        )
    config = dataclasses.replace(config, generation_mode=args.generation_mode,
                                 delete_mode=args.delete_mode)
    config.validate()

    world = create_corridor_world(length=args.length)
    robot = SimulatedRobot(world, odometry_noise=0.02, rng=np.random.default_rng(config.seed))
    mapper = RollingWindowMapper(config, robot.odometry)
    return config, world, robot, mapper


def step_robot(robot, mapper, speed, dt=0.1):
    """Drive along the corridor axis and feed one scan to the mapper."""
    robot.velocity = speed
    robot.angular_velocity = -0.5 * robot.y - 0.8 * robot.theta
    robot.update(dt)
    scan = robot.get_scan(num_beams=180, max_range=12.0, noise_std=0.01)
    mapper.laser_callback(scan)
    return scan


def run_demo_console(args):
    """Run demo with console output."""
    print("\n" + "=" * 60)
    print("ROLLING SLAM DEMO (Console Mode)")
    print("=" * 60)

    config, world, robot, mapper = make_setup(args)
    mapper.start()

    print(f"\nWindow {config.window_size:.1f} m, retention {config.delete_mode.name}, "
          f"generation {config.generation_mode.name}")
    print("-" * 60)

    try:
        for step in range(args.steps):
            step_robot(robot, mapper, args.speed)

            if step % 25 == 0 and mapper.initialized:
                est = mapper.engine.best_pose()
                bounds = mapper.tracker.bounds
                error = np.hypot(est.x - robot.odom.x, est.y - robot.odom.y)
                print(f"Step {step:3d}: "
                      f"True=({robot.x:5.2f}, {robot.y:5.2f}) "
                      f"Est=({est.x:5.2f}, {est.y:5.2f}) "
                      f"Corr={error:.3f}m "
                      f"Window x=[{bounds.xmin:5.2f}, {bounds.xmax:5.2f}] "
                      f"Nodes={len(mapper.history)}")
    finally:
        mapper.stop()

    stats = mapper.get_stats()
    print("-" * 60)
    print(f"\nWindow moves: {stats['resizes']}")
    print(f"History nodes: {stats['history_nodes']} ({stats['retained_nodes']} retained)")
    print(f"Publish ticks: {stats['publish_ticks']}")

    snapshot = mapper.get_map()
    if snapshot is not None:
        with mapper.map_lock:
            grid = mapper.engine.particles[snapshot.particle_index].grid.copy()
        grid.save("/tmp/rolling_map.png", "/tmp/rolling_map.yaml")
        print("\nMap saved to /tmp/rolling_map.png")

    print("\nDemo complete!")


def run_demo_visual(args):
    """Run demo with visualization."""
    print("\n" + "=" * 60)
    print("ROLLING SLAM DEMO (Visual Mode)")
    print("=" * 60)
    print("Close window to exit")

    config, world, robot, mapper = make_setup(args)
    mapper.start()

    fig = plt.figure(figsize=(14, 6))
    fig.suptitle('Rolling Window SLAM - Corridor', fontsize=14)

    # World view (ground truth + window)
    ax_world = fig.add_subplot(121)
    ax_world.set_title('Ground Truth')
    x_min, x_max, y_min, y_max = world.extent
    ax_world.set_xlim(x_min - 1, x_max + 1)
    ax_world.set_ylim(y_min - 6, y_max + 6)
    ax_world.set_aspect('equal')
    ax_world.grid(True, alpha=0.3)

    for (x1, y1), (x2, y2) in world.walls:
        ax_world.plot([x1, x2], [y1, y2], 'k-', linewidth=2)
    for ox, oy, r in world.obstacles:
        ax_world.add_patch(plt.Circle((ox, oy), r, color='red', alpha=0.5))

    robot_marker, = ax_world.plot([], [], 'b^', markersize=10)
    robot_path, = ax_world.plot([], [], 'b-', alpha=0.3, linewidth=1)
    window_patch = Rectangle((0, 0), 0, 0, fill=False, edgecolor='green', linewidth=1.5)
    ax_world.add_patch(window_patch)

    # Published map view
    ax_map = fig.add_subplot(122)
    ax_map.set_title('Published Map')

    cmap = LinearSegmentedColormap.from_list(
        'occupancy',
        [(0, 'black'), (0.5, 'gray'), (1, 'white')]
    )
    map_img = ax_map.imshow(np.full((10, 10), 205, dtype=np.uint8),
                            cmap=cmap, vmin=0, vmax=255, origin='lower')
    est_marker, = ax_map.plot([], [], 'r^', markersize=8)

    status_text = fig.text(0.02, 0.02, '', fontsize=10, fontfamily='monospace',
                           verticalalignment='bottom')

    state = {'step': 0, 'start_time': time.time()}

    def update(frame):
        if state['step'] >= args.steps:
            return (robot_marker,)
        step_robot(robot, mapper, args.speed)
        state['step'] += 1

        robot_marker.set_data([robot.x], [robot.y])
        robot_path.set_data(robot.path_x, robot.path_y)

        snapshot = mapper.publisher.get_map() or mapper.get_map()
        if snapshot is not None:
            data = snapshot.as_array()
            image = np.full(data.shape, 205, dtype=np.uint8)
            image[data == 0] = 254
            image[data == 100] = 0
            map_img.set_data(image)
            extent = [snapshot.origin_x, snapshot.origin_x + snapshot.width * snapshot.resolution,
                      snapshot.origin_y, snapshot.origin_y + snapshot.height * snapshot.resolution]
            map_img.set_extent(extent)
            ax_map.set_xlim(extent[0], extent[1])
            ax_map.set_ylim(extent[2], extent[3])

            bounds = mapper.tracker.bounds
            window_patch.set_bounds(bounds.xmin, bounds.ymin,
                                    bounds.xmax - bounds.xmin, bounds.ymax - bounds.ymin)

        if mapper.initialized:
            est = mapper.engine.best_pose()
            est_marker.set_data([est.x], [est.y])

        elapsed = time.time() - state['start_time']
        stats = mapper.get_stats()
        status_text.set_text(
            f"Step: {state['step']:4d} | "
            f"Time: {elapsed:.1f}s | "
            f"Moves: {stats['resizes']} | "
            f"Nodes: {stats['history_nodes']} | "
            f"Entropy: {stats['entropy']:.3f}"
        )
        return (robot_marker, robot_path, window_patch, map_img, est_marker, status_text)

    ani = FuncAnimation(fig, update, interval=50, blit=False, cache_frame_data=False)

    plt.tight_layout()
    plt.subplots_adjust(bottom=0.08)
    try:
        plt.show()
    finally:
        mapper.stop()
    return ani


def main():
    parser = argparse.ArgumentParser(description='Rolling SLAM Demo')
    parser.add_argument('--config', help='YAML configuration file')
    parser.add_argument('--generation-mode', type=int, choices=[0, 1, 2, 3], default=2,
                        help='Map generation mode')
    parser.add_argument('--delete-mode', type=int, choices=[0, 1, 2], default=2,
                        help='Retention mode')
    parser.add_argument('--window-size', type=float, default=10.0, help='Window side (m)')
    parser.add_argument('--length', type=float, default=30.0, help='Corridor length (m)')
    parser.add_argument('--speed', type=float, default=0.5, help='Forward speed (m/s)')
    parser.add_argument('--steps', type=int, default=500, help='Simulation steps')
    parser.add_argument('--no-viz', action='store_true',
                        help='Disable visualization')
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO,
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    if args.no_viz:
        run_demo_console(args)
    else:
        run_demo_visual(args)


if __name__ == '__main__':
    main()
