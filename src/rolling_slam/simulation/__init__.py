"""
Simulation Module

Simulated world, robot, odometry and laser for running the mapper
without hardware.

Usage:
    from rolling_slam.simulation import SimulatedRobot, create_corridor_world

    world = create_corridor_world(length=40.0)
    robot = SimulatedRobot(world)
    robot.velocity = 0.5

    robot.update(0.1)
    scan = robot.get_scan(num_beams=180)
    pose = robot.odometry.lookup_pose(scan.timestamp)
"""

from .world import (
    SimulatedWorld,
    create_corridor_world,
)

from .robot import (
    OdometryRecorder,
    SimulatedLaserAdapter,
    SimulatedRobot,
)

__all__ = [
    'SimulatedWorld',
    'create_corridor_world',
    'OdometryRecorder',
    'SimulatedLaserAdapter',
    'SimulatedRobot',
]
