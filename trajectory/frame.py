"""
World-to-vehicle frame conversion for reference waypoints.
"""

from __future__ import annotations

import math
from typing import Sequence

import numpy as np

from data.formats.data_format import Pose, Waypoint, waypoints_to_array


def to_local_frame(world_points, pose: Pose) -> np.ndarray:
    """
    Convert world-frame points into the vehicle frame.

    The vehicle sits at the origin facing +x: points are translated by the
    vehicle position, then rotated by -heading.

    Args:
        world_points: [N, 2] array-like of (x, y) or a sequence of Waypoints
        pose: Current vehicle pose

    Returns:
        [N, 2] array of local (x, y)
    """
    if len(world_points) > 0 and isinstance(world_points[0], Waypoint):
        points = waypoints_to_array(world_points)
    else:
        points = np.asarray(world_points, dtype=float).reshape(-1, 2)

    dx = points[:, 0] - pose.x
    dy = points[:, 1] - pose.y
    cos_h = math.cos(-pose.heading)
    sin_h = math.sin(-pose.heading)
    local_x = dx * cos_h - dy * sin_h
    local_y = dx * sin_h + dy * cos_h
    return np.column_stack([local_x, local_y])


def closest_waypoint_index(waypoints: Sequence[Waypoint], pose: Pose) -> int:
    """Index of the waypoint nearest to the vehicle position."""
    if len(waypoints) == 0:
        raise ValueError("no waypoints to search")
    points = waypoints_to_array(waypoints)
    distances = np.hypot(points[:, 0] - pose.x, points[:, 1] - pose.y)
    return int(np.argmin(distances))
