"""
Tests for message conversion helpers in the data format module.
"""

import math

import numpy as np
import pytest

from data.formats.data_format import (
    SteeringCommand,
    Waypoint,
    command_to_dict,
    pose_from_message,
    velocity_from_message,
    waypoints_from_message,
    waypoints_to_array,
    yaw_from_quaternion,
)


@pytest.mark.parametrize("yaw", [0.0, 0.3, -1.2, math.pi / 2, 3.0])
def test_yaw_from_quaternion(yaw):
    assert yaw_from_quaternion(0.0, 0.0, math.sin(yaw / 2), math.cos(yaw / 2)) == pytest.approx(yaw)


def test_yaw_is_not_the_raw_quaternion_z():
    """90 degree yaw has z = sin(pi/4) ~ 0.707, heading must be pi/2."""
    pose = pose_from_message({
        "position": {"x": 1.0, "y": 2.0, "z": 0.0},
        "orientation": {"x": 0.0, "y": 0.0, "z": math.sqrt(0.5), "w": math.sqrt(0.5)},
    })
    assert pose.heading == pytest.approx(math.pi / 2)
    assert (pose.x, pose.y) == (1.0, 2.0)


def test_explicit_heading_takes_precedence():
    pose = pose_from_message({
        "position": {"x": 0.0, "y": 0.0},
        "orientation": {"x": 0.0, "y": 0.0, "z": 1.0, "w": 0.0},
        "heading": 0.25,
    })
    assert pose.heading == 0.25


def test_missing_orientation_is_zero_yaw():
    assert pose_from_message({"position": {"x": 3.0, "y": 4.0}}).heading == pytest.approx(0.0)


def test_velocity_from_message():
    velocity = velocity_from_message({"linear": {"x": 7.5, "y": 0.1}, "angular": {"z": 0.02}})
    assert velocity.speed == 7.5
    assert velocity.linear_y == 0.1
    assert velocity.angular_z == 0.02


def test_waypoints_from_message_keeps_order():
    waypoints = waypoints_from_message({"waypoints": [
        {"position": {"x": float(i), "y": -float(i)}, "target_velocity": 11.0}
        for i in range(4)
    ]})
    assert [wp.x for wp in waypoints] == [0.0, 1.0, 2.0, 3.0]
    assert waypoints[2].target_velocity == 11.0
    np.testing.assert_allclose(waypoints_to_array(waypoints)[3], [3.0, -3.0])


def test_waypoints_to_array_empty():
    assert waypoints_to_array([]).shape == (0, 2)


def test_waypoint_is_immutable():
    wp = Waypoint(1.0, 2.0)
    with pytest.raises(AttributeError):
        wp.x = 5.0


def test_command_to_dict_converts_numpy_scalars():
    payload = command_to_dict(SteeringCommand(True, np.float64(0.125)))
    assert payload == {
        "enable": True,
        "steering_wheel_angle_cmd": 0.125,
        "steering_wheel_angle_velocity": 0.0,
    }
    assert type(payload["steering_wheel_angle_cmd"]) is float
