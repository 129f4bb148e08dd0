"""
Data format definitions for the DBW stack.
Telemetry inputs, derived control state, outbound DBW commands and tick records.
"""

import math
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Sequence
import numpy as np


# DBW pedal command types
CMD_NONE = 0
CMD_PEDAL = 1
CMD_PERCENT = 2
CMD_TORQUE = 3

# Brake torque limits (N*m)
TORQUE_BOO = 520.0
TORQUE_MAX = 3412.0

# Message topics
TOPIC_ENABLED = "/vehicle/dbw_enabled"
TOPIC_WAYPOINTS = "/final_waypoints"
TOPIC_POSE = "/current_pose"
TOPIC_VELOCITY = "/current_velocity"
TOPIC_STEERING = "/vehicle/steering_cmd"
TOPIC_THROTTLE = "/vehicle/throttle_cmd"
TOPIC_BRAKE = "/vehicle/brake_cmd"


@dataclass(frozen=True)
class Waypoint:
    """Point along the reference path (world frame)."""
    x: float
    y: float
    target_velocity: float = 0.0  # m/s


@dataclass(frozen=True)
class Pose:
    """Vehicle pose in the world frame."""
    x: float
    y: float
    heading: float  # radians, counter-clockwise from world +x


@dataclass(frozen=True)
class Velocity:
    """Vehicle velocity (body frame)."""
    linear_x: float
    linear_y: float = 0.0
    angular_z: float = 0.0

    @property
    def speed(self) -> float:
        return self.linear_x


@dataclass
class ControlState:
    """Kinematic state handed to the trajectory optimizer."""
    x: float
    y: float
    psi: float
    v: float
    cte: float  # cross-track error (m)
    epsi: float  # heading error (rad)

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.psi, self.v, self.cte, self.epsi], dtype=float)


@dataclass
class SteeringCommand:
    """Steering command (mirrors dbw_mkz_msgs/SteeringCmd)."""
    enable: bool
    steering_wheel_angle_cmd: float  # rad
    steering_wheel_angle_velocity: float = 0.0  # rad/s, 0 = default limit


@dataclass
class ThrottleCommand:
    """Throttle command (mirrors dbw_mkz_msgs/ThrottleCmd)."""
    enable: bool
    pedal_cmd: float  # [0, 1] in percent mode
    pedal_cmd_type: int = CMD_PERCENT


@dataclass
class BrakeCommand:
    """Brake command (mirrors dbw_mkz_msgs/BrakeCmd)."""
    enable: bool
    pedal_cmd: float  # N*m in torque mode
    pedal_cmd_type: int = CMD_TORQUE


@dataclass
class ActuationCommand:
    """Steering plus exactly one of throttle/brake for a single tick."""
    steering: SteeringCommand
    throttle: Optional[ThrottleCommand] = None
    brake: Optional[BrakeCommand] = None

    def __post_init__(self):
        if (self.throttle is None) == (self.brake is None):
            raise ValueError("ActuationCommand needs exactly one of throttle or brake")


@dataclass
class TickRecord:
    """One control tick, as written by the recorder."""
    timestamp: float
    tick_id: int
    status: str
    enabled: bool
    ready: bool
    cte: Optional[float] = None
    epsi: Optional[float] = None
    predicted_state: Optional[np.ndarray] = None  # [x, y, psi, v, cte, epsi]
    path_coefficients: Optional[np.ndarray] = None  # [c0, c1, c2, c3]
    steering: Optional[float] = None  # steering wheel angle sent (rad)
    throttle: Optional[float] = None  # throttle pedal sent (percent)
    brake: Optional[float] = None  # brake torque sent (N*m)
    solve_time: Optional[float] = None  # optimizer wall time (s)
    metadata: Optional[Dict[str, Any]] = None


def yaw_from_quaternion(x: float, y: float, z: float, w: float) -> float:
    """Yaw (rotation about +z) from an (x, y, z, w) quaternion."""
    return math.atan2(2.0 * (w * z + x * y), 1.0 - 2.0 * (y * y + z * z))


def pose_from_message(message: Dict[str, Any]) -> Pose:
    """
    Build a Pose from a /current_pose payload.

    Accepts {"position": {x, y, z}, "orientation": {x, y, z, w}} and an
    optional explicit "heading" (radians) which takes precedence.
    """
    position = message.get('position', {})
    if 'heading' in message and message['heading'] is not None:
        heading = float(message['heading'])
    else:
        orientation = message.get('orientation', {})
        heading = yaw_from_quaternion(
            float(orientation.get('x', 0.0)),
            float(orientation.get('y', 0.0)),
            float(orientation.get('z', 0.0)),
            float(orientation.get('w', 1.0)),
        )
    return Pose(x=float(position.get('x', 0.0)), y=float(position.get('y', 0.0)), heading=heading)


def velocity_from_message(message: Dict[str, Any]) -> Velocity:
    """Build a Velocity from a /current_velocity payload ({linear, angular})."""
    linear = message.get('linear', {})
    angular = message.get('angular', {})
    return Velocity(
        linear_x=float(linear.get('x', 0.0)),
        linear_y=float(linear.get('y', 0.0)),
        angular_z=float(angular.get('z', 0.0)),
    )


def waypoints_from_message(message: Dict[str, Any]) -> List[Waypoint]:
    """Build the waypoint list from a /final_waypoints payload."""
    waypoints = []
    for wp in message.get('waypoints', []):
        position = wp.get('position', {})
        waypoints.append(Waypoint(
            x=float(position.get('x', 0.0)),
            y=float(position.get('y', 0.0)),
            target_velocity=float(wp.get('target_velocity', 0.0)),
        ))
    return waypoints


def waypoints_to_array(waypoints: Sequence[Waypoint]) -> np.ndarray:
    """[N, 2] array of waypoint world positions."""
    if len(waypoints) == 0:
        return np.zeros((0, 2))
    return np.array([[wp.x, wp.y] for wp in waypoints], dtype=float)


def command_to_dict(command: Any) -> Dict[str, Any]:
    """Serialize a steering/throttle/brake command for the bridge."""
    payload = dict(command.__dict__)
    for key, value in payload.items():
        if isinstance(value, (np.floating, np.integer)):
            payload[key] = value.item()
    return payload
