"""
Telemetry store for the DBW control loop.

Inbound notifications (enable flag, waypoints, pose, velocity) land in a
single-slot inbox per kind and only become visible when the loop calls
drain() at the start of a tick. Everything runs on the loop thread.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

from data.formats.data_format import Pose, Velocity, Waypoint

logger = logging.getLogger(__name__)

ENABLED = "enabled"
WAYPOINTS = "waypoints"
POSE = "pose"
VELOCITY = "velocity"

_DRAIN_ORDER = (ENABLED, WAYPOINTS, POSE, VELOCITY)


@dataclass(frozen=True)
class TelemetrySnapshot:
    """Telemetry visible to one tick."""
    enabled: bool
    waypoints: Tuple[Waypoint, ...]
    pose: Optional[Pose]
    velocity: Optional[Velocity]
    ready: bool


class TelemetryStore:
    """Latest enable flag, waypoints, pose and velocity with received flags."""

    def __init__(self):
        self._pending: Dict[str, Any] = {}
        self.enabled = False
        self.waypoints: Tuple[Waypoint, ...] = ()
        self.pose: Optional[Pose] = None
        self.velocity: Optional[Velocity] = None
        self.waypoints_set = False
        self.pose_set = False
        self.velocity_set = False

    def submit_enabled(self, enabled: bool) -> None:
        if not isinstance(enabled, bool):
            raise TypeError(f"enable flag must be bool, got {type(enabled).__name__}")
        self._pending[ENABLED] = enabled

    def submit_waypoints(self, waypoints: Sequence[Waypoint]) -> None:
        waypoints = tuple(waypoints)
        for wp in waypoints:
            if not isinstance(wp, Waypoint):
                raise TypeError(f"expected Waypoint, got {type(wp).__name__}")
        self._pending[WAYPOINTS] = waypoints

    def submit_pose(self, pose: Pose) -> None:
        if not isinstance(pose, Pose):
            raise TypeError(f"expected Pose, got {type(pose).__name__}")
        self._pending[POSE] = pose

    def submit_velocity(self, velocity: Velocity) -> None:
        if not isinstance(velocity, Velocity):
            raise TypeError(f"expected Velocity, got {type(velocity).__name__}")
        self._pending[VELOCITY] = velocity

    def submit(self, topic: str, value: Any) -> None:
        """Route a notification by kind name (enabled/waypoints/pose/velocity)."""
        handlers = {
            ENABLED: self.submit_enabled,
            WAYPOINTS: self.submit_waypoints,
            POSE: self.submit_pose,
            VELOCITY: self.submit_velocity,
        }
        if topic not in handlers:
            raise KeyError(f"unknown telemetry topic: {topic}")
        handlers[topic](value)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def drain(self) -> int:
        """Apply all pending notifications. Returns how many were applied."""
        applied = 0
        for kind in _DRAIN_ORDER:
            if kind not in self._pending:
                continue
            value = self._pending.pop(kind)
            if kind == ENABLED:
                if value != self.enabled:
                    logger.info("[DBW_ENABLE] %s", "enabled" if value else "disabled")
                self.enabled = value
            elif kind == WAYPOINTS:
                self.waypoints = value
                self.waypoints_set = True
            elif kind == POSE:
                self.pose = value
                self.pose_set = True
            elif kind == VELOCITY:
                self.velocity = value
                self.velocity_set = True
            applied += 1
        return applied

    def is_ready(self) -> bool:
        return self.waypoints_set and self.pose_set and self.velocity_set

    def snapshot(self) -> TelemetrySnapshot:
        return TelemetrySnapshot(
            enabled=self.enabled,
            waypoints=self.waypoints,
            pose=self.pose,
            velocity=self.velocity,
            ready=self.is_ready(),
        )
