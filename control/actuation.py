"""
Actuation arbitration for the DBW interface.

Turns the optimizer's (steering, acceleration) action into a steering command
plus exactly one of throttle or brake, gated on the enable flag and telemetry
readiness, and publishes it.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

import numpy as np

from data.formats.data_format import (
    ActuationCommand,
    BrakeCommand,
    SteeringCommand,
    ThrottleCommand,
    TORQUE_MAX,
)

logger = logging.getLogger(__name__)


class FallbackPolicy(str, enum.Enum):
    """What to command when the optimizer fails for a tick."""
    DECELERATE = "decelerate"
    HOLD = "hold"


class ActuationPublisher(Protocol):
    def publish_steering(self, command: SteeringCommand) -> bool: ...

    def publish_throttle(self, command: ThrottleCommand) -> bool: ...

    def publish_brake(self, command: BrakeCommand) -> bool: ...


@dataclass
class ActuationConfig:
    """Actuator limits and optimizer-failure fallback."""
    max_steering_wheel_angle: float = 8.2  # rad
    steering_wheel_angle_velocity: float = 0.0  # rad/s, 0 = DBW default
    throttle_max: float = 1.0  # percent mode upper bound
    brake_torque_max: float = TORQUE_MAX  # N*m
    brake_torque_per_accel: float = 1.0  # 1.0 = acceleration magnitude passed through
    fallback_policy: FallbackPolicy = FallbackPolicy.DECELERATE
    fallback_deceleration: float = 1.0  # m/s^2
    max_hold_ticks: int = 5


def build_actuation_config(actuation_cfg: dict, vehicle_cfg: Optional[dict] = None) -> ActuationConfig:
    """Build ActuationConfig from the 'actuation' and 'vehicle' config sections."""
    vehicle_cfg = vehicle_cfg or {}
    brake_torque_per_accel = float(actuation_cfg.get("brake_torque_per_accel", 1.0))
    if bool(actuation_cfg.get("brake_torque_from_mass", False)):
        brake_torque_per_accel = (
            float(vehicle_cfg.get("vehicle_mass", 1736.35))
            * float(vehicle_cfg.get("wheel_radius", 0.2413))
        )
    return ActuationConfig(
        max_steering_wheel_angle=float(vehicle_cfg.get("max_steering_wheel_angle", 8.2)),
        steering_wheel_angle_velocity=float(
            actuation_cfg.get("steering_wheel_angle_velocity", 0.0)
        ),
        throttle_max=float(np.clip(float(actuation_cfg.get("throttle_max", 1.0)), 0.0, 1.0)),
        brake_torque_max=float(
            np.clip(float(actuation_cfg.get("brake_torque_max", TORQUE_MAX)), 0.0, TORQUE_MAX)
        ),
        brake_torque_per_accel=brake_torque_per_accel,
        fallback_policy=FallbackPolicy(actuation_cfg.get("fallback_policy", "decelerate")),
        fallback_deceleration=abs(float(actuation_cfg.get("fallback_deceleration", 1.0))),
        max_hold_ticks=int(actuation_cfg.get("max_hold_ticks", 5)),
    )


class ActuationArbiter:
    """Safety-gated, mutually exclusive throttle/brake arbitration."""

    def __init__(self, config: Optional[ActuationConfig] = None,
                 publisher: Optional[ActuationPublisher] = None):
        self.config = config or ActuationConfig()
        self.publisher = publisher
        self._hold_ticks = 0

    def arbitrate(self, steering: float, acceleration: float,
                  enabled: bool, ready: bool) -> Optional[ActuationCommand]:
        """
        Build the command for this tick.

        Returns:
            None when not ready or not enabled; otherwise steering plus a
            throttle command (acceleration > 0) or a brake command.
        """
        if not (enabled and ready):
            return None
        cfg = self.config

        steering_cmd = SteeringCommand(
            enable=True,
            steering_wheel_angle_cmd=float(
                np.clip(steering, -cfg.max_steering_wheel_angle, cfg.max_steering_wheel_angle)
            ),
            steering_wheel_angle_velocity=cfg.steering_wheel_angle_velocity,
        )

        # NaN falls through to the brake branch
        if acceleration > 0.0:
            return ActuationCommand(
                steering=steering_cmd,
                throttle=ThrottleCommand(
                    enable=True,
                    pedal_cmd=float(np.clip(acceleration, 0.0, cfg.throttle_max)),
                ),
            )

        torque = abs(acceleration) * cfg.brake_torque_per_accel
        if not np.isfinite(torque):
            torque = cfg.brake_torque_max
        return ActuationCommand(
            steering=steering_cmd,
            brake=BrakeCommand(
                enable=True,
                pedal_cmd=float(np.clip(torque, 0.0, cfg.brake_torque_max)),
            ),
        )

    def dispatch(self, command: Optional[ActuationCommand]) -> bool:
        """Publish steering, then the single pedal command. None publishes nothing."""
        if command is None or self.publisher is None:
            return False
        ok = self.publisher.publish_steering(command.steering)
        if command.throttle is not None:
            ok = self.publisher.publish_throttle(command.throttle) and ok
        else:
            ok = self.publisher.publish_brake(command.brake) and ok
        return ok

    def fallback(self, last_action: Optional[Tuple[float, float]]) -> Tuple[float, float]:
        """
        Action to use when the optimizer fails this tick.

        Args:
            last_action: (steering, acceleration) last dispatched, or None

        Returns:
            (steering, acceleration)
        """
        cfg = self.config
        last_steering = last_action[0] if last_action is not None else 0.0
        if (
            cfg.fallback_policy == FallbackPolicy.HOLD
            and last_action is not None
            and self._hold_ticks < cfg.max_hold_ticks
        ):
            self._hold_ticks += 1
            return float(last_action[0]), float(last_action[1])
        if cfg.fallback_policy == FallbackPolicy.HOLD and self._hold_ticks == cfg.max_hold_ticks:
            logger.warning("[FALLBACK_HOLD_EXPIRED] held %d ticks, decelerating", self._hold_ticks)
            self._hold_ticks += 1
        return float(last_steering), -cfg.fallback_deceleration

    def clear_fallback(self):
        """Reset the hold counter after a successful solve."""
        self._hold_ticks = 0
