"""
Vehicle dynamics model (kinematic bicycle model).
Used to project the control state over the actuation latency.
"""

import math
from dataclasses import dataclass
from typing import Optional

from data.formats.data_format import ControlState


@dataclass(frozen=True)
class PreviousActuation:
    """Action that was last sent to the actuators (still in effect)."""
    steering: float = 0.0  # rad
    acceleration: float = 0.0  # m/s^2, positive = throttle

    @classmethod
    def neutral(cls) -> "PreviousActuation":
        return cls(0.0, 0.0)


class KinematicPredictor:
    """
    Latency compensation with a bicycle model.

    The previous command is assumed to stay in effect for the whole latency
    window, so the optimizer solves for the state at the moment the new
    command reaches the actuators.
    """

    def __init__(self, latency: float = 0.1, lf: float = 2.67):
        """
        Initialize predictor.

        Args:
            latency: Time between command computation and actuator effect (seconds)
            lf: Distance from center of mass to front axle (meters)
        """
        if lf <= 0.0:
            raise ValueError(f"lf must be positive, got {lf}")
        if latency < 0.0:
            raise ValueError(f"latency must be non-negative, got {latency}")
        self.latency = latency
        self.lf = lf

    def predict(self, speed: float, cte: float, epsi: float,
                previous: Optional[PreviousActuation] = None) -> ControlState:
        """
        Project the vehicle-frame state forward by the latency.

        Args:
            speed: Current forward speed (m/s)
            cte: Cross-track error at the vehicle (m)
            epsi: Heading error at the vehicle (rad)
            previous: Last dispatched action; None means nothing was sent yet

        Returns:
            ControlState at the time the next command takes effect
        """
        if previous is None:
            previous = PreviousActuation.neutral()

        delta = previous.steering
        latency = self.latency
        yaw_step = speed * delta * latency / self.lf

        heading_from_steering = delta
        x = speed * math.cos(heading_from_steering) * latency
        y = speed * math.sin(heading_from_steering) * latency
        predicted_cte = cte + speed * math.sin(epsi) * latency
        predicted_epsi = epsi + yaw_step
        heading_after_latency = heading_from_steering + yaw_step
        predicted_speed = speed + previous.acceleration * latency

        return ControlState(
            x=x,
            y=y,
            psi=heading_after_latency,
            v=predicted_speed,
            cte=predicted_cte,
            epsi=predicted_epsi,
        )
