"""
Local-frame path model: cubic fit through the waypoints ahead of the vehicle.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from data.formats.data_format import Pose, Waypoint
from trajectory.frame import closest_waypoint_index, to_local_frame
from trajectory.polyfit import PolyFitError, polyeval, polyfit


PATH_MODEL_COEFFS = 4  # cubic


@dataclass
class PathModelConfig:
    """Waypoint window and fit order for the path model."""
    window_size: int = 6  # waypoints taken from the closest one onwards
    degree: int = 3
    min_points: int = 3

    @classmethod
    def from_dict(cls, cfg: dict) -> "PathModelConfig":
        return cls(
            window_size=int(cfg.get("window_size", 6)),
            degree=int(cfg.get("degree", 3)),
            min_points=int(cfg.get("min_points", 3)),
        )


@dataclass
class PathModel:
    """Cubic path fit in the vehicle frame for the current tick."""
    coefficients: np.ndarray  # [c0, c1, c2, c3]
    cte: float
    epsi: float
    closest_index: int
    local_points: np.ndarray  # [N, 2] points used in the fit
    degree: int

    def evaluate(self, x):
        return polyeval(self.coefficients, x)


def build_path_model(
    waypoints: Sequence[Waypoint],
    pose: Pose,
    config: PathModelConfig | None = None,
) -> PathModel:
    """
    Fit the path model for the current pose.

    The window starts at the closest waypoint and is clamped to the points
    actually available. With fewer points than the configured degree needs,
    the degree drops (never below a line through min_points) and the unused
    higher coefficients are zero.

    Raises:
        PolyFitError: Fewer than min_points waypoints in the window, or a
            degenerate window
    """
    config = config or PathModelConfig()
    if len(waypoints) == 0:
        raise PolyFitError("no waypoints")

    start = closest_waypoint_index(waypoints, pose)
    window = list(waypoints[start:start + max(config.window_size, config.min_points)])
    if len(window) < config.min_points:
        raise PolyFitError(
            f"only {len(window)} waypoints ahead of index {start}, need {config.min_points}"
        )

    local = to_local_frame(window, pose)
    degree = max(1, min(config.degree, len(window) - 1, PATH_MODEL_COEFFS - 1))
    fitted = polyfit(local[:, 0], local[:, 1], degree)

    coefficients = np.zeros(PATH_MODEL_COEFFS)
    coefficients[:fitted.size] = fitted

    cte = polyeval(coefficients, 0.0)
    epsi = -math.atan(coefficients[1])
    return PathModel(
        coefficients=coefficients,
        cte=float(cte),
        epsi=float(epsi),
        closest_index=start,
        local_points=local,
        degree=degree,
    )
