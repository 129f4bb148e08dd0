"""
Trajectory optimizer interface and a reference MPC implementation.

The control pipeline only depends on TrajectoryOptimizer.solve(); MPCController
is the bundled solver (single shooting with scipy SLSQP) and can be replaced by
any object with the same method.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, Sequence, Tuple

import numpy as np
from scipy.optimize import minimize

from trajectory.polyfit import polyderiv

logger = logging.getLogger(__name__)


class OptimizerError(RuntimeError):
    """Optimizer did not produce a usable control action."""


@dataclass
class OptimizerResult:
    """First control action of the optimized sequence plus the predicted path."""
    steering: float  # rad, positive = left
    acceleration: float  # m/s^2, positive = throttle
    predicted_x: np.ndarray = field(default_factory=lambda: np.zeros(0))
    predicted_y: np.ndarray = field(default_factory=lambda: np.zeros(0))
    converged: bool = True  # False: stopped at the solve budget with the best iterate


class TrajectoryOptimizer(Protocol):
    def solve(self, state: np.ndarray, coeffs: Sequence[float]) -> OptimizerResult:
        """Return the control action for state [x, y, psi, v, cte, epsi]."""
        ...


@dataclass
class MPCConfig:
    """Horizon, bounds and cost weights for MPCController."""
    horizon: int = 10
    dt: float = 0.1
    lf: float = 2.67
    ref_v: float = 10.0  # m/s
    max_steering: float = 0.436332  # rad (25 deg)
    max_acceleration: float = 1.0
    min_acceleration: float = -1.0
    weight_cte: float = 2000.0
    weight_epsi: float = 2000.0
    weight_v: float = 1.0
    weight_steering: float = 5.0
    weight_acceleration: float = 5.0
    weight_steering_rate: float = 200.0
    weight_acceleration_rate: float = 10.0
    max_iterations: int = 50
    solve_budget_s: float = 0.012  # solver stops here; <= 0 disables
    timeout_s: float = 0.02

    @classmethod
    def from_dict(cls, cfg: dict, lf: Optional[float] = None) -> "MPCConfig":
        defaults = cls()
        return cls(
            horizon=int(cfg.get("horizon", defaults.horizon)),
            dt=float(cfg.get("dt", defaults.dt)),
            lf=float(lf if lf is not None else cfg.get("lf", defaults.lf)),
            ref_v=float(cfg.get("ref_v", defaults.ref_v)),
            max_steering=float(cfg.get("max_steering", defaults.max_steering)),
            max_acceleration=float(cfg.get("max_acceleration", defaults.max_acceleration)),
            min_acceleration=float(cfg.get("min_acceleration", defaults.min_acceleration)),
            weight_cte=float(cfg.get("weight_cte", defaults.weight_cte)),
            weight_epsi=float(cfg.get("weight_epsi", defaults.weight_epsi)),
            weight_v=float(cfg.get("weight_v", defaults.weight_v)),
            weight_steering=float(cfg.get("weight_steering", defaults.weight_steering)),
            weight_acceleration=float(cfg.get("weight_acceleration", defaults.weight_acceleration)),
            weight_steering_rate=float(cfg.get("weight_steering_rate", defaults.weight_steering_rate)),
            weight_acceleration_rate=float(
                cfg.get("weight_acceleration_rate", defaults.weight_acceleration_rate)
            ),
            max_iterations=int(cfg.get("max_iterations", defaults.max_iterations)),
            solve_budget_s=float(cfg.get("solve_budget_s", defaults.solve_budget_s)),
            timeout_s=float(cfg.get("timeout_s", defaults.timeout_s)),
        )


# SLSQP exit modes that still leave a usable (feasible) best iterate:
# 8 = positive directional derivative in line search, 9 = iteration limit.
SLSQP_INCOMPLETE_STATUS = (8, 9)


class _SolveDeadline(Exception):
    """Raised from the objective once the solve budget is spent."""


def _horner(coeffs: Tuple[float, ...], x: float) -> float:
    result = 0.0
    for c in reversed(coeffs):
        result = result * x + c
    return result


class MPCController:
    """
    Model Predictive Control over a kinematic bicycle model.

    Decision variables are the steering and acceleration at each of the
    horizon steps; the state is rolled out from the given initial state and
    the path error is measured against the fitted polynomial. The cost
    gradient is computed exactly by a backward (adjoint) pass over the
    rollout, so SLSQP needs one rollout per iteration instead of one per
    decision variable.
    """

    def __init__(self, config: Optional[MPCConfig] = None,
                 clock: Callable[[], float] = time.perf_counter):
        self.config = config or MPCConfig()
        if self.config.horizon < 1:
            raise ValueError("MPC horizon must be at least 1 step")
        n = self.config.horizon
        self._bounds = (
            [(-self.config.max_steering, self.config.max_steering)] * n
            + [(self.config.min_acceleration, self.config.max_acceleration)] * n
        )
        self._lower = np.array([b[0] for b in self._bounds])
        self._upper = np.array([b[1] for b in self._bounds])
        self._warm_start: Optional[np.ndarray] = None
        self.clock = clock

    def reset(self):
        """Drop the warm start from the previous solve."""
        self._warm_start = None

    def _rollout(self, u: np.ndarray, state: np.ndarray, coeffs: np.ndarray):
        """Predicted (x, y) over the horizon for the control sequence u."""
        cfg = self.config
        n = cfg.horizon
        x, y, psi, v = (float(s) for s in state[:4])
        xs = np.empty(n)
        ys = np.empty(n)
        for k in range(n):
            x, y, psi, v = (
                x + v * math.cos(psi) * cfg.dt,
                y + v * math.sin(psi) * cfg.dt,
                psi + v * float(u[k]) / cfg.lf * cfg.dt,
                v + float(u[n + k]) * cfg.dt,
            )
            xs[k] = x
            ys[k] = y
        return xs, ys

    def _cost_and_grad(self, u: np.ndarray, state: np.ndarray,
                       coeffs: Tuple[float, ...]) -> Tuple[float, np.ndarray]:
        cfg = self.config
        n = cfg.horizon
        dt = cfg.dt
        dcoeffs = tuple(float(c) for c in polyderiv(coeffs))
        ddcoeffs = tuple(float(c) for c in polyderiv(dcoeffs))
        delta = [float(d) for d in u[:n]]
        accel = [float(a) for a in u[n:]]

        # Forward pass; index k + 1 holds the state after applying u[k]
        xs = [float(state[0])]
        ys = [float(state[1])]
        psis = [float(state[2])]
        vs = [float(state[3])]
        cost = cfg.weight_cte * float(state[4]) ** 2 + cfg.weight_epsi * float(state[5]) ** 2
        for k in range(n):
            x, y, psi, v = xs[k], ys[k], psis[k], vs[k]
            xs.append(x + v * math.cos(psi) * dt)
            ys.append(y + v * math.sin(psi) * dt)
            psis.append(psi + v * delta[k] / cfg.lf * dt)
            vs.append(v + accel[k] * dt)

        grad = np.zeros(2 * n)
        g_x = g_y = g_psi = g_v = 0.0
        for k in range(n - 1, -1, -1):
            x1, y1, psi1, v1 = xs[k + 1], ys[k + 1], psis[k + 1], vs[k + 1]
            cte = _horner(coeffs, x1) - y1
            slope = _horner(dcoeffs, x1)
            epsi = psi1 - math.atan(slope)
            speed_error = v1 - cfg.ref_v
            cost += (
                cfg.weight_cte * cte ** 2
                + cfg.weight_epsi * epsi ** 2
                + cfg.weight_v * speed_error ** 2
            )

            # Stage cost at state k + 1
            g_x += 2.0 * cfg.weight_cte * cte * slope
            g_y -= 2.0 * cfg.weight_cte * cte
            g_psi += 2.0 * cfg.weight_epsi * epsi
            g_x -= 2.0 * cfg.weight_epsi * epsi * _horner(ddcoeffs, x1) / (1.0 + slope ** 2)
            g_v += 2.0 * cfg.weight_v * speed_error

            # Back through the step from state k
            psi0, v0 = psis[k], vs[k]
            cos_psi = math.cos(psi0)
            sin_psi = math.sin(psi0)
            grad[k] += g_psi * v0 * dt / cfg.lf
            grad[n + k] += g_v * dt
            g_psi, g_v = (
                g_psi - g_x * v0 * sin_psi * dt + g_y * v0 * cos_psi * dt,
                g_v + g_x * cos_psi * dt + g_y * sin_psi * dt + g_psi * delta[k] * dt / cfg.lf,
            )

        d = np.asarray(delta)
        a = np.asarray(accel)
        cost += cfg.weight_steering * float(d @ d) + cfg.weight_acceleration * float(a @ a)
        grad[:n] += 2.0 * cfg.weight_steering * d
        grad[n:] += 2.0 * cfg.weight_acceleration * a
        if n > 1:
            dd = np.diff(d)
            da = np.diff(a)
            cost += cfg.weight_steering_rate * float(dd @ dd)
            cost += cfg.weight_acceleration_rate * float(da @ da)
            grad[1:n] += 2.0 * cfg.weight_steering_rate * dd
            grad[:n - 1] -= 2.0 * cfg.weight_steering_rate * dd
            grad[n + 1:] += 2.0 * cfg.weight_acceleration_rate * da
            grad[n:2 * n - 1] -= 2.0 * cfg.weight_acceleration_rate * da
        return cost, grad

    def solve(self, state: np.ndarray, coeffs: Sequence[float]) -> OptimizerResult:
        """
        Solve for the first control action.

        The solve stops at config.solve_budget_s and returns the best
        sequence evaluated so far (converged=False).

        Args:
            state: [x, y, psi, v, cte, epsi]
            coeffs: Path polynomial coefficients (lowest power first)

        Returns:
            OptimizerResult with steering/acceleration and predicted trajectory

        Raises:
            OptimizerError: If the solver fails or returns non-finite values
        """
        start = self.clock()
        state = np.asarray(state, dtype=float)
        coeffs_arr = np.asarray(coeffs, dtype=float).ravel()
        if state.shape != (6,):
            raise OptimizerError(f"state must have 6 elements, got shape {state.shape}")
        if not (np.all(np.isfinite(state)) and np.all(np.isfinite(coeffs_arr))):
            raise OptimizerError("non-finite optimizer input")
        coeffs_t = tuple(float(c) for c in coeffs_arr)

        n = self.config.horizon
        if self._warm_start is not None:
            u0 = np.concatenate([self._warm_start[1:n], self._warm_start[n - 1:n],
                                 self._warm_start[n + 1:], self._warm_start[-1:]])
        else:
            u0 = np.zeros(2 * n)

        budget = self.config.solve_budget_s
        deadline = start + budget if budget > 0.0 else None
        best_cost, _ = self._cost_and_grad(u0, state, coeffs_t)
        best = {"cost": best_cost, "u": u0.copy()}

        def objective(u):
            if deadline is not None and self.clock() > deadline:
                raise _SolveDeadline()
            u = np.clip(u, self._lower, self._upper)
            cost, grad = self._cost_and_grad(u, state, coeffs_t)
            if cost < best["cost"]:
                best["cost"] = cost
                best["u"] = u.copy()
            return cost, grad

        converged = True
        try:
            result = minimize(
                objective,
                u0,
                jac=True,
                method="SLSQP",
                bounds=self._bounds,
                options={"maxiter": self.config.max_iterations},
            )
        except _SolveDeadline:
            converged = False
            u = best["u"]
            logger.debug("MPC stopped at %.3fs budget, cost=%.3f", budget, best["cost"])
        else:
            if result.success:
                u = np.clip(np.asarray(result.x, dtype=float), self._lower, self._upper)
            elif result.status in SLSQP_INCOMPLETE_STATUS:
                converged = False
                u = best["u"]
                logger.debug("MPC incomplete (%s), using best iterate", result.message)
            else:
                self._warm_start = None
                raise OptimizerError(f"MPC did not converge: {result.message}")

        if not np.all(np.isfinite(u)):
            self._warm_start = None
            raise OptimizerError("MPC returned non-finite controls")

        self._warm_start = u
        xs, ys = self._rollout(u, state, coeffs_arr)
        return OptimizerResult(
            steering=float(u[0]),
            acceleration=float(u[n]),
            predicted_x=xs,
            predicted_y=ys,
            converged=converged,
        )
