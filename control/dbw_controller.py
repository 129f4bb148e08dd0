"""
Per-tick DBW control pipeline.

drain telemetry -> gate (ready, enabled) -> local path fit -> latency
prediction -> optimizer -> actuation arbitration/dispatch.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np

from control.actuation import ActuationArbiter
from control.mpc_controller import OptimizerError, OptimizerResult, TrajectoryOptimizer
from control.telemetry import TelemetryStore
from control.vehicle_model import KinematicPredictor, PreviousActuation
from data.formats.data_format import ActuationCommand, ControlState
from trajectory.path_model import PathModel, PathModelConfig, build_path_model
from trajectory.polyfit import PolyFitError

logger = logging.getLogger(__name__)

LOG_EVERY_N_FAILURES = 50


class TickStatus(str, enum.Enum):
    NOT_READY = "not_ready"
    DISABLED = "disabled"
    FIT_FAILURE = "fit_failure"
    OPTIMIZER_FALLBACK = "optimizer_fallback"
    DISPATCHED = "dispatched"


@dataclass
class TickResult:
    """Outcome of one control tick."""
    status: TickStatus
    command: Optional[ActuationCommand] = None
    path: Optional[PathModel] = None
    state: Optional[ControlState] = None
    optimizer_result: Optional[OptimizerResult] = None
    action: Optional[Tuple[float, float]] = None  # (steering, acceleration) dispatched
    solve_time: Optional[float] = None
    drained: int = 0
    error: Optional[str] = None

    @property
    def dispatched(self) -> bool:
        return self.command is not None


class DBWController:
    """Runs the control pipeline once per call to step()."""

    def __init__(self, optimizer: TrajectoryOptimizer,
                 store: Optional[TelemetryStore] = None,
                 predictor: Optional[KinematicPredictor] = None,
                 arbiter: Optional[ActuationArbiter] = None,
                 path_config: Optional[PathModelConfig] = None,
                 optimizer_timeout: Optional[float] = None,
                 clock: Callable[[], float] = time.perf_counter):
        """
        Initialize controller.

        Args:
            optimizer: Object with solve(state, coeffs) -> OptimizerResult
            store: Telemetry store (a new one if None)
            predictor: Latency predictor (defaults: 0.1 s latency, Lf 2.67 m)
            arbiter: Actuation arbiter (no publisher if None)
            path_config: Waypoint window and fit degree
            optimizer_timeout: Max solve wall time in seconds; None disables the check
            clock: Monotonic clock used to time the optimizer
        """
        self.optimizer = optimizer
        self.store = store or TelemetryStore()
        self.predictor = predictor or KinematicPredictor()
        self.arbiter = arbiter or ActuationArbiter()
        self.path_config = path_config or PathModelConfig()
        self.optimizer_timeout = optimizer_timeout
        self.clock = clock

        self.previous = PreviousActuation.neutral()
        self._last_action: Optional[Tuple[float, float]] = None
        self._was_ready = False
        self.fit_failures = 0
        self.optimizer_failures = 0

    @property
    def last_action(self) -> Optional[Tuple[float, float]]:
        return self._last_action

    def reset(self):
        """Forget the last dispatched action (next prediction uses neutral)."""
        self.previous = PreviousActuation.neutral()
        self._last_action = None
        self.arbiter.clear_fallback()

    def step(self) -> TickResult:
        drained = self.store.drain()
        ready = self.store.is_ready()
        enabled = self.store.enabled

        if not ready:
            return TickResult(status=TickStatus.NOT_READY, drained=drained)
        if not self._was_ready:
            logger.info("[TELEMETRY_READY] waypoints, pose and velocity received")
            self._was_ready = True

        if not enabled:
            if self._last_action is not None:
                logger.info("[DBW_DISABLED] withholding actuation, prediction reset to neutral")
                self.reset()
            return TickResult(status=TickStatus.DISABLED, drained=drained)

        pose = self.store.pose
        velocity = self.store.velocity
        try:
            path = build_path_model(self.store.waypoints, pose, self.path_config)
        except PolyFitError as e:
            self.fit_failures += 1
            if self.fit_failures == 1 or self.fit_failures % LOG_EVERY_N_FAILURES == 0:
                logger.warning("[FIT_FAILURE] count=%d: %s", self.fit_failures, e)
            return TickResult(status=TickStatus.FIT_FAILURE, drained=drained, error=str(e))
        self.fit_failures = 0

        state = self.predictor.predict(velocity.speed, path.cte, path.epsi, self.previous)

        status = TickStatus.DISPATCHED
        result: Optional[OptimizerResult] = None
        solve_time: Optional[float] = None
        error: Optional[str] = None
        try:
            result, solve_time = self._solve(state, path)
            steering, acceleration = result.steering, result.acceleration
            self.optimizer_failures = 0
            self.arbiter.clear_fallback()
        except OptimizerError as e:
            self.optimizer_failures += 1
            error = str(e)
            steering, acceleration = self.arbiter.fallback(self._last_action)
            status = TickStatus.OPTIMIZER_FALLBACK
            if self.optimizer_failures == 1 or self.optimizer_failures % LOG_EVERY_N_FAILURES == 0:
                logger.warning(
                    "[OPTIMIZER_FALLBACK] count=%d steering=%.3f accel=%.3f: %s",
                    self.optimizer_failures, steering, acceleration, e,
                )

        command = self.arbiter.arbitrate(steering, acceleration, enabled=enabled, ready=ready)
        self.arbiter.dispatch(command)
        self._last_action = (float(steering), float(acceleration))
        self.previous = PreviousActuation(steering=float(steering), acceleration=float(acceleration))

        return TickResult(
            status=status,
            command=command,
            path=path,
            state=state,
            optimizer_result=result,
            action=self._last_action,
            solve_time=solve_time,
            drained=drained,
            error=error,
        )

    def _solve(self, state: ControlState, path: PathModel) -> Tuple[OptimizerResult, float]:
        start = self.clock()
        try:
            result = self.optimizer.solve(state.as_array(), path.coefficients)
        except OptimizerError:
            raise
        except Exception as e:
            # Any optimizer failure is local to this tick
            raise OptimizerError(f"optimizer raised {type(e).__name__}: {e}") from e
        elapsed = self.clock() - start
        if self.optimizer_timeout is not None and elapsed > self.optimizer_timeout:
            raise OptimizerError(
                f"optimizer exceeded {self.optimizer_timeout:.3f}s budget ({elapsed:.3f}s)"
            )
        if result is None:
            raise OptimizerError("optimizer returned no result")
        if not (np.isfinite(result.steering) and np.isfinite(result.acceleration)):
            raise OptimizerError(
                f"non-finite action steering={result.steering} accel={result.acceleration}"
            )
        return result, elapsed
