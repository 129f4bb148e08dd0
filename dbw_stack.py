"""
Main DBW stack integration script.
Connects the bridge, telemetry store, path model, latency predictor,
trajectory optimizer and actuation arbiter in a fixed-rate control loop.
"""

import time
import sys
from pathlib import Path
from typing import Optional
import logging
import yaml

# Add paths
sys.path.insert(0, str(Path(__file__).parent))

from bridge.client import DBWBridgeClient, submit_notifications
from control.actuation import ActuationArbiter, build_actuation_config
from control.dbw_controller import DBWController, TickResult
from control.mpc_controller import MPCConfig, MPCController, TrajectoryOptimizer
from control.telemetry import TelemetryStore
from control.vehicle_model import KinematicPredictor
from data.recorder import TickRecorder
from data.formats.data_format import TickRecord
from trajectory.path_model import PathModelConfig

# Configure logging
log_dir = Path(__file__).parent / 'tmp' / 'logs'
log_dir.mkdir(parents=True, exist_ok=True)
log_file = log_dir / 'dbw_stack.log'

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler(str(log_file))
    ]
)
logger = logging.getLogger(__name__)

LOOP_RATE_HZ = 50
# Warn when a tick takes longer than this many periods.
LOOP_SLOW_FACTOR = 2.0


def load_config(config_path: Optional[str] = None) -> dict:
    """Load configuration from YAML file or use defaults."""
    if config_path is None:
        config_path = Path(__file__).parent / "config" / "dbw_config.yaml"
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f) or {}
        logger.info("Loaded configuration from %s", config_path)
        return config
    else:
        logger.warning("Config file not found at %s, using defaults", config_path)
        return {}


class DBWStack:
    """DBW stack: bridge I/O around a DBWController ticking at LOOP_RATE_HZ."""

    def __init__(self, bridge_url: str = "http://localhost:8000",
                 record_data: bool = True,
                 recording_dir: str = "data/recordings",
                 config_path: Optional[str] = None,
                 optimizer: Optional[TrajectoryOptimizer] = None,
                 client: Optional[DBWBridgeClient] = None):
        """
        Initialize DBW stack.

        Args:
            bridge_url: URL of the DBW bridge server
            record_data: Whether to record ticks to HDF5
            recording_dir: Directory for recordings
            config_path: Path to YAML config (default: config/dbw_config.yaml)
            optimizer: Trajectory optimizer (default: MPCController from config)
            client: Bridge client (default: DBWBridgeClient(bridge_url))
        """
        config = load_config(config_path)
        vehicle_cfg = config.get('vehicle', {}) or {}
        path_cfg = config.get('path', {}) or {}
        actuation_cfg = config.get('actuation', {}) or {}
        mpc_cfg = config.get('mpc', {}) or {}

        self.config = config
        self.frame_interval = 1.0 / LOOP_RATE_HZ

        # Bridge client
        self.bridge = client or DBWBridgeClient(bridge_url)

        lf = float(vehicle_cfg.get('lf', 2.67))
        predictor = KinematicPredictor(
            latency=float(vehicle_cfg.get('latency', 0.1)),
            lf=lf,
        )
        if optimizer is None:
            optimizer = MPCController(MPCConfig.from_dict(mpc_cfg, lf=lf))

        self.store = TelemetryStore()
        self.arbiter = ActuationArbiter(
            build_actuation_config(actuation_cfg, vehicle_cfg),
            publisher=self.bridge,
        )
        self.controller = DBWController(
            optimizer,
            store=self.store,
            predictor=predictor,
            arbiter=self.arbiter,
            path_config=PathModelConfig.from_dict(path_cfg),
            optimizer_timeout=float(mpc_cfg.get('timeout_s', self.frame_interval)),
        )

        self.recorder: Optional[TickRecorder] = None
        if record_data:
            self.recorder = TickRecorder(
                recording_dir,
                metadata={"loop_rate_hz": LOOP_RATE_HZ, "config": config},
            )
            logger.info("Recording ticks to %s", self.recorder.output_file)

        self.running = False
        self.tick_count = 0
        self.status_counts: dict = {}

    def tick(self) -> TickResult:
        """Poll the bridge once and run one control step."""
        notifications = self.bridge.fetch_pending_notifications()
        if notifications:
            submit_notifications(self.store, notifications)

        result = self.controller.step()
        self.status_counts[result.status.value] = self.status_counts.get(result.status.value, 0) + 1

        if self.recorder is not None:
            self.recorder.record_tick(self._to_record(result))
        self.tick_count += 1
        return result

    def _to_record(self, result: TickResult) -> TickRecord:
        record = TickRecord(
            timestamp=time.time(),
            tick_id=self.tick_count,
            status=result.status.value,
            enabled=self.store.enabled,
            ready=self.store.is_ready(),
            solve_time=result.solve_time,
        )
        if result.path is not None:
            record.cte = result.path.cte
            record.epsi = result.path.epsi
            record.path_coefficients = result.path.coefficients
        if result.state is not None:
            record.predicted_state = result.state.as_array()
        command = result.command
        if command is not None:
            record.steering = command.steering.steering_wheel_angle_cmd
            if command.throttle is not None:
                record.throttle = command.throttle.pedal_cmd
            if command.brake is not None:
                record.brake = command.brake.pedal_cmd
        return record

    def run(self, max_ticks: Optional[int] = None, duration: Optional[float] = None):
        """
        Run DBW stack main loop at LOOP_RATE_HZ.

        Args:
            max_ticks: Maximum number of ticks to run (None for infinite)
            duration: Maximum duration in seconds (None for infinite)
        """
        logger.info("Starting DBW Stack at %d Hz...", LOOP_RATE_HZ)

        if not self._wait_for_bridge(max_retries=10, initial_delay=1.0):
            logger.error("Bridge server is not available after retries!")
            logger.error("Please start the bridge server: python -m bridge.server")
            return

        logger.info("Bridge server connected")
        self.running = True
        start_time = time.time()
        next_tick = time.perf_counter()

        try:
            while self.running:
                if max_ticks is not None and self.tick_count >= max_ticks:
                    logger.info("Reached max ticks: %d", max_ticks)
                    break
                if duration is not None and time.time() - start_time >= duration:
                    logger.info("Reached duration: %.1fs", duration)
                    break

                loop_start = time.perf_counter()
                self.tick()

                loop_duration = time.perf_counter() - loop_start
                if loop_duration > LOOP_SLOW_FACTOR * self.frame_interval:
                    logger.warning(
                        "[LOOP_SLOW] duration=%.3fs tick=%s",
                        loop_duration,
                        self.tick_count,
                    )

                next_tick += self.frame_interval
                sleep_time = next_tick - time.perf_counter()
                if sleep_time > 0:
                    time.sleep(sleep_time)
                else:
                    # Fell behind; do not try to catch up with a burst of ticks
                    next_tick = time.perf_counter()

        except KeyboardInterrupt:
            logger.info("\nStopping DBW Stack...")
        finally:
            self.stop()

    def _wait_for_bridge(self, max_retries: int = 10, initial_delay: float = 1.0) -> bool:
        """Wait for bridge server to be available with exponential backoff."""
        delay = initial_delay
        for attempt in range(max_retries):
            if self.bridge.health_check():
                return True
            logger.info("Waiting for bridge server... (attempt %d/%d)", attempt + 1, max_retries)
            time.sleep(delay)
            delay = min(delay * 1.5, 5.0)
        return False

    def stop(self):
        """Stop DBW stack."""
        self.running = False

        logger.info("Signaling bridge that the DBW stack is stopping...")
        self.bridge.signal_shutdown()

        if self.recorder is not None and not self.recorder.closed:
            logger.info("Closing tick recorder: %s", self.recorder.output_file)
            self.recorder.close()

        logger.info("DBW Stack stopped (ran %d ticks, statuses=%s)", self.tick_count, self.status_counts)


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description='Run DBW Stack')
    parser.add_argument('--bridge_url', type=str, default='http://localhost:8000',
                        help='DBW bridge server URL')
    parser.add_argument('--record', action='store_true', default=True,
                        help='Record ticks during operation (default: True)')
    parser.add_argument('--no-record', dest='record', action='store_false',
                        help='Disable tick recording')
    parser.add_argument('--recording_dir', type=str, default='data/recordings',
                        help='Directory for recordings')
    parser.add_argument('--max_ticks', type=int, default=None,
                        help='Maximum number of control ticks to run')
    parser.add_argument('--duration', type=float, default=None,
                        help='Maximum duration in seconds')
    parser.add_argument('--config', type=str, default=None,
                        help='Path to configuration YAML file (default: config/dbw_config.yaml)')

    args = parser.parse_args()

    dbw_stack = DBWStack(
        bridge_url=args.bridge_url,
        record_data=args.record,
        recording_dir=args.recording_dir,
        config_path=args.config,
    )

    dbw_stack.run(max_ticks=args.max_ticks, duration=args.duration)


if __name__ == "__main__":
    main()
