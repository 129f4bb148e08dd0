"""
Tests for DBW stack configuration loading and the tick loop wiring.
"""

import math
from unittest.mock import Mock

import pytest
import yaml

from control.actuation import FallbackPolicy
from control.dbw_controller import TickStatus
from control.mpc_controller import MPCController, OptimizerResult
from data.formats.data_format import TOPIC_ENABLED, TOPIC_POSE, TOPIC_VELOCITY, TOPIC_WAYPOINTS
from data.replay import load_recording
from dbw_stack import DBWStack, LOOP_RATE_HZ, load_config


class FixedOptimizer:
    def solve(self, state, coeffs):
        return OptimizerResult(steering=0.01, acceleration=0.3)


def telemetry_notifications(heading=0.0):
    return [
        {"topic": TOPIC_ENABLED, "payload": {"data": True}},
        {"topic": TOPIC_WAYPOINTS, "payload": {"waypoints": [
            {"position": {"x": 2.0 * i, "y": 0.0, "z": 0.0}, "target_velocity": 10.0}
            for i in range(10)
        ]}},
        {"topic": TOPIC_POSE, "payload": {
            "position": {"x": 0.0, "y": 0.0, "z": 0.0},
            "orientation": {"x": 0.0, "y": 0.0, "z": math.sin(heading / 2), "w": math.cos(heading / 2)},
        }},
        {"topic": TOPIC_VELOCITY, "payload": {"linear": {"x": 8.0, "y": 0.0, "z": 0.0}}},
    ]


def make_bridge(batches):
    bridge = Mock()
    bridge.fetch_pending_notifications.side_effect = list(batches) + [[]] * 100
    bridge.health_check.return_value = True
    return bridge


class TestConfigLoading:
    def test_load_default_config(self):
        config = load_config()
        assert isinstance(config, dict)
        assert config["vehicle"]["lf"] == pytest.approx(2.67)
        assert config["path"]["window_size"] == 6
        assert 0.0 < config["mpc"]["solve_budget_s"] < config["mpc"]["timeout_s"]

    def test_load_custom_config(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text(yaml.dump({"mpc": {"horizon": 4}}))
        assert load_config(str(path)) == {"mpc": {"horizon": 4}}

    def test_load_nonexistent_config(self):
        config = load_config('/nonexistent/path/config.yaml')
        assert config == {}

    def test_empty_config_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(str(path)) == {}

    def test_default_config_matches_dataclass_defaults(self):
        stack = DBWStack(record_data=False, client=make_bridge([]))
        assert stack.controller.predictor.latency == pytest.approx(0.1)
        assert stack.controller.path_config.window_size == 6
        assert stack.arbiter.config.fallback_policy == FallbackPolicy.DECELERATE
        assert stack.controller.optimizer_timeout == pytest.approx(1.0 / LOOP_RATE_HZ)
        assert isinstance(stack.controller.optimizer, MPCController)


class TestDBWStack:
    def make_stack(self, tmp_path, batches, record=True, config=None):
        config_path = tmp_path / "dbw.yaml"
        config_path.write_text(yaml.dump(config or {"vehicle": {"latency": 0.05}}))
        return DBWStack(
            record_data=record,
            recording_dir=str(tmp_path / "recordings"),
            config_path=str(config_path),
            optimizer=FixedOptimizer(),
            client=make_bridge(batches),
        )

    def test_config_applied(self, tmp_path):
        stack = self.make_stack(tmp_path, [], record=False,
                                config={"vehicle": {"latency": 0.05, "lf": 2.5},
                                        "actuation": {"fallback_policy": "hold"},
                                        "mpc": {"timeout_s": 0.01}})
        assert stack.controller.predictor.latency == pytest.approx(0.05)
        assert stack.controller.predictor.lf == pytest.approx(2.5)
        assert stack.arbiter.config.fallback_policy == FallbackPolicy.HOLD
        assert stack.controller.optimizer_timeout == pytest.approx(0.01)

    def test_tick_dispatches_through_bridge(self, tmp_path):
        stack = self.make_stack(tmp_path, [[], telemetry_notifications()], record=False)

        assert stack.tick().status == TickStatus.NOT_READY
        result = stack.tick()

        assert result.status == TickStatus.DISPATCHED
        stack.bridge.publish_steering.assert_called_once()
        stack.bridge.publish_throttle.assert_called_once()
        stack.bridge.publish_brake.assert_not_called()
        assert stack.status_counts == {"not_ready": 1, "dispatched": 1}

    def test_run_records_and_stops(self, tmp_path):
        stack = self.make_stack(tmp_path, [telemetry_notifications()])

        stack.run(max_ticks=3)

        assert stack.tick_count == 3
        stack.bridge.signal_shutdown.assert_called_once()
        assert stack.recorder.closed
        data = load_recording(str(stack.recorder.output_file))
        assert data["tick_ids"].tolist() == [0, 1, 2]
        assert data["throttle"][0] == pytest.approx(0.3)
        assert data["steering"][0] == pytest.approx(0.01)

    def test_run_aborts_without_bridge(self, tmp_path, monkeypatch):
        monkeypatch.setattr("dbw_stack.time.sleep", lambda _: None)
        stack = self.make_stack(tmp_path, [], record=False)
        stack.bridge.health_check.return_value = False

        stack.run(max_ticks=5)

        assert stack.tick_count == 0
        stack.bridge.fetch_pending_notifications.assert_not_called()
