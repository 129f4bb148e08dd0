"""
Tests for the telemetry store inbox and readiness tracking.
"""

import pytest

from control.telemetry import ENABLED, POSE, VELOCITY, WAYPOINTS, TelemetryStore
from data.formats.data_format import Pose, Velocity, Waypoint


def fill(store):
    store.submit_waypoints([Waypoint(0.0, 0.0), Waypoint(1.0, 0.0)])
    store.submit_pose(Pose(0.0, 0.0, 0.0))
    store.submit_velocity(Velocity(5.0))


class TestTelemetryStore:
    def test_initial_state(self):
        store = TelemetryStore()
        assert store.enabled is False
        assert not store.is_ready()
        assert store.pose is None
        assert store.waypoints == ()

    def test_submissions_invisible_until_drain(self):
        store = TelemetryStore()
        fill(store)
        store.submit_enabled(True)

        assert store.pending_count == 4
        assert not store.is_ready()
        assert store.enabled is False

        assert store.drain() == 4
        assert store.is_ready()
        assert store.enabled is True
        assert store.pending_count == 0

    def test_latest_value_wins(self):
        store = TelemetryStore()
        store.submit_pose(Pose(1.0, 0.0, 0.0))
        store.submit_pose(Pose(2.0, 0.0, 0.0))
        assert store.drain() == 1
        assert store.pose.x == 2.0

    def test_ready_requires_all_three_kinds(self):
        store = TelemetryStore()
        store.submit_pose(Pose(0.0, 0.0, 0.0))
        store.submit_velocity(Velocity(1.0))
        store.drain()
        assert not store.is_ready()

        store.submit_waypoints([])
        store.drain()
        assert store.is_ready()

    def test_enabled_does_not_affect_readiness(self):
        store = TelemetryStore()
        store.submit_enabled(True)
        store.drain()
        assert store.enabled is True
        assert not store.is_ready()

    def test_ready_stays_true_after_receipt(self):
        store = TelemetryStore()
        fill(store)
        store.drain()
        assert store.drain() == 0
        assert store.is_ready()

    def test_submit_by_kind(self):
        store = TelemetryStore()
        store.submit(ENABLED, True)
        store.submit(WAYPOINTS, [Waypoint(0.0, 0.0)])
        store.submit(POSE, Pose(0.0, 0.0, 0.0))
        store.submit(VELOCITY, Velocity(0.0))
        store.drain()
        assert store.is_ready()
        assert store.enabled

    def test_unknown_kind(self):
        with pytest.raises(KeyError):
            TelemetryStore().submit("odometry", 1)

    @pytest.mark.parametrize(
        "method, value",
        [
            ("submit_enabled", 1),
            ("submit_pose", (0.0, 0.0, 0.0)),
            ("submit_velocity", 3.0),
            ("submit_waypoints", [(0.0, 0.0)]),
        ],
    )
    def test_type_checks(self, method, value):
        store = TelemetryStore()
        with pytest.raises(TypeError):
            getattr(store, method)(value)

    def test_snapshot(self):
        store = TelemetryStore()
        fill(store)
        store.submit_enabled(True)
        store.drain()
        snap = store.snapshot()
        assert snap.ready
        assert snap.enabled
        assert len(snap.waypoints) == 2
        assert snap.velocity.speed == 5.0

    def test_enabled_flag_only_tracks_latest_value(self):
        store = TelemetryStore()
        fill(store)
        store.drain()
        assert store.is_ready()
        assert store.enabled is False

        store.submit_enabled(True)
        store.drain()
        store.submit_enabled(False)
        store.drain()

        assert store.enabled is False
        assert store.is_ready()
        assert vars(store.snapshot()).keys() == {"enabled", "waypoints", "pose", "velocity", "ready"}
        assert not hasattr(store, "enabled_set")
