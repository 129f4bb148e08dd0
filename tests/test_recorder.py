"""
Tests for HDF5 tick recording and replay.
"""

import h5py
import numpy as np
import pytest

from data.formats.data_format import TickRecord
from data.recorder import STATUS_CODES, TickRecorder
from data.replay import TickReplay, load_recording


def dispatched_record(tick_id, throttle=None, brake=None):
    return TickRecord(
        timestamp=100.0 + tick_id * 0.02,
        tick_id=tick_id,
        status="dispatched",
        enabled=True,
        ready=True,
        cte=0.1 * tick_id,
        epsi=-0.01,
        predicted_state=np.array([1.0, 0.0, 0.0, 10.0, 0.1, -0.01]),
        path_coefficients=np.array([0.1, 0.0, 0.0, 0.0]),
        steering=0.05,
        throttle=throttle,
        brake=brake,
        solve_time=0.004,
    )


def test_records_written_and_loaded(tmp_path):
    with TickRecorder(str(tmp_path), recording_name="run", flush_every=2) as recorder:
        recorder.record_tick(TickRecord(timestamp=99.0, tick_id=0, status="not_ready",
                                        enabled=False, ready=False))
        recorder.record_tick(dispatched_record(1, throttle=0.3))
        recorder.record_tick(dispatched_record(2, brake=150.0))

    data = load_recording(str(tmp_path / "run.h5"))

    assert data["timestamps"].shape == (3,)
    np.testing.assert_array_equal(data["tick_ids"], [0, 1, 2])
    assert list(data["status"]) == [STATUS_CODES["not_ready"], STATUS_CODES["dispatched"],
                                    STATUS_CODES["dispatched"]]
    assert np.isnan(data["cte"][0])
    assert data["cte"][2] == pytest.approx(0.2)
    assert data["throttle"][1] == pytest.approx(0.3)
    assert np.isnan(data["brake"][1])
    assert data["brake"][2] == pytest.approx(150.0)
    assert data["predicted_state"].shape == (3, 6)
    assert np.all(np.isnan(data["predicted_state"][0]))
    assert data["metadata"]["tick_count"] == 3


def test_flush_on_threshold(tmp_path):
    recorder = TickRecorder(str(tmp_path), recording_name="partial", flush_every=2)
    recorder.record_tick(dispatched_record(0, throttle=0.1))
    assert recorder.h5_file["ticks/timestamps"].shape == (0,)
    recorder.record_tick(dispatched_record(1, throttle=0.1))
    assert recorder.h5_file["ticks/timestamps"].shape == (2,)
    recorder.close()


def test_record_after_close_raises(tmp_path):
    recorder = TickRecorder(str(tmp_path), recording_name="closed")
    recorder.close()
    recorder.close()
    with pytest.raises(RuntimeError):
        recorder.record_tick(dispatched_record(0, throttle=0.1))


def test_metadata_attribute(tmp_path):
    with TickRecorder(str(tmp_path), recording_name="meta", metadata={"loop_rate_hz": 50}):
        pass
    with h5py.File(tmp_path / "meta.h5", "r") as f:
        assert "loop_rate_hz" in f.attrs["metadata"]


def test_replay_iterates_ticks(tmp_path):
    with TickRecorder(str(tmp_path), recording_name="replay") as recorder:
        recorder.record_tick(TickRecord(timestamp=1.0, tick_id=0, status="disabled",
                                        enabled=False, ready=True))
        recorder.record_tick(dispatched_record(1, brake=10.0))

    replay = TickReplay(str(tmp_path / "replay.h5"))
    ticks = list(replay)

    assert len(replay) == 2
    assert ticks[0]["status"] == "disabled"
    assert ticks[1]["status"] == "dispatched"
    assert ticks[1]["brake"] == pytest.approx(10.0)
    assert replay.status_counts() == {"disabled": 1, "dispatched": 1}
    assert replay.metadata["tick_count"] == 2


def test_missing_recording(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_recording(str(tmp_path / "nope.h5"))
