"""
Data recorder for the DBW stack.
Records one row per control tick (status, path errors, predicted state,
dispatched commands) to HDF5.
"""

import h5py
import numpy as np
import json
import logging
from pathlib import Path
from typing import Optional, List
from datetime import datetime

from .formats.data_format import TickRecord

logger = logging.getLogger(__name__)

STATE_SIZE = 6
COEFF_SIZE = 4

STATUS_CODES = {
    "not_ready": 0,
    "disabled": 1,
    "fit_failure": 2,
    "optimizer_fallback": 3,
    "dispatched": 4,
}


class TickRecorder:
    """Records DBW control ticks to HDF5 format."""

    def __init__(self, output_dir: str, recording_name: Optional[str] = None,
                 flush_every: int = 50, metadata: Optional[dict] = None):
        """
        Initialize tick recorder.

        Args:
            output_dir: Directory to save recordings
            recording_name: Name for this recording (default: timestamp)
            flush_every: Number of buffered ticks before writing to disk
            metadata: Extra metadata stored as a JSON file attribute
        """
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        if recording_name is None:
            recording_name = f"dbw_{datetime.now().strftime('%Y%m%d_%H%M%S')}"

        self.recording_name = recording_name
        self.output_file = self.output_dir / f"{recording_name}.h5"
        self.flush_every = max(1, int(flush_every))

        self.h5_file = h5py.File(self.output_file, 'w')
        self._create_datasets()

        self.buffer: List[TickRecord] = []
        self.tick_count = 0
        self.closed = False

        self.metadata = {
            "recording_start_time": datetime.now().isoformat(),
            "recording_name": recording_name,
            "status_codes": STATUS_CODES,
        }
        if metadata:
            self.metadata.update(metadata)

    def _create_datasets(self):
        """Create extensible HDF5 datasets."""
        scalar_float = [
            "timestamps", "cte", "epsi", "steering", "throttle", "brake", "solve_time",
        ]
        for name in scalar_float:
            self.h5_file.create_dataset(
                f"ticks/{name}", shape=(0,), maxshape=(None,), dtype=np.float64, chunks=True
            )
        for name in ["tick_ids", "status"]:
            self.h5_file.create_dataset(
                f"ticks/{name}", shape=(0,), maxshape=(None,), dtype=np.int32, chunks=True
            )
        for name in ["enabled", "ready"]:
            self.h5_file.create_dataset(
                f"ticks/{name}", shape=(0,), maxshape=(None,), dtype=np.bool_, chunks=True
            )
        self.h5_file.create_dataset(
            "ticks/predicted_state", shape=(0, STATE_SIZE), maxshape=(None, STATE_SIZE),
            dtype=np.float64, chunks=True
        )
        self.h5_file.create_dataset(
            "ticks/path_coefficients", shape=(0, COEFF_SIZE), maxshape=(None, COEFF_SIZE),
            dtype=np.float64, chunks=True
        )

    def record_tick(self, record: TickRecord):
        """Buffer one tick; writes to disk every flush_every ticks."""
        if self.closed:
            raise RuntimeError(f"recorder already closed: {self.output_file}")
        self.buffer.append(record)
        self.tick_count += 1
        if len(self.buffer) >= self.flush_every:
            self.flush()

    def flush(self):
        """Write buffered ticks to disk."""
        if not self.buffer:
            return
        records = self.buffer
        self.buffer = []

        def _opt(value):
            return np.nan if value is None else float(value)

        def _vector(value, size):
            if value is None:
                return np.full(size, np.nan)
            arr = np.asarray(value, dtype=np.float64).ravel()
            if arr.size != size:
                return np.full(size, np.nan)
            return arr

        columns = {
            "timestamps": [float(r.timestamp) for r in records],
            "cte": [_opt(r.cte) for r in records],
            "epsi": [_opt(r.epsi) for r in records],
            "steering": [_opt(r.steering) for r in records],
            "throttle": [_opt(r.throttle) for r in records],
            "brake": [_opt(r.brake) for r in records],
            "solve_time": [_opt(r.solve_time) for r in records],
            "tick_ids": [int(r.tick_id) for r in records],
            "status": [STATUS_CODES.get(r.status, -1) for r in records],
            "enabled": [bool(r.enabled) for r in records],
            "ready": [bool(r.ready) for r in records],
            "predicted_state": [_vector(r.predicted_state, STATE_SIZE) for r in records],
            "path_coefficients": [_vector(r.path_coefficients, COEFF_SIZE) for r in records],
        }
        for name, values in columns.items():
            dataset = self.h5_file[f"ticks/{name}"]
            start = dataset.shape[0]
            dataset.resize(start + len(records), axis=0)
            dataset[start:] = np.asarray(values, dtype=dataset.dtype)
        self.h5_file.flush()

    def close(self):
        """Flush remaining ticks, write metadata and close the file."""
        if self.closed:
            return
        self.flush()
        self.metadata["recording_end_time"] = datetime.now().isoformat()
        self.metadata["tick_count"] = self.tick_count
        self.h5_file.attrs["metadata"] = json.dumps(self.metadata)
        self.h5_file.close()
        self.closed = True
        logger.info("Recording saved: %s (%d ticks)", self.output_file, self.tick_count)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
