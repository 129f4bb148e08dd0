"""
Replay utility for DBW stack recordings.
"""

import json
from pathlib import Path
from typing import Dict, Iterator

import h5py
import numpy as np

from .recorder import STATUS_CODES

STATUS_NAMES = {code: name for name, code in STATUS_CODES.items()}


def load_recording(recording_file: str) -> Dict[str, np.ndarray]:
    """
    Load every tick dataset of a recording into memory.

    Returns:
        Mapping of dataset name (e.g. "cte", "status") to array, plus
        "metadata" (dict)
    """
    path = Path(recording_file)
    if not path.exists():
        raise FileNotFoundError(f"Recording file not found: {recording_file}")
    with h5py.File(path, 'r') as h5_file:
        data = {name: h5_file[f"ticks/{name}"][()] for name in h5_file["ticks"]}
        data["metadata"] = json.loads(h5_file.attrs.get("metadata", "{}"))
    return data


class TickReplay:
    """Iterate recorded ticks as dictionaries."""

    def __init__(self, recording_file: str):
        self.data = load_recording(recording_file)
        self.metadata = self.data.pop("metadata")

    def __len__(self) -> int:
        return int(self.data["timestamps"].shape[0])

    def __iter__(self) -> Iterator[dict]:
        for i in range(len(self)):
            yield {
                "timestamp": float(self.data["timestamps"][i]),
                "tick_id": int(self.data["tick_ids"][i]),
                "status": STATUS_NAMES.get(int(self.data["status"][i]), "unknown"),
                "enabled": bool(self.data["enabled"][i]),
                "ready": bool(self.data["ready"][i]),
                "cte": float(self.data["cte"][i]),
                "epsi": float(self.data["epsi"][i]),
                "steering": float(self.data["steering"][i]),
                "throttle": float(self.data["throttle"][i]),
                "brake": float(self.data["brake"][i]),
                "predicted_state": self.data["predicted_state"][i],
            }

    def status_counts(self) -> Dict[str, int]:
        """How many ticks ended in each status."""
        codes, counts = np.unique(self.data["status"], return_counts=True)
        return {STATUS_NAMES.get(int(c), "unknown"): int(n) for c, n in zip(codes, counts)}
