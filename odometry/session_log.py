"""Sensor log reading for recorded sessions.

A session directory holds:

- ``pose_log.csv``: raw pose samples, columns ``seq,x,y,z,qx,qy,qz,qw``
- ``clouds/cloud_<seq>.npy``: one Nx3 point cloud per cloud record
- ``events.json`` (optional): loop control events
  ``[{"type": "loop_start", "seq": 120}, ...]``

Pose and cloud records share one monotonically increasing ``seq`` counter.
"""
from __future__ import annotations

import csv
import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Optional

import numpy as np

from .pose_algebra import RigidTransform
from .trajectory import Scan

logger = logging.getLogger(__name__)

POSE_LOG_NAME = "pose_log.csv"
CLOUD_DIR_NAME = "clouds"
EVENTS_NAME = "events.json"

LOOP_EVENT_TYPES = ("loop_start", "loop_end")


class RecordKind(Enum):
    POSE = "pose"
    CLOUD = "cloud"


@dataclass
class LogRecord:
    """One tagged record of the sensor log."""
    seq: int
    kind: RecordKind
    payload: Any  # RigidTransform for poses, Path or array for clouds

    def load_cloud(self) -> np.ndarray:
        if isinstance(self.payload, (str, Path)):
            return np.load(self.payload).astype(float)
        return np.asarray(self.payload, dtype=float)


@dataclass
class LoopEvent:
    """Operator signal: the scan at or after ``seq`` closes the loop."""
    seq: int
    type: str  # "loop_start" or "loop_end"


class SessionLogReader:
    """Reads a recorded session directory as an ordered record stream."""

    def __init__(self, session_dir: Path | str):
        self.session_dir = Path(session_dir)

    @property
    def pose_log_path(self) -> Path:
        return self.session_dir / POSE_LOG_NAME

    @property
    def cloud_dir(self) -> Path:
        return self.session_dir / CLOUD_DIR_NAME

    def exists(self) -> bool:
        return self.pose_log_path.is_file() and self.cloud_dir.is_dir()

    def read_poses(self) -> List[LogRecord]:
        records = []
        with open(self.pose_log_path, newline="") as f:
            reader = csv.DictReader(f)
            for row in reader:
                pose = RigidTransform.from_translation_quaternion(
                    [float(row["x"]), float(row["y"]), float(row["z"])],
                    [float(row["qx"]), float(row["qy"]), float(row["qz"]), float(row["qw"])],
                )
                records.append(LogRecord(seq=int(row["seq"]), kind=RecordKind.POSE, payload=pose))
        return records

    def read_clouds(self) -> List[LogRecord]:
        records = []
        for path in self.cloud_dir.glob("cloud_*.npy"):
            try:
                seq = int(path.stem.split("_")[-1])
            except ValueError:
                logger.warning(f"Ignoring cloud file with unexpected name: {path.name}")
                continue
            records.append(LogRecord(seq=seq, kind=RecordKind.CLOUD, payload=path))
        return records

    def read_events(self) -> List[LoopEvent]:
        path = self.session_dir / EVENTS_NAME
        if not path.exists():
            return []

        with open(path) as f:
            data = json.load(f)

        events = [
            LoopEvent(seq=int(e["seq"]), type=e["type"])
            for e in data
            if e.get("type") in LOOP_EVENT_TYPES
        ]
        return sorted(events, key=lambda e: e.seq)

    def records(self) -> Iterator[LogRecord]:
        """All pose and cloud records in seq order."""
        records = self.read_poses() + self.read_clouds()
        records.sort(key=lambda r: r.seq)
        return iter(records)


def decimate(records: Iterable[LogRecord], keep_one_out_of: int) -> Iterator[LogRecord]:
    """Keep one of every ``keep_one_out_of`` cloud records; poses pass through."""
    if keep_one_out_of < 1:
        raise ValueError(f"keep_one_out_of must be >= 1, got {keep_one_out_of}")

    cloud_count = 0
    for record in records:
        if record.kind is RecordKind.CLOUD:
            keep = cloud_count % keep_one_out_of == 0
            cloud_count += 1
            if not keep:
                continue
        yield record


def iter_scans(records: Iterable[LogRecord], keep_one_out_of: int = 1) -> Iterator[Scan]:
    """Turn a record stream into indexed scans.

    Each surviving cloud is paired with the latest pose sample seen before
    it. Scan indices count surviving clouds only.
    """
    last_pose: Optional[RigidTransform] = None
    index = 0

    for record in decimate(records, keep_one_out_of):
        if record.kind is RecordKind.POSE:
            last_pose = record.payload
            continue

        if last_pose is None:
            logger.warning(f"Cloud record {record.seq} arrived before any pose sample; using identity")
            last_pose = RigidTransform.identity()

        yield Scan(
            index=index,
            cloud=record.load_cloud(),
            raw_pose=last_pose,
            source_seq=record.seq,
        )
        index += 1
