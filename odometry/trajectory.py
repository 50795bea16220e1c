"""Trajectory state carried from one scan to the next."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

import numpy as np

from .pose_algebra import RigidTransform


class ReanchorMode(Enum):
    """Initial-guess strategy for the next scan.

    ``LOOP_START`` and ``LOOP_END`` are set by the loop control signals and
    revert to ``STEADY`` once the reanchor has matched an anchor.
    """
    STEADY = "steady"
    LOOP_START = "loop_start"
    LOOP_END = "loop_end"


@dataclass
class Scan:
    """One decimated scan: index, cloud and the raw sensor pose at capture time."""
    index: int
    cloud: np.ndarray
    raw_pose: RigidTransform
    source_seq: int = 0


@dataclass
class TrajectoryState:
    """Mutable accumulator owned by a single ``OdometryAccumulator``."""
    last_corrected_pose: RigidTransform = field(default_factory=RigidTransform.identity)
    last_raw_pose: Optional[RigidTransform] = None
    last_cloud: Optional[np.ndarray] = None
    mode: ReanchorMode = ReanchorMode.STEADY
    loop_scan_count: int = 0  # Scans committed since the last loop signal
    is_first_loop: bool = True
    scans_committed: int = 0

    @property
    def awaiting_first_scan(self) -> bool:
        return self.scans_committed == 0

    def copy(self) -> 'TrajectoryState':
        """Shallow working copy; poses and clouds are never mutated in place."""
        return replace(self)
