"""Scan odometry dataset package.

This package turns a recorded stream of raw sensor poses and point clouds
into a dataset of scans with loop-closed 6-DOF poses.

Modules:
- pose_algebra: Rigid transform composition, differences and Euler angles
- checkpoint_store: Write-once per-scan odometry files
- cloud_store: Decimated cloud and merged review cloud files
- registration: Registration engine port, ICP adapter and review retry loop
- loop_closure: First-loop anchors and reanchoring
- accumulator: Per-scan odometry accumulation
- session_log: Session log reading and decimation
- pipeline: Dataset generation orchestration and CLI
"""

from .errors import OdometryError, PreconditionViolation, RegistrationFailure, StorageFailure
from .pose_algebra import (
    RigidTransform, compose, decompose, difference, inverse, positional_distance
)
from .checkpoint_store import CheckpointStore, OdometryRecord
from .cloud_store import CloudStore
from .registration import (
    ConsoleReviewer, Open3dIcpEngine, RegistrationEngine, RegistrationResult,
    RegistrationRetryLoop, ReviewChannel, ReviewRequest
)
from .trajectory import ReanchorMode, Scan, TrajectoryState
from .loop_closure import LoopAnchor, LoopAnchorSet, LoopClosureReanchor, ReanchorResult
from .accumulator import OdometryAccumulator, ScanOutcome
from .session_log import LogRecord, LoopEvent, RecordKind, SessionLogReader, decimate, iter_scans
from .config import GeneratorConfig, load_config
from .pipeline import DatasetGenerator, GeneratorResult

__all__ = [
    # Errors
    "OdometryError",
    "PreconditionViolation",
    "RegistrationFailure",
    "StorageFailure",
    # Pose algebra
    "RigidTransform",
    "compose",
    "decompose",
    "difference",
    "inverse",
    "positional_distance",
    # Storage
    "CheckpointStore",
    "OdometryRecord",
    "CloudStore",
    # Registration
    "ConsoleReviewer",
    "Open3dIcpEngine",
    "RegistrationEngine",
    "RegistrationResult",
    "RegistrationRetryLoop",
    "ReviewChannel",
    "ReviewRequest",
    # Trajectory and loop closure
    "ReanchorMode",
    "Scan",
    "TrajectoryState",
    "LoopAnchor",
    "LoopAnchorSet",
    "LoopClosureReanchor",
    "ReanchorResult",
    "OdometryAccumulator",
    "ScanOutcome",
    # Input
    "LogRecord",
    "LoopEvent",
    "RecordKind",
    "SessionLogReader",
    "decimate",
    "iter_scans",
    # Pipeline
    "GeneratorConfig",
    "load_config",
    "DatasetGenerator",
    "GeneratorResult",
]
