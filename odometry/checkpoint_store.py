"""Per-scan odometry checkpoints.

Each processed scan gets one human-readable file holding its corrected pose::

    # optional comment lines
    Odometry: <x> <y> <z> <roll> <pitch> <yaw>

Records are write-once. A rerun of the generator finds the existing files and
loads them instead of registering the scans again.
"""
from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import PreconditionViolation, StorageFailure
from .pose_algebra import RigidTransform, decompose

logger = logging.getLogger(__name__)

ODOMETRY_TOKEN = "Odometry:"


def _format_scalar(value: float) -> str:
    # Adding 0.0 turns -0.0 into 0.0
    return format(float(value) + 0.0, ".12g")


@dataclass
class OdometryRecord:
    """Persisted form of a corrected pose (meters, radians)."""
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    roll: float = 0.0
    pitch: float = 0.0
    yaw: float = 0.0

    @classmethod
    def from_transform(cls, transform: RigidTransform) -> 'OdometryRecord':
        translation, rpy = decompose(transform)
        return cls(
            x=float(translation[0]),
            y=float(translation[1]),
            z=float(translation[2]),
            roll=float(rpy[0]),
            pitch=float(rpy[1]),
            yaw=float(rpy[2]),
        )

    def to_transform(self) -> RigidTransform:
        return RigidTransform.from_translation_rpy(
            self.x, self.y, self.z, self.roll, self.pitch, self.yaw
        )

    def to_line(self) -> str:
        values = (self.x, self.y, self.z, self.roll, self.pitch, self.yaw)
        return ODOMETRY_TOKEN + " " + " ".join(_format_scalar(v) for v in values)

    @classmethod
    def parse(cls, text: str) -> Optional['OdometryRecord']:
        """Parse record file contents.

        Comment lines (``#``) and blank lines are ignored and the first
        ``Odometry:`` line wins.

        Returns:
            The record, or None if the text holds no odometry line

        Raises:
            ValueError: if the odometry line does not hold six numbers
        """
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue

            tokens = line.split()
            if tokens[0] != ODOMETRY_TOKEN:
                continue

            values = [float(v) for v in tokens[1:7]]
            if len(values) != 6:
                raise ValueError(f"Expected 6 values after {ODOMETRY_TOKEN}, got {len(values)}")
            return cls(*values)

        return None


class CheckpointStore:
    """Write-once storage of one ``OdometryRecord`` per scan index."""

    def __init__(self, output_dir: Path | str, suffix_width: int = 4):
        self.output_dir = Path(output_dir)
        self.suffix_width = suffix_width

    def path_for(self, index: int) -> Path:
        return self.output_dir / f"scan_{index:0{self.suffix_width}d}_info.dat"

    def has(self, index: int) -> bool:
        return self.path_for(index).is_file()

    def load_record(self, index: int) -> OdometryRecord:
        """Read the record for ``index``.

        Raises:
            PreconditionViolation: if no record was ever persisted for the index
            StorageFailure: if the file exists but cannot be read or parsed
        """
        path = self.path_for(index)
        if not path.is_file():
            raise PreconditionViolation(f"No odometry checkpoint for scan {index}: {path}")

        try:
            text = path.read_text()
            record = OdometryRecord.parse(text)
        except (OSError, UnicodeDecodeError, ValueError) as e:
            raise StorageFailure(f"Unable to process the odometry file {path}: {e}", str(path)) from e

        if record is None:
            raise StorageFailure(f"Odometry was not found in file {path}", str(path))

        return record

    def load(self, index: int) -> RigidTransform:
        """Load the corrected pose persisted for ``index``."""
        return self.load_record(index).to_transform()

    def save(self, index: int, transform: RigidTransform) -> bool:
        """Persist the pose for ``index`` unless a record already exists.

        The record is written to a temporary file and renamed into place, so
        an interrupted run never leaves a half-written record behind.

        Returns:
            True if the record was written, False if one already existed

        Raises:
            StorageFailure: if the record could not be written
        """
        path = self.path_for(index)
        if path.exists():
            logger.info(f"Odometry file exists and will not be replaced: {path}")
            return False

        line = OdometryRecord.from_transform(transform).to_line()

        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{path.name}.", suffix=".tmp", dir=self.output_dir
            )
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(line + "\n")
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StorageFailure(f"Unable to save odometry file {path}: {e}", str(path)) from e

        logger.debug(f"Saved odometry checkpoint {path.name}: {line}")
        return True
