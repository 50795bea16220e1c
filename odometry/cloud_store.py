"""On-disk storage of decimated scan clouds.

Clouds are Nx3 float arrays saved as ``scan_<index>.npy`` next to the
odometry checkpoints, in the dtype they were given so a reloaded reference
cloud is the same array steady-state registration saw. Writes go through a
temporary file so a crash never leaves a truncated cloud behind. Merged
clouds written for human review are plain CSV so any viewer can open them.
"""
from __future__ import annotations

import csv
import logging
import os
import tempfile
from pathlib import Path

import numpy as np

from .errors import StorageFailure
from .pose_algebra import RigidTransform, transform_points

logger = logging.getLogger(__name__)


class CloudStore:
    """Skip-if-exists cloud storage addressed by scan index."""

    def __init__(self, output_dir: Path | str, suffix_width: int = 4):
        self.output_dir = Path(output_dir)
        self.suffix_width = suffix_width

    def _stem(self, index: int) -> str:
        return f"scan_{index:0{self.suffix_width}d}"

    def path_for(self, index: int) -> Path:
        return self.output_dir / f"{self._stem(index)}.npy"

    def merged_path_for(self, index: int) -> Path:
        return self.output_dir / f"{self._stem(index)}_merged.csv"

    def exists(self, index: int) -> bool:
        return self.path_for(index).is_file()

    def save_cloud(self, index: int, cloud: np.ndarray) -> Path:
        """Save the cloud for ``index``; an existing file is never replaced.

        Returns:
            Path of the (new or existing) cloud file

        Raises:
            StorageFailure: if the cloud could not be written
        """
        path = self.path_for(index)
        if path.exists():
            logger.info(f"Cloud file exists and will not be replaced: {path}")
            return path

        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{path.name}.", suffix=".tmp", dir=self.output_dir
            )
            try:
                with os.fdopen(fd, "wb") as f:
                    np.save(f, np.asarray(cloud))
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StorageFailure(f"Unable to save cloud in {self.output_dir}: {e}", str(path)) from e

        return path

    def load_cloud(self, index: int) -> np.ndarray:
        """Load a previously saved cloud.

        Raises:
            StorageFailure: if the file is missing or unreadable
        """
        path = self.path_for(index)
        try:
            cloud = np.load(path)
        except (OSError, ValueError) as e:
            raise StorageFailure(f"Unable to load cloud {path}: {e}", str(path)) from e

        return cloud

    def save_merged(
        self,
        index: int,
        reference: np.ndarray,
        current: np.ndarray,
        transform: RigidTransform
    ) -> Path:
        """Write the reference cloud and the aligned current cloud as one CSV.

        The ``source`` column is 0 for reference points and 1 for the current
        scan after applying ``transform``. Review attempts overwrite the file.
        """
        path = self.merged_path_for(index)
        aligned = transform_points(current, transform)

        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            with open(path, "w", newline="") as f:
                writer = csv.writer(f)
                writer.writerow(["x", "y", "z", "source"])
                for source, points in ((0, reference), (1, aligned)):
                    for x, y, z in np.asarray(points)[:, :3]:
                        writer.writerow([f"{x:.6f}", f"{y:.6f}", f"{z:.6f}", source])
        except OSError as e:
            raise StorageFailure(f"Unable to save merged cloud {path}: {e}", str(path)) from e

        return path
