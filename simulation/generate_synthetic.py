"""Synthetic session generator for the scan odometry pipeline.

This module generates synthetic sessions for development, testing, and CI
purposes. A sensor drives around a closed loop inside a box-shaped room one
or more times; the session holds drifting raw odometry, point clouds seen
from the true poses, and loop start events for every traversal after the
first.

Features:
- Configurable room geometry (box room, pillar obstacles)
- Circular loop trajectories traversed several times
- Raw odometry with accumulated translation and yaw drift
- Configurable LiDAR range, noise and dropout

Usage:
    python -m simulation.generate_synthetic --out sessions/synthetic --loops 2 --scans-per-loop 16
"""
from __future__ import annotations

import argparse
import csv
import json
import math
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple, Dict, Any

import numpy as np
from scipy.spatial.transform import Rotation

from odometry.pose_algebra import RigidTransform, compose, difference, transform_points
from odometry.session_log import CLOUD_DIR_NAME, EVENTS_NAME, POSE_LOG_NAME


@dataclass
class Room:
    """Box-shaped room with optional square pillars, sampled as surface points."""
    width: float = 12.0  # x extent, meters
    depth: float = 10.0  # y extent, meters
    height: float = 3.0
    points_per_m2: float = 20.0
    obstacles: List[Tuple[float, float, float]] = field(default_factory=list)  # (cx, cy, size)

    def add_obstacle(self, cx: float, cy: float, size: float = 1.0) -> None:
        """Add a square pillar from floor to ceiling."""
        self.obstacles.append((cx, cy, size))

    def _sample_rect(
        self,
        rng: np.random.Generator,
        origin: np.ndarray,
        u: np.ndarray,
        v: np.ndarray
    ) -> np.ndarray:
        """Uniformly sample the parallelogram origin + s*u + t*v."""
        area = np.linalg.norm(np.cross(u, v))
        n = max(1, int(area * self.points_per_m2))
        s = rng.random((n, 1))
        t = rng.random((n, 1))
        return origin + s * u + t * v

    def sample_points(self, rng: np.random.Generator) -> np.ndarray:
        """Sample the walls, floor, ceiling and pillars.

        Returns:
            Nx3 array of points in the world frame (room centered on origin)
        """
        hw, hd, h = self.width / 2, self.depth / 2, self.height
        ex, ey, ez = np.array([1.0, 0, 0]), np.array([0, 1.0, 0]), np.array([0, 0, 1.0])

        surfaces = [
            (np.array([-hw, -hd, 0]), self.width * ex, self.depth * ey),  # Floor
            (np.array([-hw, -hd, h]), self.width * ex, self.depth * ey),  # Ceiling
            (np.array([-hw, -hd, 0]), self.width * ex, h * ez),  # South wall
            (np.array([-hw, hd, 0]), self.width * ex, h * ez),  # North wall
            (np.array([-hw, -hd, 0]), self.depth * ey, h * ez),  # West wall
            (np.array([hw, -hd, 0]), self.depth * ey, h * ez),  # East wall
        ]

        for cx, cy, size in self.obstacles:
            hs = size / 2
            surfaces.extend([
                (np.array([cx - hs, cy - hs, 0]), size * ex, h * ez),
                (np.array([cx - hs, cy + hs, 0]), size * ex, h * ez),
                (np.array([cx - hs, cy - hs, 0]), size * ey, h * ez),
                (np.array([cx + hs, cy - hs, 0]), size * ey, h * ez),
            ])

        return np.vstack([self._sample_rect(rng, o, u, v) for o, u, v in surfaces])


@dataclass
class LidarConfig:
    """LiDAR simulation parameters."""
    max_range: float = 15.0  # meters
    range_noise_stddev: float = 0.01  # meters
    dropout_rate: float = 0.05  # probability of missed point
    mount_height: float = 1.0  # meters above the floor


@dataclass
class OdometryNoiseConfig:
    """Per-step noise added to the raw odometry increments."""
    translation_stddev: float = 0.02  # meters
    yaw_stddev: float = math.radians(0.5)


@dataclass
class SyntheticSession:
    """Generator for synthetic loop sessions."""

    room: Room = field(default_factory=Room)
    lidar_config: LidarConfig = field(default_factory=LidarConfig)
    odometry_noise: OdometryNoiseConfig = field(default_factory=OdometryNoiseConfig)
    seed: int = 0

    # True sensor poses as (x, y, yaw) and the step at which each loop starts
    waypoints: List[Tuple[float, float, float]] = field(default_factory=list)
    loop_starts: List[int] = field(default_factory=list)

    def plan_circular_loop(self, scans_per_loop: int = 16, radius: float = 3.0, loops: int = 2) -> None:
        """Drive counter-clockwise around a circle, facing along the path."""
        self.waypoints.clear()
        self.loop_starts.clear()

        for loop in range(loops):
            self.loop_starts.append(len(self.waypoints))
            for i in range(scans_per_loop):
                angle = 2 * math.pi * i / scans_per_loop
                self.waypoints.append((
                    radius * math.cos(angle),
                    radius * math.sin(angle),
                    angle + math.pi / 2
                ))

    def true_pose(self, waypoint: Tuple[float, float, float]) -> RigidTransform:
        x, y, yaw = waypoint
        return RigidTransform.from_translation_rpy(x, y, self.lidar_config.mount_height, 0.0, 0.0, yaw)

    def generate_scan(
        self,
        rng: np.random.Generator,
        world_points: np.ndarray,
        pose: RigidTransform
    ) -> np.ndarray:
        """Points within range of ``pose``, expressed in the sensor frame."""
        cfg = self.lidar_config
        local = transform_points(world_points, pose.inverse())

        distances = np.linalg.norm(local, axis=1)
        keep = (distances < cfg.max_range) & (rng.random(len(local)) >= cfg.dropout_rate)
        local = local[keep]

        # Range noise along the ray
        norms = np.linalg.norm(local, axis=1, keepdims=True)
        noise = rng.normal(0, cfg.range_noise_stddev, size=(len(local), 1))
        return local * (1 + noise / np.maximum(norms, 1e-6))

    def drift_increment(self, rng: np.random.Generator, increment: RigidTransform) -> RigidTransform:
        """Corrupt a true relative motion with odometry noise."""
        cfg = self.odometry_noise
        dx, dy = rng.normal(0, cfg.translation_stddev, size=2)
        dyaw = rng.normal(0, cfg.yaw_stddev)
        noise = RigidTransform.from_translation_rpy(dx, dy, 0.0, 0.0, 0.0, dyaw)
        return compose(increment, noise)

    def generate_session(self, output_dir: Path | str) -> Dict[str, Any]:
        """Generate a complete session.

        Args:
            output_dir: Output directory path

        Returns:
            Summary dictionary
        """
        output_dir = Path(output_dir)
        cloud_dir = output_dir / CLOUD_DIR_NAME
        cloud_dir.mkdir(parents=True, exist_ok=True)

        if not self.waypoints:
            self.plan_circular_loop()

        rng = np.random.default_rng(self.seed)
        world_points = self.room.sample_points(rng)

        true_poses = [self.true_pose(w) for w in self.waypoints]
        raw_poses = [true_poses[0]]
        for i in range(1, len(true_poses)):
            increment = difference(true_poses[i - 1], true_poses[i])
            raw_poses.append(compose(raw_poses[-1], self.drift_increment(rng, increment)))

        # Pose sample then cloud for every step, sharing one seq counter
        events = []
        seq = 0
        with open(output_dir / POSE_LOG_NAME, "w", newline="") as f:
            writer = csv.writer(f)
            writer.writerow(["seq", "x", "y", "z", "qx", "qy", "qz", "qw"])

            for i, (true_pose, raw_pose) in enumerate(zip(true_poses, raw_poses)):
                if i in self.loop_starts[1:]:
                    events.append({"type": "loop_start", "seq": seq})

                qx, qy, qz, qw = Rotation.from_matrix(raw_pose.rotation).as_quat()
                x, y, z = raw_pose.translation
                writer.writerow([seq] + [f"{v:.9f}" for v in (x, y, z, qx, qy, qz, qw)])
                seq += 1

                cloud = self.generate_scan(rng, world_points, true_pose)
                np.save(cloud_dir / f"cloud_{seq:06d}.npy", cloud.astype(np.float32))
                seq += 1

        with open(output_dir / EVENTS_NAME, "w") as f:
            json.dump(events, f, indent=2)

        # Ground truth relative to the first scan, which is the dataset frame
        origin = true_poses[0]
        with open(output_dir / "ground_truth.json", "w") as f:
            truth = {
                "poses": [
                    {"index": i, "matrix": difference(origin, p).to_matrix().tolist()}
                    for i, p in enumerate(true_poses)
                ],
                "loop_starts": self.loop_starts,
            }
            json.dump(truth, f, indent=2)

        metadata = {
            "project": "scan-odometry-synthetic",
            "created": datetime.now(timezone.utc).isoformat(),
            "scans": len(self.waypoints),
            "loops": len(self.loop_starts),
            "world_points": len(world_points),
            "lidar_config": asdict(self.lidar_config),
            "odometry_noise": asdict(self.odometry_noise),
            "seed": self.seed,
        }
        with open(output_dir / "metadata.json", "w") as f:
            json.dump(metadata, f, indent=2)

        summary = {
            "status": "ok",
            "session_dir": str(output_dir),
            "scans": len(self.waypoints),
            "loops": len(self.loop_starts),
            "events": len(events),
        }

        print(json.dumps(summary))
        return summary


def make_session(
    outdir: str,
    scans_per_loop: int = 16,
    loops: int = 2,
    radius: float = 3.0,
    points_per_m2: float = 20.0,
    seed: int = 0
) -> Dict[str, Any]:
    """Generate a circular loop session with default settings."""
    session = SyntheticSession(seed=seed)
    session.room.points_per_m2 = points_per_m2
    session.room.add_obstacle(0.0, 0.0, 1.0)
    session.room.add_obstacle(4.5, 3.0, 0.8)
    session.plan_circular_loop(scans_per_loop, radius=radius, loops=loops)
    return session.generate_session(outdir)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Generate synthetic loop session for testing"
    )
    parser.add_argument(
        "--out",
        required=True,
        help="Output session directory"
    )
    parser.add_argument(
        "--scans-per-loop",
        type=int,
        default=16,
        help="Scans per loop traversal (default: 16)"
    )
    parser.add_argument(
        "--loops",
        type=int,
        default=2,
        help="Number of loop traversals (default: 2)"
    )
    parser.add_argument(
        "--radius",
        type=float,
        default=3.0,
        help="Loop radius in meters (default: 3.0)"
    )
    parser.add_argument(
        "--noise",
        type=float,
        default=0.01,
        help="LiDAR range noise stddev in meters (default: 0.01)"
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=0,
        help="Random seed (default: 0)"
    )

    args = parser.parse_args()

    session = SyntheticSession(seed=args.seed)
    session.lidar_config.range_noise_stddev = args.noise
    session.room.add_obstacle(0.0, 0.0, 1.0)
    session.plan_circular_loop(args.scans_per_loop, radius=args.radius, loops=args.loops)
    session.generate_session(args.out)
