"""Rigid transform algebra for 6-DOF scan poses.

All poses are homogeneous 4x4 matrices. The conventions used everywhere in
the package are fixed here:

- ``compose(base, increment)`` is the matrix product ``base @ increment``.
  The increment is expressed in the body frame of ``base`` (this is what the
  registration engine and the raw sensor deltas produce).
- ``difference(start, end)`` is ``inverse(start) @ end``, so
  ``compose(start, difference(start, end)) == end``.
- Euler angles are roll, pitch, yaw about the fixed X, Y, Z axes, i.e.
  ``R = Rz(yaw) @ Ry(pitch) @ Rx(roll)``. Checkpoint files and the loop
  closure search both go through ``decompose`` / ``from_translation_rpy``.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Tuple

import numpy as np
from scipy.spatial.transform import Rotation

ORTHONORMAL_TOLERANCE = 1e-9


def _orthonormalize(rotation: np.ndarray) -> np.ndarray:
    """Project a 3x3 block onto the nearest proper rotation matrix."""
    U, _, Vt = np.linalg.svd(rotation)
    R = U @ Vt

    # Ensure proper rotation (det = 1)
    if np.linalg.det(R) < 0:
        U[:, -1] *= -1
        R = U @ Vt

    return R


def is_proper_rotation(rotation: np.ndarray, tolerance: float = ORTHONORMAL_TOLERANCE) -> bool:
    """True if the block is orthonormal with determinant +1."""
    should_be_identity = rotation.T @ rotation
    return (
        np.allclose(should_be_identity, np.eye(3), atol=tolerance)
        and np.linalg.det(rotation) > 0
    )


@dataclass(eq=False)
class RigidTransform:
    """Rotation plus translation stored as a homogeneous 4x4 matrix.

    The rotation block is renormalized on construction if floating error
    (or a careless caller) left it slightly off SO(3).
    """

    matrix: np.ndarray = field(default_factory=lambda: np.eye(4))

    def __post_init__(self):
        T = np.array(self.matrix, dtype=float)
        if T.shape != (4, 4):
            raise ValueError(f"Rigid transform must be 4x4, got {T.shape}")

        if not is_proper_rotation(T[:3, :3]):
            T[:3, :3] = _orthonormalize(T[:3, :3])
        T[3, :] = [0.0, 0.0, 0.0, 1.0]

        self.matrix = T

    @classmethod
    def identity(cls) -> 'RigidTransform':
        return cls(np.eye(4))

    @classmethod
    def from_rotation_translation(
        cls,
        rotation: np.ndarray,
        translation: np.ndarray | Tuple[float, float, float]
    ) -> 'RigidTransform':
        T = np.eye(4)
        T[:3, :3] = rotation
        T[:3, 3] = translation
        return cls(T)

    @classmethod
    def from_translation_rpy(
        cls,
        x: float, y: float, z: float,
        roll: float, pitch: float, yaw: float
    ) -> 'RigidTransform':
        """Build a transform from the six scalars written by ``decompose``."""
        rotation = Rotation.from_euler("xyz", [roll, pitch, yaw]).as_matrix()
        return cls.from_rotation_translation(rotation, [x, y, z])

    @classmethod
    def from_translation_quaternion(
        cls,
        translation: np.ndarray | Tuple[float, float, float],
        quaternion_xyzw: np.ndarray | Tuple[float, float, float, float]
    ) -> 'RigidTransform':
        """Build a transform from a translation and an (x, y, z, w) quaternion."""
        rotation = Rotation.from_quat(quaternion_xyzw).as_matrix()
        return cls.from_rotation_translation(rotation, translation)

    @property
    def rotation(self) -> np.ndarray:
        return self.matrix[:3, :3].copy()

    @property
    def translation(self) -> np.ndarray:
        return self.matrix[:3, 3].copy()

    def to_matrix(self) -> np.ndarray:
        return self.matrix.copy()

    def compose(self, other: 'RigidTransform') -> 'RigidTransform':
        """Compose two transforms: self * other."""
        return RigidTransform(self.matrix @ other.matrix)

    def inverse(self) -> 'RigidTransform':
        """Return the inverse transform (uses R^T rather than a general inverse)."""
        R = self.matrix[:3, :3]
        t = self.matrix[:3, 3]
        return RigidTransform.from_rotation_translation(R.T, -R.T @ t)

    def isclose(self, other: 'RigidTransform', atol: float = 1e-6) -> bool:
        return bool(np.allclose(self.matrix, other.matrix, atol=atol))

    def __repr__(self) -> str:
        translation, rpy = decompose(self)
        return (
            "RigidTransform(xyz=({:.4f}, {:.4f}, {:.4f}), rpy=({:.4f}, {:.4f}, {:.4f}))"
            .format(*translation, *rpy)
        )


def compose(base: RigidTransform, increment: RigidTransform) -> RigidTransform:
    """Apply ``increment`` (expressed in ``base``'s frame) after ``base``."""
    return base.compose(increment)


def inverse(transform: RigidTransform) -> RigidTransform:
    return transform.inverse()


def difference(start: RigidTransform, end: RigidTransform) -> RigidTransform:
    """Relative transform taking ``start`` to ``end``: inverse(start) * end."""
    return start.inverse().compose(end)


def decompose(transform: RigidTransform) -> Tuple[np.ndarray, np.ndarray]:
    """Split a transform into translation and (roll, pitch, yaw).

    Returns:
        Tuple of (translation [x, y, z], angles [roll, pitch, yaw]) in
        meters and radians.
    """
    rpy = Rotation.from_matrix(transform.matrix[:3, :3]).as_euler("xyz")
    # Avoid writing "-0" for angles that are numerically zero
    rpy = np.array([normalize_angle(a) + 0.0 for a in rpy])
    return transform.translation, rpy


def positional_distance(a: RigidTransform, b: RigidTransform) -> float:
    """Euclidean distance between the translations (rotation ignored)."""
    return float(np.linalg.norm(a.matrix[:3, 3] - b.matrix[:3, 3]))


def rotate_about_vertical(transform: RigidTransform, angle: float) -> RigidTransform:
    """Left-multiply the rotation by Rz(angle); the translation is kept."""
    Rz = Rotation.from_euler("z", angle).as_matrix()
    return RigidTransform.from_rotation_translation(
        Rz @ transform.matrix[:3, :3],
        transform.matrix[:3, 3]
    )


def normalize_angle(angle: float) -> float:
    """Normalize angle to [-pi, pi]."""
    while angle > math.pi:
        angle -= 2 * math.pi
    while angle < -math.pi:
        angle += 2 * math.pi
    return angle


def transform_points(points: np.ndarray, transform: RigidTransform) -> np.ndarray:
    """Transform 3D points by a rigid transform.

    Args:
        points: Nx3 array of (x, y, z) points
        transform: Transform to apply

    Returns:
        Nx3 array of transformed points
    """
    if len(points) == 0:
        return points

    R = transform.matrix[:3, :3]
    t = transform.matrix[:3, 3]

    return (R @ np.asarray(points, dtype=float)[:, :3].T).T + t
