"""Scan registration with optional human review.

The registration engine itself is a black box behind ``RegistrationEngine``;
``Open3dIcpEngine`` is the concrete ICP adapter used by the command line tool.
``RegistrationRetryLoop`` drives the engine and, when review is required,
keeps perturbing the initial guess until a reviewer accepts the alignment.
"""
from __future__ import annotations

import json
import logging
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import numpy as np

from .cloud_store import CloudStore
from .errors import PreconditionViolation, RegistrationFailure
from .pose_algebra import RigidTransform, rotate_about_vertical

# Optional Open3D import for ICP
try:
    import open3d as o3d
    HAS_OPEN3D = True
except ImportError:
    o3d = None
    HAS_OPEN3D = False

logger = logging.getLogger(__name__)

DEFAULT_PERTURBATION_RAD = 0.2


@dataclass
class RegistrationResult:
    """Result of scan registration."""
    transform: RigidTransform  # Pose of the current scan in the reference scan frame
    fitness: float = 1.0  # Ratio of inlier correspondences
    rmse: float = 0.0  # Root mean square error of inliers
    converged: bool = True
    correspondence_count: int = 0


class RegistrationEngine(ABC):
    """Refines a relative transform between two clouds."""

    @abstractmethod
    def register(
        self,
        reference_cloud: np.ndarray,
        current_cloud: np.ndarray,
        initial_guess: RigidTransform,
        profile: Optional[str] = None
    ) -> RegistrationResult:
        pass


@dataclass
class Open3dIcpEngine(RegistrationEngine):
    """Point-to-point ICP using Open3D.

    Parameters:
        max_correspondence_distance: Maximum point-to-point distance for correspondence
        fitness_threshold: Minimum fitness score to consider registration converged
        max_iterations: Maximum ICP iterations
        voxel_size: Downsampling voxel size applied to both clouds (0 disables)

    A registration profile is a JSON file whose keys override these parameters.
    """

    max_correspondence_distance: float = 0.5  # meters
    fitness_threshold: float = 0.3  # minimum 30% correspondences
    max_iterations: int = 50
    voxel_size: float = 0.0  # meters

    def __post_init__(self):
        if not HAS_OPEN3D:
            raise ImportError("Open3D is required for ICP registration (pip install open3d)")

    def load_profile(self, profile: Optional[str]) -> dict:
        params = {
            "max_correspondence_distance": self.max_correspondence_distance,
            "fitness_threshold": self.fitness_threshold,
            "max_iterations": self.max_iterations,
            "voxel_size": self.voxel_size,
        }
        if profile:
            with open(profile) as f:
                overrides = json.load(f)
            for k, v in overrides.items():
                if k in params:
                    params[k] = v
        return params

    def points_to_pcd(self, points: np.ndarray, voxel_size: float = 0.0) -> 'o3d.geometry.PointCloud':
        """Convert an Nx3 array to an Open3D point cloud."""
        pcd = o3d.geometry.PointCloud()
        pcd.points = o3d.utility.Vector3dVector(np.asarray(points, dtype=float)[:, :3])
        if voxel_size > 0:
            pcd = pcd.voxel_down_sample(voxel_size)
        return pcd

    def register(
        self,
        reference_cloud: np.ndarray,
        current_cloud: np.ndarray,
        initial_guess: RigidTransform,
        profile: Optional[str] = None
    ) -> RegistrationResult:
        """Align ``current_cloud`` onto ``reference_cloud`` starting from ``initial_guess``."""
        try:
            params = self.load_profile(profile)
        except (OSError, ValueError) as e:
            raise RegistrationFailure(f"Unable to read registration profile {profile}: {e}") from e

        source_pcd = self.points_to_pcd(current_cloud, params["voxel_size"])
        target_pcd = self.points_to_pcd(reference_cloud, params["voxel_size"])

        result = o3d.pipelines.registration.registration_icp(
            source_pcd,
            target_pcd,
            params["max_correspondence_distance"],
            initial_guess.to_matrix(),
            o3d.pipelines.registration.TransformationEstimationPointToPoint(),
            o3d.pipelines.registration.ICPConvergenceCriteria(
                max_iteration=int(params["max_iterations"])
            )
        )

        return RegistrationResult(
            transform=RigidTransform(np.asarray(result.transformation)),
            fitness=result.fitness,
            rmse=result.inlier_rmse,
            converged=result.fitness > params["fitness_threshold"],
            correspondence_count=len(result.correspondence_set)
        )


@dataclass
class ReviewRequest:
    """A registration result submitted for human approval."""
    scan_index: Optional[int]
    attempt: int
    reference_cloud: np.ndarray
    current_cloud: np.ndarray
    transform: RigidTransform


class ReviewChannel(ABC):
    """Blocking request/response with a human reviewer."""

    @abstractmethod
    def review(self, request: ReviewRequest) -> bool:
        """Return True to accept the alignment, False to reject it."""
        pass


@dataclass
class ConsoleReviewer(ReviewChannel):
    """Review alignments on the terminal.

    The merged cloud is written through the cloud store and, if a viewer
    command is configured (e.g. ``"paraview {path}"``), opened in the
    background before prompting.
    """

    cloud_store: CloudStore
    viewer_command: Optional[str] = None
    input_fn: Callable[[str], str] = input

    def launch_viewer(self, path: Path) -> None:
        if not self.viewer_command:
            return
        args = shlex.split(self.viewer_command.format(path=str(path)))
        try:
            subprocess.Popen(args)
        except OSError as e:
            logger.warning(f"Unable to launch viewer {args[0]}: {e}")

    def review(self, request: ReviewRequest) -> bool:
        index = request.scan_index if request.scan_index is not None else 0
        merged = self.cloud_store.save_merged(
            index, request.reference_cloud, request.current_cloud, request.transform
        )
        print(f"Merged clouds for scan {index} (attempt {request.attempt}): {merged}")
        self.launch_viewer(merged)

        answer = self.input_fn("Enter (y) if odometry needs adjustment: ").strip()
        if answer in ("y", "Y"):
            print("Adjustment will be done!")
            return False

        print("No adjustment will be done.")
        return True


@dataclass
class RegistrationRetryLoop:
    """Run the registration engine, retrying with perturbed guesses on rejection.

    Parameters:
        engine: Registration engine used for every attempt
        reviewer: Review channel consulted when review is required
        profile: Opaque registration profile passed through to the engine
        perturbation_rad: Rotation about the vertical axis applied to the
            initial guess after each rejection
    """

    engine: RegistrationEngine
    reviewer: Optional[ReviewChannel] = None
    profile: Optional[str] = None
    perturbation_rad: float = DEFAULT_PERTURBATION_RAD
    attempts: int = field(default=0, init=False)

    def _register_once(
        self,
        reference_cloud: np.ndarray,
        current_cloud: np.ndarray,
        initial_guess: RigidTransform,
        scan_index: Optional[int]
    ) -> RigidTransform:
        self.attempts += 1
        try:
            result = self.engine.register(
                reference_cloud, current_cloud, initial_guess, self.profile
            )
        except RegistrationFailure as e:
            if e.scan_index is None:
                e.scan_index = scan_index
            raise
        except Exception as e:
            raise RegistrationFailure(
                f"Registration engine error for scan {scan_index}: {e}", scan_index
            ) from e

        if not result.converged:
            raise RegistrationFailure(
                f"Registration did not converge for scan {scan_index} "
                f"(fitness={result.fitness:.3f}, rmse={result.rmse:.3f})",
                scan_index
            )

        return result.transform

    def refine(
        self,
        reference_cloud: np.ndarray,
        current_cloud: np.ndarray,
        initial_guess: RigidTransform,
        review_required: bool = False,
        scan_index: Optional[int] = None
    ) -> RigidTransform:
        """Refine ``initial_guess`` into the relative transform between the clouds.

        Raises:
            RegistrationFailure: if the engine fails or does not converge
            PreconditionViolation: if review is required but no reviewer is set
        """
        if not review_required:
            return self._register_once(reference_cloud, current_cloud, initial_guess, scan_index)

        if self.reviewer is None:
            raise PreconditionViolation("Review required but no review channel configured")

        guess = initial_guess
        attempt = 1
        while True:
            transform = self._register_once(reference_cloud, current_cloud, guess, scan_index)
            request = ReviewRequest(
                scan_index=scan_index,
                attempt=attempt,
                reference_cloud=reference_cloud,
                current_cloud=current_cloud,
                transform=transform,
            )
            if self.reviewer.review(request):
                return transform

            logger.info(
                f"Scan {scan_index}: alignment rejected on attempt {attempt}, "
                f"rotating initial guess by {self.perturbation_rad:.3f} rad"
            )
            guess = rotate_about_vertical(guess, self.perturbation_rad)
            attempt += 1
