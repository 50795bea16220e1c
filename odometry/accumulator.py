"""Scan-to-scan odometry accumulation.

For every decimated scan the accumulator picks an initial guess (raw sensor
motion, or a loop closure reanchor), refines it through the registration
retry loop, composes the result onto the running pose and checkpoints it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .checkpoint_store import CheckpointStore
from .cloud_store import CloudStore
from .errors import StorageFailure
from .loop_closure import LoopAnchorSet, LoopClosureReanchor
from .pose_algebra import RigidTransform, compose, decompose, difference
from .registration import RegistrationRetryLoop
from .trajectory import ReanchorMode, Scan, TrajectoryState

logger = logging.getLogger(__name__)


@dataclass
class ScanOutcome:
    """What happened to one scan."""
    index: int
    pose: RigidTransform
    source: str  # "initial", "computed" or "loaded"
    reanchored_to: Optional[int] = None


class OdometryAccumulator:
    """Accumulates corrected scan poses into a globally consistent trajectory.

    The trajectory state, anchor set and reanchor mode belong to one
    accumulator instance and are only touched from ``process_scan`` and the
    loop signals. A scan is worked out on a copy of the state that is
    committed only once its checkpoint is written; any exception leaves the
    trajectory exactly as it was before the scan.
    """

    def __init__(
        self,
        retry_loop: RegistrationRetryLoop,
        checkpoints: CheckpointStore,
        cloud_store: CloudStore,
        reanchor: Optional[LoopClosureReanchor] = None,
        review_required: bool = False,
    ):
        self.retry_loop = retry_loop
        self.checkpoints = checkpoints
        self.cloud_store = cloud_store
        self.reanchor = reanchor or LoopClosureReanchor()
        self.review_required = review_required

        self.state = TrajectoryState()
        self.anchors = LoopAnchorSet()

    # ------------------------------------------------------------------
    # Loop control signals
    # ------------------------------------------------------------------

    def mark_loop_start(self) -> None:
        """The next scan is back at the start of the recorded loop."""
        logger.info("Loop start signaled; next scan reanchors to the first loop start")
        self._end_first_loop(ReanchorMode.LOOP_START)
        if len(self.anchors) > 0:
            self.state.last_corrected_pose = self.anchors.first().pose
        else:
            self.state.last_corrected_pose = RigidTransform.identity()

    def mark_loop_end(self) -> None:
        """The next scan is at the end of the recorded loop (where the last scan was)."""
        logger.info("Loop end signaled; next scan continues from the last corrected pose")
        self._end_first_loop(ReanchorMode.LOOP_END)

    def _end_first_loop(self, mode: ReanchorMode) -> None:
        self.state.mode = mode
        self.state.is_first_loop = False
        self.state.loop_scan_count = 0
        self.anchors.freeze()

    # ------------------------------------------------------------------
    # Per-scan processing
    # ------------------------------------------------------------------

    def process_scan(self, scan: Scan) -> ScanOutcome:
        """Compute (or resume) the corrected pose of ``scan`` and commit it.

        Raises:
            RegistrationFailure: if refinement failed; nothing is committed
            StorageFailure: if the checkpoint could not be written; nothing
                is committed. An unreadable reference cloud only logs a
                warning and the previous scan's cloud is used instead.
            PreconditionViolation: on a reanchor with no captured anchors
        """
        working = self.state.copy()
        outcome = None

        if self.checkpoints.has(scan.index):
            try:
                pose = self.checkpoints.load(scan.index)
                logger.info(f"Odometry file exists and will be loaded for scan {scan.index}")
                outcome = ScanOutcome(index=scan.index, pose=pose, source="loaded")
                if working.mode is not ReanchorMode.STEADY and working.loop_scan_count >= 1:
                    # A loaded scan past the first after a loop signal was the anchor match
                    working.mode = ReanchorMode.STEADY
            except StorageFailure as e:
                logger.warning(f"{e}; recomputing scan {scan.index}")

        if outcome is None:
            outcome = self._compute(working, scan)
            self.checkpoints.save(scan.index, outcome.pose)

        working.last_corrected_pose = outcome.pose
        self._commit(working, scan)
        self.log_pose(scan.index, outcome.pose)
        return outcome

    def _compute(self, working: TrajectoryState, scan: Scan) -> ScanOutcome:
        if working.awaiting_first_scan or working.last_cloud is None:
            return ScanOutcome(index=scan.index, pose=working.last_corrected_pose, source="initial")

        raw_delta = difference(working.last_raw_pose, scan.raw_pose)
        reference_cloud = working.last_cloud
        reanchored_to = None

        if working.mode is ReanchorMode.STEADY:
            initial_guess = raw_delta
        else:
            baseline = working.last_corrected_pose
            result = self.reanchor.reanchor(working, raw_delta, self.anchors)
            initial_guess = result.initial_guess
            anchored = result.matched
            if result.reference_index is not None:
                try:
                    reference_cloud = self.cloud_store.load_cloud(result.reference_index)
                except StorageFailure as e:
                    logger.warning(f"{e}; registering scan {scan.index} against the previous scan")
                    # A matched scan without its anchor cloud is registered as a steady one
                    if result.matched:
                        working.last_corrected_pose = baseline
                        initial_guess = raw_delta
                        anchored = False
            if result.matched:
                working.mode = ReanchorMode.STEADY
            if anchored:
                reanchored_to = result.anchor.index

        refined = self.retry_loop.refine(
            reference_cloud,
            scan.cloud,
            initial_guess,
            review_required=self.review_required,
            scan_index=scan.index,
        )

        pose = compose(working.last_corrected_pose, refined)
        return ScanOutcome(index=scan.index, pose=pose, source="computed", reanchored_to=reanchored_to)

    def _commit(self, working: TrajectoryState, scan: Scan) -> None:
        if working.is_first_loop:
            self.anchors.capture(scan.index, working.last_corrected_pose)

        working.last_raw_pose = scan.raw_pose
        working.last_cloud = np.asarray(scan.cloud)
        working.loop_scan_count += 1
        working.scans_committed += 1
        self.state = working

    def log_pose(self, index: int, pose: RigidTransform) -> None:
        translation, rpy = decompose(pose)
        logger.info(
            f"Scan {index} odometry (x,y,z,r,p,y): "
            f"{translation[0]:.4f}, {translation[1]:.4f}, {translation[2]:.4f}, "
            f"{rpy[0]:.4f}, {rpy[1]:.4f}, {rpy[2]:.4f} = {np.linalg.norm(translation):.4f} m"
        )
