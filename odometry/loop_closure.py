"""Loop closure by reanchoring onto poses from the first loop traversal.

During the first traversal every corrected pose is captured as an anchor.
When the operator signals that the robot is back at the loop start (or end),
the next scans are re-based on the nearest first-loop anchor instead of the
drifted pose accumulated so far, and registered against that anchor's cloud.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterator, List, Optional

from .errors import PreconditionViolation
from .pose_algebra import RigidTransform, compose, difference, positional_distance
from .trajectory import ReanchorMode, TrajectoryState

logger = logging.getLogger(__name__)


@dataclass
class LoopAnchor:
    """Corrected pose of a scan captured during the first loop."""
    index: int
    pose: RigidTransform


@dataclass
class LoopAnchorSet:
    """Append-only anchor sequence, frozen once the first loop ends."""

    anchors: List[LoopAnchor] = field(default_factory=list)
    frozen: bool = False

    def capture(self, index: int, pose: RigidTransform) -> None:
        if self.frozen:
            raise PreconditionViolation("Loop anchors are frozen after the first loop")
        if self.anchors and index <= self.anchors[-1].index:
            raise PreconditionViolation(
                f"Anchor index {index} is not after {self.anchors[-1].index}"
            )
        self.anchors.append(LoopAnchor(index=index, pose=pose))

    def freeze(self) -> None:
        self.frozen = True

    def __len__(self) -> int:
        return len(self.anchors)

    def __iter__(self) -> Iterator[LoopAnchor]:
        return iter(self.anchors)

    def first(self) -> LoopAnchor:
        if not self.anchors:
            raise PreconditionViolation("No loop anchors captured")
        return self.anchors[0]

    def nearest(self, pose: RigidTransform) -> LoopAnchor:
        """Anchor with the smallest positional distance to ``pose``.

        Candidates are scanned in index order with a strict comparison, so an
        exact tie goes to the lowest index.
        """
        if not self.anchors:
            raise PreconditionViolation("Cannot search an empty loop anchor set")

        best = None
        best_distance = float("inf")
        for anchor in sorted(self.anchors, key=lambda a: a.index):
            distance = positional_distance(pose, anchor.pose)
            if distance < best_distance:
                best = anchor
                best_distance = distance

        return best


@dataclass
class ReanchorResult:
    """Outcome of one reanchor step."""
    initial_guess: RigidTransform
    reference_index: Optional[int]  # Scan whose saved cloud becomes the reference; None keeps the last cloud
    anchor: Optional[LoopAnchor] = None  # Set when an anchor was matched

    @property
    def matched(self) -> bool:
        return self.anchor is not None


class LoopClosureReanchor:
    """Chooses the initial guess and reference cloud after a loop signal."""

    def reanchor(
        self,
        state: TrajectoryState,
        raw_delta: RigidTransform,
        anchors: LoopAnchorSet
    ) -> ReanchorResult:
        """Reanchor ``state`` onto the first-loop anchors.

        On the first scan after the signal there is no scan of the new
        traversal to predict from: the corrected pose is left as the signal
        set it, the guess is identity and the reference is the loop start
        cloud (``LOOP_START``) or the current reference (``LOOP_END``).

        Afterwards the pose predicted from the raw motion is matched against
        the anchors, ``state.last_corrected_pose`` is overwritten with the
        winning anchor pose and the guess is expressed relative to it.

        Raises:
            PreconditionViolation: if no anchor was captured, or the state is
                not waiting for a reanchor
        """
        if len(anchors) == 0:
            raise PreconditionViolation("Reanchor requested before any first-loop pose was captured")
        if state.mode is ReanchorMode.STEADY:
            raise PreconditionViolation("Reanchor requested without a loop signal")

        if state.loop_scan_count == 0:
            reference = anchors.first().index if state.mode is ReanchorMode.LOOP_START else None
            return ReanchorResult(
                initial_guess=RigidTransform.identity(),
                reference_index=reference,
            )

        predicted = compose(state.last_corrected_pose, raw_delta)
        anchor = anchors.nearest(predicted)
        logger.info(
            f"Reanchoring to first-loop scan {anchor.index} "
            f"(predicted pose {positional_distance(predicted, anchor.pose):.3f} m away)"
        )

        state.last_corrected_pose = anchor.pose
        return ReanchorResult(
            initial_guess=difference(anchor.pose, predicted),
            reference_index=anchor.index,
            anchor=anchor,
        )
