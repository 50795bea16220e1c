"""Dataset generation pipeline.

This module turns a recorded session into a dataset of scans with corrected
poses:
1. Read the sensor log (pose samples + point clouds) in seq order
2. Decimate clouds (keep 1 of every k)
3. Save each surviving cloud (never replacing an existing file)
4. Accumulate odometry with loop closure reanchoring
5. Write one odometry checkpoint per scan and a run summary

Usage:
    python -m odometry.pipeline --session sessions/my_session --out datasets/my_session

Rerunning on the same output directory resumes: existing checkpoints are
loaded instead of recomputed.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

import numpy as np

from .accumulator import OdometryAccumulator
from .checkpoint_store import CheckpointStore
from .cloud_store import CloudStore
from .config import GeneratorConfig, load_config
from .errors import PreconditionViolation, RegistrationFailure, StorageFailure
from .registration import (
    ConsoleReviewer, Open3dIcpEngine, RegistrationEngine, RegistrationRetryLoop, ReviewChannel
)
from .session_log import LoopEvent, SessionLogReader, iter_scans
from .trajectory import Scan

logger = logging.getLogger(__name__)


class RunAborted(Exception):
    """Raised internally when the error policy stops the run."""


@dataclass
class GeneratorResult:
    """Result of a dataset generation run."""

    success: bool
    session_path: str
    output_path: str

    # Processing stats
    num_scans: int = 0
    num_computed: int = 0
    num_loaded: int = 0
    num_skipped: int = 0
    num_reanchors: int = 0
    skipped_scans: List[int] = field(default_factory=list)

    # Issues and warnings
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    # Timing
    processing_time_sec: float = 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        def convert_value(v):
            """Convert numpy types to Python native types."""
            if isinstance(v, (np.bool_, np.integer)):
                return int(v)
            elif isinstance(v, np.floating):
                return float(v)
            elif isinstance(v, dict):
                return {k: convert_value(vv) for k, vv in v.items()}
            elif isinstance(v, list):
                return [convert_value(vv) for vv in v]
            return v

        return convert_value(asdict(self))


@dataclass
class DatasetGenerator:
    """Runs the odometry pipeline over a session and applies the error policy.

    ``engine`` and ``reviewer`` default to the Open3D ICP adapter and the
    console reviewer built from the configuration.
    """

    config: GeneratorConfig = field(default_factory=GeneratorConfig)
    engine: Optional[RegistrationEngine] = None
    reviewer: Optional[ReviewChannel] = None

    accumulator: Optional[OdometryAccumulator] = None
    cloud_store: Optional[CloudStore] = None
    result: GeneratorResult = field(default_factory=lambda: GeneratorResult(
        success=False, session_path="", output_path=""
    ))

    def build(self, output_dir: Path | str) -> OdometryAccumulator:
        """Create the stores and the accumulator writing into ``output_dir``."""
        cfg = self.config
        self.cloud_store = CloudStore(output_dir, cfg.output.suffix_width)
        checkpoints = CheckpointStore(output_dir, cfg.output.suffix_width)

        if self.engine is None:
            self.engine = Open3dIcpEngine(
                max_correspondence_distance=cfg.registration.max_correspondence_distance,
                fitness_threshold=cfg.registration.fitness_threshold,
                max_iterations=cfg.registration.max_iterations,
                voxel_size=cfg.registration.voxel_size,
            )
        if self.reviewer is None and cfg.review.enabled:
            self.reviewer = ConsoleReviewer(self.cloud_store, cfg.review.viewer_command)

        retry_loop = RegistrationRetryLoop(
            engine=self.engine,
            reviewer=self.reviewer,
            profile=cfg.registration.profile,
            perturbation_rad=cfg.review.perturbation_rad,
        )
        self.accumulator = OdometryAccumulator(
            retry_loop=retry_loop,
            checkpoints=checkpoints,
            cloud_store=self.cloud_store,
            review_required=cfg.review.enabled,
        )
        return self.accumulator

    def _handle_failure(self, scan: Scan, error: Exception, policy: str) -> None:
        message = f"Scan {scan.index}: {error}"
        if policy == "abort":
            logger.error(message)
            self.result.errors.append(message)
            raise RunAborted(message) from error

        logger.warning(f"{message}; scan skipped")
        self.result.warnings.append(message)
        self.result.num_skipped += 1
        self.result.skipped_scans.append(scan.index)

    def _save_cloud(self, scan: Scan) -> None:
        try:
            self.cloud_store.save_cloud(scan.index, scan.cloud)
        except StorageFailure as e:
            if self.config.errors.storage_failure == "abort":
                self._handle_failure(scan, e, "abort")
            logger.warning(f"{e}; continuing without the cloud file")
            self.result.warnings.append(str(e))

    def _apply_events(self, events: List[LoopEvent], scan: Scan) -> None:
        while events and events[0].seq <= scan.source_seq:
            event = events.pop(0)
            if event.type == "loop_start":
                self.accumulator.mark_loop_start()
            else:
                self.accumulator.mark_loop_end()

    def process(self, scans: Iterable[Scan], events: Iterable[LoopEvent] = ()) -> GeneratorResult:
        """Process already-decimated scans in order, applying loop events."""
        pending_events = sorted(events, key=lambda e: e.seq)

        try:
            for scan in scans:
                logger.info(f"===== Processing cloud {scan.index}")
                self.result.num_scans += 1
                self._save_cloud(scan)

                if not self.config.output.save_odometry:
                    continue

                self._apply_events(pending_events, scan)
                try:
                    outcome = self.accumulator.process_scan(scan)
                except RegistrationFailure as e:
                    self._handle_failure(scan, e, self.config.errors.registration_failure)
                    continue
                except StorageFailure as e:
                    self._handle_failure(scan, e, self.config.errors.storage_failure)
                    continue

                if outcome.source == "loaded":
                    self.result.num_loaded += 1
                else:
                    self.result.num_computed += 1
                if outcome.reanchored_to is not None:
                    self.result.num_reanchors += 1
        except RunAborted:
            pass
        except PreconditionViolation as e:
            logger.error(str(e))
            self.result.errors.append(str(e))

        return self.result

    def run(self, session_dir: Path | str, output_dir: Path | str) -> GeneratorResult:
        """Run the complete generator on a session directory.

        Args:
            session_dir: Path to session directory
            output_dir: Path to output directory

        Returns:
            GeneratorResult with processing outcomes
        """
        start_time = time.time()

        self.result = GeneratorResult(
            success=False,
            session_path=str(session_dir),
            output_path=str(output_dir)
        )

        reader = SessionLogReader(session_dir)
        if not reader.exists():
            self.result.errors.append(f"Session not found or incomplete: {session_dir}")
            return self.result

        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        self.build(output_dir)

        logger.info(f"Processing session {session_dir} into {output_dir}")
        scans = iter_scans(reader.records(), self.config.input.keep_one_out_of)
        self.process(scans, reader.read_events())

        self.result.processing_time_sec = time.time() - start_time
        self.result.success = len(self.result.errors) == 0

        summary_path = output_dir / "summary.json"
        with open(summary_path, "w") as f:
            json.dump(self.result.to_dict(), f, indent=2)

        return self.result


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Generate a dataset of scans with loop-closed odometry"
    )
    parser.add_argument("--session", required=True, help="Path to session directory")
    parser.add_argument("--out", help="Path to output directory")
    parser.add_argument("--config", "-c", help="Path to config file")
    parser.add_argument("--keep-one-out-of", "-k", type=int, help="Keep 1 of every k clouds")
    parser.add_argument("--icp-profile", help="Registration profile (JSON) for the ICP engine")
    parser.add_argument("--review", action="store_true", help="Review each registration interactively")
    parser.add_argument("--viewer", help="Viewer command for merged clouds, e.g. 'paraview {path}'")
    parser.add_argument("--no-odometry", action="store_true", help="Only save decimated clouds")
    parser.add_argument(
        "--on-registration-failure", choices=["skip", "abort"],
        help="Policy for scans whose registration fails"
    )
    parser.add_argument(
        "--on-storage-failure", choices=["skip", "abort"],
        help="Policy for scans whose files cannot be written"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    config = load_config(args.config)

    # Override with CLI args
    if args.out:
        config.output.output_dir = args.out
    if args.keep_one_out_of is not None:
        config.input.keep_one_out_of = args.keep_one_out_of
    if args.icp_profile:
        config.registration.profile = args.icp_profile
    if args.review:
        config.review.enabled = True
    if args.viewer:
        config.review.viewer_command = args.viewer
    if args.no_odometry:
        config.output.save_odometry = False
    if args.on_registration_failure:
        config.errors.registration_failure = args.on_registration_failure
    if args.on_storage_failure:
        config.errors.storage_failure = args.on_storage_failure
    config.validate()

    generator = DatasetGenerator(config=config)
    result = generator.run(args.session, config.output.output_dir)

    # Print summary
    print("\n" + "=" * 60)
    print("DATASET SUMMARY")
    print("=" * 60)
    print(f"Status: {'SUCCESS' if result.success else 'FAILED'}")
    print(f"Scans: {result.num_scans}")
    print(f"Computed: {result.num_computed}  Loaded: {result.num_loaded}  Skipped: {result.num_skipped}")
    print(f"Reanchors: {result.num_reanchors}")
    print(f"Time: {result.processing_time_sec:.2f}s")

    if result.warnings:
        print(f"\nWarnings ({len(result.warnings)}):")
        for w in result.warnings:
            print(f"  - {w}")

    if result.errors:
        print(f"\nErrors ({len(result.errors)}):")
        for e in result.errors:
            print(f"  - {e}")

    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
