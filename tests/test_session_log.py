"""Tests for session log reading and decimation."""
import json
import logging

import numpy as np
import pytest

from odometry.pose_algebra import RigidTransform
from odometry.session_log import (
    LogRecord, RecordKind, SessionLogReader, decimate, iter_scans
)


def pose_record(seq, x=0.0):
    return LogRecord(
        seq=seq,
        kind=RecordKind.POSE,
        payload=RigidTransform.from_translation_rpy(x, 0.0, 0.0, 0.0, 0.0, 0.0),
    )


def cloud_record(seq):
    return LogRecord(seq=seq, kind=RecordKind.CLOUD, payload=np.full((4, 3), float(seq)))


def interleaved(n_clouds):
    """Pose sample followed by a cloud, n times."""
    records = []
    for i in range(n_clouds):
        records.append(pose_record(2 * i, x=float(i)))
        records.append(cloud_record(2 * i + 1))
    return records


def write_session(session_dir, n_clouds, events=None):
    (session_dir / "clouds").mkdir(parents=True)
    lines = ["seq,x,y,z,qx,qy,qz,qw"]
    for i in range(n_clouds):
        lines.append(f"{2 * i},{float(i)},0,0,0,0,0,1")
        np.save(session_dir / "clouds" / f"cloud_{2 * i + 1:06d}.npy", np.full((4, 3), i, dtype=np.float32))
    (session_dir / "pose_log.csv").write_text("\n".join(lines) + "\n")
    if events is not None:
        (session_dir / "events.json").write_text(json.dumps(events))


# =============================================================================
# Decimation
# =============================================================================

class TestDecimate:
    """Tests for keep-one-out-of-k decimation."""

    def test_keep_every_cloud(self):
        records = [cloud_record(i) for i in range(5)]
        assert [r.seq for r in decimate(records, 1)] == [0, 1, 2, 3, 4]

    def test_keep_one_out_of_three(self):
        records = [cloud_record(i) for i in range(10)]
        assert [r.seq for r in decimate(records, 3)] == [0, 3, 6, 9]

    def test_poses_pass_through(self):
        records = interleaved(4)
        kept = list(decimate(records, 2))
        assert sum(r.kind is RecordKind.POSE for r in kept) == 4
        assert [r.seq for r in kept if r.kind is RecordKind.CLOUD] == [1, 5]

    @pytest.mark.parametrize("k", [0, -2])
    def test_invalid_k(self, k):
        with pytest.raises(ValueError):
            list(decimate([cloud_record(0)], k))


class TestIterScans:
    """Tests for pairing clouds with pose samples."""

    def test_indices_count_surviving_clouds(self):
        scans = list(iter_scans(interleaved(10), keep_one_out_of=3))

        assert [s.index for s in scans] == [0, 1, 2, 3]
        assert [s.source_seq for s in scans] == [1, 7, 13, 19]

    def test_cloud_paired_with_latest_pose(self):
        scans = list(iter_scans(interleaved(10), keep_one_out_of=3))
        xs = [s.raw_pose.translation[0] for s in scans]
        assert xs == pytest.approx([0.0, 3.0, 6.0, 9.0])

    def test_pose_samples_between_kept_clouds(self):
        records = [pose_record(0), cloud_record(1), pose_record(2, x=1.0), pose_record(3, x=2.0), cloud_record(4)]
        scans = list(iter_scans(records))
        assert scans[1].raw_pose.translation[0] == pytest.approx(2.0)

    def test_cloud_before_any_pose(self, caplog):
        with caplog.at_level(logging.WARNING):
            scans = list(iter_scans([cloud_record(0)]))
        assert scans[0].raw_pose.isclose(RigidTransform.identity())
        assert "before any pose sample" in caplog.text

    def test_cloud_payload_loaded(self):
        scans = list(iter_scans(interleaved(2)))
        assert scans[1].cloud.shape == (4, 3)
        assert np.all(scans[1].cloud == 3.0)


# =============================================================================
# SessionLogReader
# =============================================================================

class TestSessionLogReader:
    """Tests for reading a session directory."""

    def test_exists(self, tmp_path):
        assert not SessionLogReader(tmp_path).exists()
        write_session(tmp_path / "session", 2)
        assert SessionLogReader(tmp_path / "session").exists()

    def test_records_in_seq_order(self, tmp_path):
        write_session(tmp_path, 3)
        records = list(SessionLogReader(tmp_path).records())
        assert [r.seq for r in records] == [0, 1, 2, 3, 4, 5]
        assert [r.kind for r in records[:2]] == [RecordKind.POSE, RecordKind.CLOUD]

    def test_read_poses(self, tmp_path):
        write_session(tmp_path, 3)
        poses = SessionLogReader(tmp_path).read_poses()
        assert poses[2].payload.isclose(
            RigidTransform.from_translation_rpy(2.0, 0.0, 0.0, 0.0, 0.0, 0.0)
        )

    def test_cloud_files_loaded_lazily(self, tmp_path):
        write_session(tmp_path, 2)
        scans = list(iter_scans(SessionLogReader(tmp_path).records()))
        assert np.allclose(scans[1].cloud, 1.0)

    def test_unexpected_cloud_file_name_ignored(self, tmp_path):
        write_session(tmp_path, 2)
        np.save(tmp_path / "clouds" / "cloud_backup.npy", np.zeros((1, 3)))
        assert len(SessionLogReader(tmp_path).read_clouds()) == 2

    def test_events_sorted_and_filtered(self, tmp_path):
        write_session(tmp_path, 2, events=[
            {"type": "loop_end", "seq": 9},
            {"type": "marker", "seq": 1},
            {"type": "loop_start", "seq": 3},
        ])
        events = SessionLogReader(tmp_path).read_events()
        assert [(e.type, e.seq) for e in events] == [("loop_start", 3), ("loop_end", 9)]

    def test_missing_events_file(self, tmp_path):
        write_session(tmp_path, 1)
        assert SessionLogReader(tmp_path).read_events() == []
