import csv
import json
import os
import tempfile

import numpy as np

from odometry.session_log import SessionLogReader
from simulation.generate_synthetic import Room, SyntheticSession, make_session


def test_make_session_creates_files():
    td = tempfile.mkdtemp(prefix="scan_odometry_test_")
    make_session(td, scans_per_loop=4, loops=2, points_per_m2=2.0)
    # basic assertions
    assert os.path.exists(os.path.join(td, "metadata.json"))
    assert os.path.exists(os.path.join(td, "events.json"))
    assert os.path.exists(os.path.join(td, "ground_truth.json"))
    assert os.path.exists(os.path.join(td, "pose_log.csv"))
    assert len(os.listdir(os.path.join(td, "clouds"))) == 8


def test_pose_log_and_clouds_share_seq(tmp_path):
    make_session(str(tmp_path), scans_per_loop=3, loops=1, points_per_m2=2.0)

    with open(tmp_path / "pose_log.csv") as f:
        pose_seqs = [int(row["seq"]) for row in csv.DictReader(f)]
    cloud_seqs = sorted(int(p.stem.split("_")[-1]) for p in (tmp_path / "clouds").iterdir())

    assert pose_seqs == [0, 2, 4]
    assert cloud_seqs == [1, 3, 5]


def test_loop_start_events(tmp_path):
    make_session(str(tmp_path), scans_per_loop=4, loops=3, points_per_m2=2.0)

    events = json.loads((tmp_path / "events.json").read_text())

    # One event per traversal after the first, just before its first cloud
    assert [e["type"] for e in events] == ["loop_start", "loop_start"]
    assert [e["seq"] for e in events] == [8, 16]


def test_session_is_readable(tmp_path):
    make_session(str(tmp_path), scans_per_loop=4, loops=2, points_per_m2=2.0)

    reader = SessionLogReader(tmp_path)
    assert reader.exists()
    assert len(reader.read_poses()) == 8
    assert len(reader.read_clouds()) == 8
    assert len(reader.read_events()) == 1


def test_first_raw_pose_is_true_pose(tmp_path):
    session = SyntheticSession(seed=3)
    session.room.points_per_m2 = 2.0
    session.plan_circular_loop(scans_per_loop=4, radius=2.0, loops=1)
    session.generate_session(tmp_path)

    first = SessionLogReader(tmp_path).read_poses()[0].payload
    assert first.isclose(session.true_pose(session.waypoints[0]), atol=1e-6)


def test_clouds_are_in_sensor_frame():
    session = SyntheticSession()
    session.lidar_config.range_noise_stddev = 0.0
    session.lidar_config.dropout_rate = 0.0
    rng = np.random.default_rng(0)

    world = np.array([[5.0, 0.0, 1.0]])
    pose = session.true_pose((4.0, 0.0, 0.0))
    local = session.generate_scan(rng, world, pose)

    assert np.allclose(local, [[1.0, 0.0, 0.0]])


def test_room_sampling_covers_obstacles():
    room = Room(width=4.0, depth=4.0, height=2.0, points_per_m2=5.0)
    rng = np.random.default_rng(0)
    without = len(room.sample_points(rng))
    room.add_obstacle(0.0, 0.0, 1.0)
    with_obstacle = len(room.sample_points(rng))
    assert with_obstacle > without
