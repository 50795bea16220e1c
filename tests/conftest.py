"""Pytest configuration and shared fixtures."""

import pytest
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


@pytest.fixture
def output_dir(tmp_path):
    """Empty dataset output directory."""
    out = tmp_path / "dataset"
    out.mkdir()
    return out


@pytest.fixture
def checkpoints(output_dir):
    from odometry.checkpoint_store import CheckpointStore
    return CheckpointStore(output_dir)


@pytest.fixture
def cloud_store(output_dir):
    from odometry.cloud_store import CloudStore
    return CloudStore(output_dir)


@pytest.fixture
def stub_engine():
    """Registration engine echoing the initial guess."""
    from tests.mocks import StubRegistrationEngine
    return StubRegistrationEngine()


@pytest.fixture
def accumulator(stub_engine, checkpoints, cloud_store):
    """Accumulator wired to the stub engine and temporary stores."""
    from odometry.accumulator import OdometryAccumulator
    from odometry.registration import RegistrationRetryLoop
    return OdometryAccumulator(
        retry_loop=RegistrationRetryLoop(engine=stub_engine),
        checkpoints=checkpoints,
        cloud_store=cloud_store,
    )


@pytest.fixture
def sample_config_dict():
    """Sample configuration as dictionary."""
    return {
        "input": {
            "keep_one_out_of": 3,
        },
        "output": {
            "output_dir": "/data/datasets/run1",
            "suffix_width": 5,
            "save_odometry": True,
        },
        "registration": {
            "profile": "/etc/scan-odometry/icp.json",
            "max_correspondence_distance": 0.8,
            "fitness_threshold": 0.4,
            "max_iterations": 30,
            "voxel_size": 0.05,
        },
        "review": {
            "enabled": True,
            "perturbation_rad": 0.1,
            "viewer_command": "paraview {path}",
        },
        "errors": {
            "registration_failure": "abort",
            "storage_failure": "skip",
        },
    }
