"""Tests for the dataset generation pipeline."""
import json
from unittest.mock import patch

import pytest

from odometry.config import GeneratorConfig
from odometry.errors import StorageFailure
from odometry.pipeline import DatasetGenerator, GeneratorResult, main, parse_args
from odometry.session_log import LoopEvent
from simulation.generate_synthetic import make_session
from tests.mocks import StubRegistrationEngine, make_scan


@pytest.fixture
def session_dir(tmp_path):
    """Small synthetic session: two traversals of a four-scan loop."""
    path = tmp_path / "session"
    make_session(str(path), scans_per_loop=4, loops=2, points_per_m2=2.0)
    return path


@pytest.fixture
def generator(output_dir, stub_engine):
    gen = DatasetGenerator(config=GeneratorConfig(), engine=stub_engine)
    gen.build(output_dir)
    return gen


def straight_line(n):
    return [make_scan(i, x=float(i)) for i in range(n)]


# =============================================================================
# DatasetGenerator.process
# =============================================================================

class TestProcess:
    """Tests for per-scan processing and the error policy."""

    def test_all_scans_computed(self, generator, output_dir):
        result = generator.process(straight_line(3))

        assert result.num_scans == 3
        assert result.num_computed == 3
        assert result.errors == []
        for i in range(3):
            assert (output_dir / f"scan_{i:04d}.npy").exists()
            assert (output_dir / f"scan_{i:04d}_info.dat").exists()

    def test_clouds_only_when_odometry_disabled(self, output_dir, stub_engine):
        config = GeneratorConfig()
        config.output.save_odometry = False
        gen = DatasetGenerator(config=config, engine=stub_engine)
        gen.build(output_dir)

        result = gen.process(straight_line(3))

        assert result.num_scans == 3
        assert result.num_computed == 0
        assert stub_engine.calls == []
        assert (output_dir / "scan_0002.npy").exists()
        assert not (output_dir / "scan_0000_info.dat").exists()

    def test_registration_failure_skipped(self, output_dir):
        engine = StubRegistrationEngine(fail_on_calls=[1])
        gen = DatasetGenerator(config=GeneratorConfig(), engine=engine)
        gen.build(output_dir)

        result = gen.process(straight_line(3))

        assert result.skipped_scans == [1]
        assert result.num_skipped == 1
        assert result.num_computed == 2
        assert result.errors == []
        assert len(result.warnings) == 1
        assert not (output_dir / "scan_0001_info.dat").exists()
        # Scan 2 is registered against scan 0, the last committed scan
        assert engine.calls[1].initial_guess.translation[0] == pytest.approx(2.0)
        assert (output_dir / "scan_0002_info.dat").read_text() == "Odometry: 2 0 0 0 0 0\n"

    def test_registration_failure_aborts(self, output_dir):
        config = GeneratorConfig()
        config.errors.registration_failure = "abort"
        gen = DatasetGenerator(config=config, engine=StubRegistrationEngine(fail_on_calls=[1]))
        gen.build(output_dir)

        result = gen.process(straight_line(4))

        assert result.num_scans == 2
        assert len(result.errors) == 1
        assert "Scan 1" in result.errors[0]
        assert not (output_dir / "scan_0002.npy").exists()

    def test_checkpoint_failure_aborts_by_default(self, generator):
        with patch.object(
            generator.accumulator.checkpoints, "save", side_effect=StorageFailure("disk full")
        ):
            result = generator.process(straight_line(3))

        assert result.num_scans == 1
        assert result.num_computed == 0
        assert "disk full" in result.errors[0]

    def test_cloud_failure_skipped(self, output_dir, stub_engine):
        config = GeneratorConfig()
        config.errors.storage_failure = "skip"
        gen = DatasetGenerator(config=config, engine=stub_engine)
        gen.build(output_dir)

        with patch.object(gen.cloud_store, "save_cloud", side_effect=StorageFailure("read-only")):
            result = gen.process(straight_line(2))

        assert result.num_computed == 2
        assert result.errors == []
        assert any("read-only" in w for w in result.warnings)

    def test_loop_events_trigger_reanchor(self, generator):
        scans = straight_line(3) + [make_scan(3, x=0.2, seq=10), make_scan(4, x=1.2, seq=11)]
        events = [LoopEvent(seq=9, type="loop_start")]

        result = generator.process(scans, events)

        assert result.num_reanchors == 1
        assert result.errors == []
        assert generator.accumulator.anchors.frozen

    def test_loop_signal_before_anchors_is_error(self, generator):
        events = [LoopEvent(seq=0, type="loop_start")]

        result = generator.process(straight_line(3), events)

        assert len(result.errors) == 1
        assert result.num_computed == 1

    def test_resume_loads_checkpoints(self, output_dir):
        first_engine = StubRegistrationEngine()
        first = DatasetGenerator(config=GeneratorConfig(), engine=first_engine)
        first.build(output_dir)
        first.process(straight_line(3))

        second_engine = StubRegistrationEngine()
        second = DatasetGenerator(config=GeneratorConfig(), engine=second_engine)
        second.build(output_dir)
        result = second.process(straight_line(4))

        assert result.num_loaded == 3
        assert result.num_computed == 1
        assert len(second_engine.calls) == 1


# =============================================================================
# DatasetGenerator.run
# =============================================================================

class TestRun:
    """Tests for running on a session directory."""

    def test_run_on_synthetic_session(self, session_dir, output_dir, stub_engine):
        gen = DatasetGenerator(config=GeneratorConfig(), engine=stub_engine)

        result = gen.run(session_dir, output_dir)

        assert result.success
        assert result.num_scans == 8
        assert result.num_computed == 8
        assert result.num_reanchors == 1
        assert (output_dir / "scan_0007_info.dat").exists()

        summary = json.loads((output_dir / "summary.json").read_text())
        assert summary["num_scans"] == 8
        assert summary["success"] is True

    def test_run_with_decimation(self, session_dir, output_dir, stub_engine):
        config = GeneratorConfig()
        config.input.keep_one_out_of = 2
        gen = DatasetGenerator(config=config, engine=stub_engine)

        result = gen.run(session_dir, output_dir)

        assert result.num_scans == 4
        assert (output_dir / "scan_0003.npy").exists()
        assert not (output_dir / "scan_0004.npy").exists()

    def test_missing_session(self, tmp_path, stub_engine):
        gen = DatasetGenerator(engine=stub_engine)
        result = gen.run(tmp_path / "nope", tmp_path / "out")
        assert not result.success
        assert "not found" in result.errors[0]

    def test_result_to_dict(self):
        result = GeneratorResult(success=True, session_path="s", output_path="o", skipped_scans=[3])
        d = result.to_dict()
        assert d["skipped_scans"] == [3]
        json.dumps(d)


# =============================================================================
# CLI
# =============================================================================

class TestCli:
    """Tests for argument parsing and the entry point."""

    def test_parse_args(self):
        args = parse_args([
            "--session", "s", "--out", "o", "-k", "3", "--review",
            "--viewer", "paraview {path}", "--on-registration-failure", "abort",
        ])
        assert args.session == "s"
        assert args.keep_one_out_of == 3
        assert args.review is True
        assert args.viewer == "paraview {path}"
        assert args.on_registration_failure == "abort"
        assert args.no_odometry is False

    def test_main(self, session_dir, tmp_path, capsys):
        out = tmp_path / "dataset_out"
        with patch("odometry.pipeline.load_config", return_value=GeneratorConfig()), \
                patch("odometry.pipeline.Open3dIcpEngine", lambda **kwargs: StubRegistrationEngine()):
            code = main(["--session", str(session_dir), "--out", str(out), "-k", "2"])

        assert code == 0
        assert (out / "scan_0003_info.dat").exists()
        assert "DATASET SUMMARY" in capsys.readouterr().out

    def test_main_rejects_bad_decimation(self, session_dir, tmp_path):
        with patch("odometry.pipeline.load_config", return_value=GeneratorConfig()):
            with pytest.raises(ValueError):
                main(["--session", str(session_dir), "--out", str(tmp_path / "o"), "-k", "0"])
