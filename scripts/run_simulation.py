#!/usr/bin/env python3
"""Helper script to run the simulator and dataset generator locally."""
import argparse
import os
import subprocess

parser = argparse.ArgumentParser()
parser.add_argument("--out", required=True)
parser.add_argument("--loops", type=int, default=2)
parser.add_argument("--scans-per-loop", type=int, default=16)
parser.add_argument("--keep-one-out-of", type=int, default=1)
args = parser.parse_args()

session_dir = os.path.abspath(args.out)

# run simulator
subprocess.check_call([
    "python3", "-m", "simulation.generate_synthetic", "--out", session_dir,
    "--loops", str(args.loops), "--scans-per-loop", str(args.scans_per_loop)
])
# run dataset generation
outdir = os.path.join(session_dir, "dataset")
subprocess.check_call([
    "python3", "-m", "odometry.pipeline", "--session", session_dir, "--out", outdir,
    "--keep-one-out-of", str(args.keep_one_out_of)
])
print("Done. dataset in:", outdir)
