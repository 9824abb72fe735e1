"""Reading trajectories, comparing them, and chaining coordinate transforms."""

from __future__ import annotations

import argparse
import math
import sys
from pathlib import Path

import numpy as np

from slamkit.lie import SE3

DEFAULT_GROUNDTRUTH = "./example/groundtruth.txt"
DEFAULT_ESTIMATED = "./example/estimated.txt"


def read_trajectory(path):
    """Read poses from lines of ``time tx ty tz qx qy qz qw``."""
    poses = []
    with Path(path).open(encoding="utf-8") as fin:
        for number, line in enumerate(fin, start=1):
            fields = line.split()
            if not fields:
                continue
            if len(fields) != 8:
                raise ValueError(f"{path}:{number}: expected 8 values, got {len(fields)}")
            _, tx, ty, tz, qx, qy, qz, qw = map(float, fields)
            poses.append(SE3.from_quaternion(qw, qx, qy, qz, (tx, ty, tz)))
    return poses


def rmse(groundtruth, estimated):
    """Root mean square of the pose errors ``|log(gt^-1 * est)|``."""
    if not groundtruth or not estimated:
        raise ValueError("trajectories must not be empty")
    if len(groundtruth) != len(estimated):
        raise ValueError("trajectories must have the same length")
    total = sum(
        float(np.linalg.norm((gt.inverse() @ est).log())) ** 2
        for gt, est in zip(groundtruth, estimated)
    )
    return math.sqrt(total / len(estimated))


def transform_point(q1, t1, q2, t2, point):
    """Map a point from frame 1 to frame 2, both given relative to the world.

    Quaternions are ``(w, x, y, z)`` and are normalised first.
    """
    t1w = SE3.from_quaternion(*q1, t1)
    t2w = SE3.from_quaternion(*q2, t2)
    return (t2w @ t1w.inverse()).act(np.asarray(point, dtype=float))


def main(argv=None):
    parser = argparse.ArgumentParser(description="Compute the RMSE between two trajectories.")
    parser.add_argument("groundtruth", nargs="?", default=DEFAULT_GROUNDTRUTH)
    parser.add_argument("estimated", nargs="?", default=DEFAULT_ESTIMATED)
    args = parser.parse_args(argv)
    try:
        groundtruth = read_trajectory(args.groundtruth)
        estimated = read_trajectory(args.estimated)
        error = rmse(groundtruth, estimated)
    except FileNotFoundError as exc:
        print(f"trajectory {exc.filename} not found.", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    print(f"RMSE = {error}")
    return 0