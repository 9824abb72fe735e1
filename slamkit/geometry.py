"""Linear triangulation and small conversion helpers."""

from __future__ import annotations

import numpy as np

_QUALITY_RATIO = 1e-2


def triangulation(poses, points):
    """Triangulate one point seen from several cameras, by SVD.

    ``poses`` are world-to-camera transforms (SE3) and ``points`` the matching
    observations on the normalised image plane (3-vectors with z = 1).
    Returns the world point, or None when the solution is poorly conditioned.
    """
    poses = list(poses)
    points = [np.asarray(p, dtype=float).reshape(-1) for p in points]
    if len(poses) != len(points):
        raise ValueError("poses and points must have the same length")
    if len(poses) < 2:
        raise ValueError("triangulation needs at least two views")

    rows = []
    for pose, point in zip(poses, points):
        m = pose.matrix3x4()
        rows.append(point[0] * m[2] - m[0])
        rows.append(point[1] * m[2] - m[1])
    a = np.array(rows)

    _, singular_values, vt = np.linalg.svd(a, full_matrices=False)
    v = vt.T
    pt_world = (v[:, 3] / v[3, 3])[:3]

    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = singular_values[3] / singular_values[2]
    if ratio < _QUALITY_RATIO:
        return pt_world
    return None


def to_vec2(point):
    """Convert a point with ``x``/``y`` attributes, or a 2-sequence, to a 2-vector."""
    if hasattr(point, "x") and hasattr(point, "y"):
        return np.array([float(point.x), float(point.y)])
    arr = np.asarray(point, dtype=float).reshape(-1)
    if arr.size != 2:
        raise ValueError(f"expected two coordinates, got {arr.size}")
    return arr