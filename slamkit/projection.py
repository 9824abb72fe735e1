"""Reprojection errors and their Jacobians for pose and landmark estimation.

Poses are world-to-camera transforms updated by left multiplication with the
exponential of a twist ``[rho, phi]``; landmarks are updated by addition.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from slamkit.lie import SE3


def pose_plus(pose, update):
    """Apply a 6-vector update to a pose by left multiplication."""
    return SE3.exp(np.asarray(update, dtype=float).reshape(6)) @ pose


def _project(k, p_cam):
    pixel = k @ p_cam
    return pixel[:2] / pixel[2]


def _pose_jacobian(k, p_cam):
    fx = k[0, 0]
    fy = k[1, 1]
    x, y, z = p_cam
    zinv = 1.0 / (z + 1e-18)
    zinv2 = zinv * zinv
    return np.array(
        [
            [-fx * zinv, 0.0, fx * x * zinv2, fx * x * y * zinv2, -fx - fx * x * x * zinv2, fx * y * zinv],
            [0.0, -fy * zinv, fy * y * zinv2, fy + fy * y * y * zinv2, -fy * x * y * zinv2, -fy * x * zinv],
        ]
    )


def _matrix(value, shape, name):
    arr = np.array(value, dtype=float)
    if arr.shape != shape:
        raise ValueError(f"{name} must have shape {shape}, got {arr.shape}")
    return arr


@dataclass
class PoseOnlyProjection:
    """Reprojection of a fixed world point into a camera whose pose is estimated."""

    point: np.ndarray
    K: np.ndarray
    measurement: np.ndarray = field(default_factory=lambda: np.zeros(2))
    information: np.ndarray = field(default_factory=lambda: np.eye(2))

    def __post_init__(self):
        self.point = np.asarray(self.point, dtype=float).reshape(3)
        self.K = _matrix(self.K, (3, 3), "K")
        self.measurement = np.asarray(self.measurement, dtype=float).reshape(2)
        self.information = _matrix(self.information, (2, 2), "information")

    def error(self, pose):
        """Measured pixel minus projected pixel."""
        return self.measurement - _project(self.K, pose.act(self.point))

    def jacobian(self, pose):
        """The 2x6 Jacobian of the error with respect to a pose update."""
        return _pose_jacobian(self.K, pose.act(self.point))


@dataclass
class StereoProjection:
    """Reprojection of an estimated landmark into one camera of a stereo rig.

    ``cam_ext`` maps points from the rig frame into this camera's frame.
    """

    K: np.ndarray
    cam_ext: SE3 = field(default_factory=SE3)
    measurement: np.ndarray = field(default_factory=lambda: np.zeros(2))
    information: np.ndarray = field(default_factory=lambda: np.eye(2))

    def __post_init__(self):
        self.K = _matrix(self.K, (3, 3), "K")
        self.measurement = np.asarray(self.measurement, dtype=float).reshape(2)
        self.information = _matrix(self.information, (2, 2), "information")

    def error(self, pose, point):
        """Measured pixel minus the projection of ``point`` seen from ``pose``."""
        p_cam = self.cam_ext.act(pose.act(np.asarray(point, dtype=float).reshape(3)))
        return self.measurement - _project(self.K, p_cam)

    def jacobians(self, pose, point):
        """Jacobians of the error: 2x6 for the pose update, 2x3 for the point."""
        pw = np.asarray(point, dtype=float).reshape(3)
        p_cam = (self.cam_ext @ pose).act(pw)
        j_pose = _pose_jacobian(self.K, p_cam)
        j_point = j_pose[:, :3] @ self.cam_ext.rotation_matrix @ pose.rotation_matrix
        return j_pose, j_point