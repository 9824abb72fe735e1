"""Sliding-window bundle adjustment run on its own thread.

The front end calls :meth:`Backend.update_map` whenever the map changes; the
back end then optimises the active keyframes and landmarks and marks
observations whose reprojection error stays large as outliers.
"""

from __future__ import annotations

import logging
import math
import threading
import warnings
from dataclasses import dataclass

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import spsolve

from slamkit.map import Feature
from slamkit.projection import StereoProjection, pose_plus

logger = logging.getLogger(__name__)

CHI2_THRESHOLD = 5.991
_ITERATIONS = 10
_MAX_ATTEMPTS = 10
_OUTLIER_ROUNDS = 5


@dataclass
class _Observation:
    pose_id: int
    landmark_id: int
    edge: StereoProjection
    feature: Feature


def _chi2(obs, poses, points):
    e = obs.edge.error(poses[obs.pose_id], points[obs.landmark_id])
    return float(e @ obs.edge.information @ e)


def _huber_cost(chi2, delta):
    if chi2 <= delta * delta:
        return chi2
    return 2.0 * delta * math.sqrt(chi2) - delta * delta


def _huber_weight(chi2, delta):
    if chi2 <= delta * delta:
        return 1.0
    return delta / math.sqrt(chi2)


def _cost(observations, poses, points, delta):
    return sum((_huber_cost(_chi2(obs, poses, points), delta) for obs in observations), 0.0)


def _linearize(observations, poses, points, pose_slots, point_slots, size, delta):
    rows, cols, data = [], [], []
    b = np.zeros(size)
    for obs in observations:
        pose = poses[obs.pose_id]
        point = points[obs.landmark_id]
        e = obs.edge.error(pose, point)
        chi2 = float(e @ obs.edge.information @ e)
        omega = _huber_weight(chi2, delta) * obs.edge.information
        j_pose, j_point = obs.edge.jacobians(pose, point)
        blocks = ((pose_slots[obs.pose_id], j_pose), (point_slots[obs.landmark_id], j_point))
        for sa, ja in blocks:
            na = ja.shape[1]
            b[sa : sa + na] += ja.T @ omega @ e
            for sc, jc in blocks:
                nc = jc.shape[1]
                rows.append(sa + np.repeat(np.arange(na), nc))
                cols.append(sc + np.tile(np.arange(nc), na))
                data.append((ja.T @ omega @ jc).ravel())
    h = sparse.coo_matrix(
        (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
        shape=(size, size),
    ).tocsc()
    return h, b


def _bundle_adjust(observations, poses, points, delta, iterations):
    """Levenberg-Marquardt over poses and points with a Huber kernel."""
    pose_slots = {pid: 6 * i for i, pid in enumerate(poses)}
    offset = 6 * len(poses)
    point_slots = {lid: offset + 3 * i for i, lid in enumerate(points)}
    size = offset + 3 * len(points)
    if size == 0 or not observations:
        return poses, points

    cost = _cost(observations, poses, points, delta)
    lam = None
    nu = 2.0
    identity = sparse.identity(size, format="csc")
    for _ in range(iterations):
        h, b = _linearize(observations, poses, points, pose_slots, point_slots, size, delta)
        if lam is None:
            lam = 1e-5 * max(float(h.diagonal().max()), 1e-12)
        accepted = False
        for _attempt in range(_MAX_ATTEMPTS):
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                dx = np.asarray(spsolve(h + lam * identity, -b)).reshape(-1)
            if not np.all(np.isfinite(dx)):
                lam *= nu
                nu *= 2.0
                continue
            new_poses = {pid: pose_plus(pose, dx[s : s + 6]) for pid, pose in poses.items() for s in (pose_slots[pid],)}
            new_points = {lid: point + dx[s : s + 3] for lid, point in points.items() for s in (point_slots[lid],)}
            new_cost = _cost(observations, new_poses, new_points, delta)
            predicted = float(dx @ (lam * dx - b))
            if np.isfinite(new_cost) and new_cost < cost and predicted > 0:
                rho = (cost - new_cost) / predicted
                poses, points, cost = new_poses, new_points, new_cost
                lam *= max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
                nu = 2.0
                accepted = True
                break
            lam *= nu
            nu *= 2.0
        if not accepted:
            break
    return poses, points


class Backend:
    """Optimises the map's active window on a background thread.

    The thread starts on construction and waits until :meth:`update_map`
    is called. Use :meth:`stop`, or the backend as a context manager, to end it.
    """

    def __init__(self):
        self.map = None
        self.cam_left = None
        self.cam_right = None
        self._running = True
        self._pending = False
        self._condition = threading.Condition()
        self._thread = threading.Thread(target=self._loop, name="backend", daemon=True)
        self._thread.start()

    def set_cameras(self, left, right):
        """Set the left and right cameras whose intrinsics and extrinsics are used."""
        self.cam_left = left
        self.cam_right = right

    def set_map(self, map_):
        self.map = map_

    def update_map(self):
        """Request an optimisation of the active keyframes and landmarks."""
        with self._condition:
            self._pending = True
            self._condition.notify()

    def stop(self):
        """Finish any requested optimisation and end the thread."""
        with self._condition:
            self._running = False
            self._condition.notify()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    def _loop(self):
        while True:
            with self._condition:
                self._condition.wait_for(lambda: self._pending or not self._running)
                if not self._pending:
                    break
                self._pending = False
                map_ = self.map
            if map_ is None:
                continue
            try:
                self.optimize(map_.active_keyframes(), map_.active_map_points())
            except Exception:
                logger.exception("back-end optimisation failed")

    def optimize(self, keyframes, landmarks):
        """Bundle-adjust ``keyframes`` and ``landmarks`` in place.

        ``keyframes`` maps keyframe ids to frames and ``landmarks`` maps map
        point ids to map points. Observations whose error exceeds the final
        threshold are marked outliers and removed from their map points.
        Returns ``(inliers, outliers)`` as counted when the threshold was chosen.
        """
        if self.cam_left is None or self.cam_right is None:
            raise RuntimeError("cameras must be set before optimising")

        poses = {kf_id: kf.pose for kf_id, kf in keyframes.items()}
        k = self.cam_left.K()
        left_ext = self.cam_left.pose
        right_ext = self.cam_right.pose

        chi2_th = CHI2_THRESHOLD
        points = {}
        observations = []
        for landmark_id, landmark in landmarks.items():
            if landmark.is_outlier:
                continue
            for feat in landmark.observations():
                if feat.is_outlier:
                    continue
                frame = feat.frame
                if frame is None:
                    continue
                if landmark_id not in points:
                    points[landmark_id] = landmark.pos
                if frame.keyframe_id not in poses:
                    continue
                edge = StereoProjection(
                    k, left_ext if feat.is_on_left_image else right_ext, measurement=feat.position
                )
                observations.append(_Observation(frame.keyframe_id, landmark_id, edge, feat))

        poses, points = _bundle_adjust(observations, poses, points, chi2_th, _ITERATIONS)

        chi2s = [_chi2(obs, poses, points) for obs in observations]
        cnt_inlier = cnt_outlier = 0
        if chi2s:
            for _ in range(_OUTLIER_ROUNDS):
                cnt_outlier = sum(1 for c in chi2s if c > chi2_th)
                cnt_inlier = len(chi2s) - cnt_outlier
                if cnt_inlier / len(chi2s) > 0.5:
                    break
                chi2_th *= 2

        for obs, chi2 in zip(observations, chi2s):
            feat = obs.feature
            if chi2 > chi2_th:
                feat.is_outlier = True
                mp = feat.map_point
                if mp is not None:
                    mp.remove_observation(feat)
            else:
                feat.is_outlier = False

        logger.info("Outlier/Inlier in optimization: %d/%d", cnt_outlier, cnt_inlier)

        for kf_id, pose in poses.items():
            keyframes[kf_id].pose = pose
        for landmark_id, position in points.items():
            landmarks[landmark_id].pos = position
        return cnt_inlier, cnt_outlier