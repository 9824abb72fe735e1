"""Point clouds from RGB-D and stereo images, filtering, PCD output and occupancy maps."""

from __future__ import annotations

import argparse
import math
import sys
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
from scipy.spatial import cKDTree

from slamkit.lie import SE3

MAX_DISPARITY = 96.0


@dataclass
class PointCloud:
    """Points as an ``(N, 3)`` float array with optional ``(N, 3)`` uint8 RGB colours."""

    points: np.ndarray = field(default_factory=lambda: np.empty((0, 3)))
    colors: np.ndarray | None = None

    def __post_init__(self):
        self.points = np.asarray(self.points, dtype=float).reshape(-1, 3)
        if self.colors is not None:
            self.colors = np.asarray(self.colors, dtype=np.uint8).reshape(-1, 3)
            if len(self.colors) != len(self.points):
                raise ValueError("colors and points must have the same length")

    def __len__(self):
        return len(self.points)

    def __add__(self, other):
        if not isinstance(other, PointCloud):
            return NotImplemented
        if len(self) == 0:
            return PointCloud(other.points.copy(), None if other.colors is None else other.colors.copy())
        if len(other) == 0:
            return PointCloud(self.points.copy(), None if self.colors is None else self.colors.copy())
        if (self.colors is None) != (other.colors is None):
            raise ValueError("cannot join a coloured cloud with an uncoloured one")
        colors = None if self.colors is None else np.vstack([self.colors, other.colors])
        return PointCloud(np.vstack([self.points, other.points]), colors)


def read_poses(path, count=5):
    """Read ``count`` poses given as ``tx ty tz qx qy qz qw`` whitespace-separated values."""
    values = Path(path).read_text(encoding="utf-8").split()
    needed = 7 * count
    if len(values) < needed:
        raise ValueError(f"{path}: expected {needed} values, found {len(values)}")
    data = np.array(values[:needed], dtype=float).reshape(count, 7)
    return [SE3.from_quaternion(qw, qx, qy, qz, (tx, ty, tz)) for tx, ty, tz, qx, qy, qz, qw in data]


def rgbd_to_cloud(color, depth, pose=None, fx=518.0, fy=519.0, cx=325.5, cy=253.5, depth_scale=1000.0):
    """Back-project every pixel with non-zero depth into the world frame.

    ``color`` is an ``(H, W, 3)`` RGB image or None, ``depth`` an ``(H, W)`` raw
    depth image and ``pose`` the camera-to-world transform.
    """
    depth = np.asarray(depth)
    if depth.ndim != 2:
        raise ValueError("depth must be a 2-D image")
    v, u = np.nonzero(depth)
    z = depth[v, u].astype(float) / depth_scale
    x = (u - cx) * z / fx
    y = (v - cy) * z / fy
    points = np.column_stack([x, y, z])
    if pose is not None:
        points = pose.act(points)
    colors = None
    if color is not None:
        color = np.asarray(color)
        if color.shape[:2] != depth.shape or color.ndim != 3 or color.shape[2] < 3:
            raise ValueError("color must be an (H, W, 3) image matching depth")
        colors = color[v, u, :3]
    return PointCloud(points, colors)


def stereo_to_cloud(left, disparity, fx=718.856, fy=718.856, cx=607.1928, cy=185.2157, baseline=0.573):
    """Triangulate pixels whose disparity lies strictly between 0 and 96.

    Each point is coloured with its grey value from the left image.
    """
    left = np.asarray(left)
    disparity = np.asarray(disparity, dtype=float)
    if left.shape != disparity.shape or left.ndim != 2:
        raise ValueError("left and disparity must be 2-D images of the same shape")
    valid = (disparity > 0.0) & (disparity < MAX_DISPARITY)
    v, u = np.nonzero(valid)
    d = fx * baseline / disparity[v, u]
    x = (u - cx) / fx * d
    y = (v - cy) / fy * d
    grey = left[v, u].astype(np.uint8)
    return PointCloud(np.column_stack([x, y, d]), np.column_stack([grey, grey, grey]))


def voxel_filter(cloud, resolution):
    """Replace the points in each cubic voxel by their centroid."""
    if resolution <= 0:
        raise ValueError("resolution must be positive")
    if len(cloud) == 0:
        return PointCloud(cloud.points.copy(), None if cloud.colors is None else cloud.colors.copy())
    keys = np.floor(cloud.points / resolution).astype(np.int64)
    unique, inverse = np.unique(keys, axis=0, return_inverse=True)
    inverse = inverse.reshape(-1)
    counts = np.bincount(inverse, minlength=len(unique))[:, None]
    sums = np.zeros((len(unique), 3))
    np.add.at(sums, inverse, cloud.points)
    colors = None
    if cloud.colors is not None:
        color_sums = np.zeros((len(unique), 3))
        np.add.at(color_sums, inverse, cloud.colors.astype(float))
        colors = np.clip(np.rint(color_sums / counts), 0, 255).astype(np.uint8)
    return PointCloud(sums / counts, colors)


def statistical_outlier_removal(cloud, mean_k=50, stddev_mul=1.0):
    """Drop points whose mean distance to their ``mean_k`` neighbours is unusually large.

    The limit is the mean of those distances plus ``stddev_mul`` standard deviations.
    """
    if mean_k < 1:
        raise ValueError("mean_k must be at least 1")
    n = len(cloud)
    if n <= 1:
        return PointCloud(cloud.points.copy(), None if cloud.colors is None else cloud.colors.copy())
    k = min(mean_k + 1, n)
    distances, _ = cKDTree(cloud.points).query(cloud.points, k=k)
    mean_distances = distances[:, 1:].mean(axis=1)
    mean = float(mean_distances.mean())
    std = float(mean_distances.std(ddof=1))
    keep = mean_distances <= mean + stddev_mul * std
    colors = None if cloud.colors is None else cloud.colors[keep]
    return PointCloud(cloud.points[keep], colors)


def write_pcd_binary(path, cloud):
    """Write the cloud as a binary PCD file with fields ``x y z`` and, if coloured, ``rgb``."""
    n = len(cloud)
    if cloud.colors is None:
        dtype = np.dtype([("x", "<f4"), ("y", "<f4"), ("z", "<f4")])
        fields, sizes, types, counts = "x y z", "4 4 4", "F F F", "1 1 1"
    else:
        dtype = np.dtype([("x", "<f4"), ("y", "<f4"), ("z", "<f4"), ("rgb", "<u4")])
        fields, sizes, types, counts = "x y z rgb", "4 4 4 4", "F F F U", "1 1 1 1"
    records = np.zeros(n, dtype=dtype)
    records["x"], records["y"], records["z"] = cloud.points.T
    if cloud.colors is not None:
        c = cloud.colors.astype(np.uint32)
        records["rgb"] = (c[:, 0] << 16) | (c[:, 1] << 8) | c[:, 2]
    header = (
        "# .PCD v0.7 - Point Cloud Data file format\n"
        "VERSION 0.7\n"
        f"FIELDS {fields}\n"
        f"SIZE {sizes}\n"
        f"TYPE {types}\n"
        f"COUNT {counts}\n"
        f"WIDTH {n}\n"
        "HEIGHT 1\n"
        "VIEWPOINT 0 0 0 1 0 0 0\n"
        f"POINTS {n}\n"
        "DATA binary\n"
    )
    with Path(path).open("wb") as fout:
        fout.write(header.encode("ascii"))
        fout.write(records.tobytes())


def _logodds(probability):
    return math.log(probability / (1.0 - probability))


class OccupancyMap:
    """A probabilistic voxel occupancy grid updated by ray casting."""

    PROB_HIT = 0.7
    PROB_MISS = 0.4
    CLAMP_MIN = 0.1192
    CLAMP_MAX = 0.971

    def __init__(self, resolution=0.01):
        if resolution <= 0:
            raise ValueError("resolution must be positive")
        self.resolution = float(resolution)
        self._log_odds = {}
        self._hit = _logodds(self.PROB_HIT)
        self._miss = _logodds(self.PROB_MISS)
        self._min = _logodds(self.CLAMP_MIN)
        self._max = _logodds(self.CLAMP_MAX)

    def _key(self, point):
        return tuple(int(k) for k in np.floor(np.asarray(point, dtype=float) / self.resolution))

    def _ray_keys(self, origin, end):
        key_origin = self._key(origin)
        key_end = self._key(end)
        if key_origin == key_end:
            return []
        keys = [key_origin]
        direction = end - origin
        length = float(np.linalg.norm(direction))
        direction = direction / length
        current = list(key_origin)
        step = [0, 0, 0]
        t_max = [math.inf] * 3
        t_delta = [math.inf] * 3
        for i in range(3):
            if direction[i] > 0:
                step[i] = 1
            elif direction[i] < 0:
                step[i] = -1
            if step[i]:
                border = (current[i] + 0.5) * self.resolution + step[i] * self.resolution * 0.5
                t_max[i] = (border - origin[i]) / direction[i]
                t_delta[i] = self.resolution / abs(direction[i])
        limit = sum(abs(a - b) for a, b in zip(key_origin, key_end)) + 3
        for _ in range(limit):
            dim = min(range(3), key=t_max.__getitem__)
            current[dim] += step[dim]
            t_max[dim] += t_delta[dim]
            if tuple(current) == key_end or min(t_max) > length:
                break
            keys.append(tuple(current))
        return keys

    def _update(self, key, delta):
        value = self._log_odds.get(key, 0.0) + delta
        self._log_odds[key] = min(max(value, self._min), self._max)

    def insert_point_cloud(self, points, origin):
        """Mark each end point occupied and the voxels along its ray from ``origin`` free."""
        points = np.asarray(points, dtype=float).reshape(-1, 3)
        origin = np.asarray(origin, dtype=float).reshape(3)
        occupied = set()
        free = set()
        for point in points:
            free.update(self._ray_keys(origin, point))
            occupied.add(self._key(point))
        for key in free - occupied:
            self._update(key, self._miss)
        for key in occupied:
            self._update(key, self._hit)

    def is_occupied(self, point):
        """True if the voxel holding ``point`` is known and occupied."""
        value = self._log_odds.get(self._key(point))
        return value is not None and value >= 0.0

    def occupied_voxels(self):
        """Centres of the occupied voxels as an ``(N, 3)`` array in key order."""
        keys = sorted(k for k, v in self._log_odds.items() if v >= 0.0)
        if not keys:
            return np.empty((0, 3))
        return (np.array(keys, dtype=float) + 0.5) * self.resolution


def _load_image(path):
    from PIL import Image

    with Image.open(path) as img:
        return np.array(img)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Join RGB-D images into a filtered point cloud.")
    parser.add_argument("--data", default="./data")
    parser.add_argument("--count", type=int, default=5)
    parser.add_argument("--output", default="map.pcd")
    parser.add_argument("--resolution", type=float, default=0.03)
    parser.add_argument("--octomap", action="store_true", help="also build an occupancy map")
    args = parser.parse_args(argv)

    data = Path(args.data)
    try:
        poses = read_poses(data / "pose.txt", args.count)
    except FileNotFoundError:
        print("cannot find pose file", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    intrinsics = {"fx": 481.2, "fy": -480.0, "cx": 319.5, "cy": 239.5, "depth_scale": 5000.0}
    cloud = PointCloud()
    occupancy = OccupancyMap(0.01) if args.octomap else None
    for i, pose in enumerate(poses, start=1):
        print(f"converting image: {i}")
        try:
            color = _load_image(data / "color" / f"{i}.png")
            depth = _load_image(data / "depth" / f"{i}.png")
        except (FileNotFoundError, OSError) as exc:
            print(f"cannot read image: {exc}", file=sys.stderr)
            return 1
        if color.ndim == 2:
            color = np.stack([color] * 3, axis=-1)
        current = rgbd_to_cloud(color, depth, pose, **intrinsics)
        if occupancy is not None:
            occupancy.insert_point_cloud(current.points, pose.translation)
        cloud = cloud + statistical_outlier_removal(current, 50, 1.0)

    print(f"point cloud holds {len(cloud)} points.")
    cloud = voxel_filter(cloud, args.resolution)
    print(f"after filtering, point cloud holds {len(cloud)} points.")
    write_pcd_binary(args.output, cloud)
    if occupancy is not None:
        print(f"occupancy map holds {len(occupancy.occupied_voxels())} occupied voxels.")
    return 0