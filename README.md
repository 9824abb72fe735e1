# slamkit

Building blocks for visual SLAM in Python, on top of NumPy and SciPy.
Images are read and written with Pillow and parameter files with PyYAML.

## Modules

- `slamkit.lie`: rotations and rigid motions (`SO3`, `SE3`). It provides
  `exp`/`log`, inverses, quaternion conversion, the 4x4 and 3x4 matrices, the
  adjoint, and the `hat`/`vee` operators. SE(3) twists are ordered
  `[rho, phi]`, with translation first.
- `slamkit.curve_fitting`: fits `y = exp(a·x² + b·x + c)` to samples. It has
  `generate_data`, `curve`, `gauss_newton` and `levenberg_marquardt`, and each
  fit returns a `FitResult` with `params`, `cost` and `iterations`.
- `slamkit.trajectory`: `read_trajectory` reads lines of
  `time tx ty tz qx qy qz qw`. `rmse` compares two trajectories, and
  `transform_point` carries a point from one frame to another.
- `slamkit.undistort`: `Intrinsics`, `Distortion`, `distort_pixel`, and
  `undistort_image`, which does nearest-neighbour undistortion of a grey-scale
  array.
- `slamkit.pointcloud`: `PointCloud` and `read_poses`. Clouds come from RGB-D
  images (`rgbd_to_cloud`) or from a stereo disparity map (`stereo_to_cloud`).
  There are `voxel_filter` and `statistical_outlier_removal` filters and binary
  PCD output (`write_pcd_binary`). `OccupancyMap` is a log-odds voxel grid
  updated by casting rays from the sensor origin.
- `slamkit.dense_mapping`: monocular dense depth estimation. It searches each
  pixel's epipolar line, scores matches by zero-mean NCC (`ncc`,
  `epipolar_search`) and fuses the results with per-pixel Gaussian depth
  filters (`update_depth_filter`, `update`). `evaluate_depth` and
  `read_dataset` support this work.
- `slamkit.pose_graph`: `read_g2o` and `write_g2o` handle `VERTEX_SE3:QUAT` /
  `EDGE_SE3:QUAT` files. `PoseGraph.optimize` runs sparse Levenberg-Marquardt,
  updating poses by left multiplication. Vertex 0 is held fixed, and `jr_inv`
  uses the identity.
- `slamkit.geometry`: `triangulation(poses, points)` does linear SVD
  triangulation. It returns the world point, or `None` when the solution is
  poorly conditioned. The module also has `to_vec2`.
- `slamkit.camera`: `Camera`, a pinhole model with `K()` and conversions
  between world, camera and pixel coordinates.
- `slamkit.map`: `Feature`, `Frame`, `MapPoint` and `Map`. `Map` is a
  sliding-window map. When more than 7 keyframes are active, it retires the one
  closest to the current frame if that one is nearer than 0.2. Otherwise it
  retires the farthest. It then deactivates landmarks that are no longer
  observed.
- `slamkit.projection`: reprojection residuals with analytic Jacobians.
  `PoseOnlyProjection` estimates the pose only. `StereoProjection` estimates
  both the pose and the landmark. `pose_plus` applies a pose update.
- `slamkit.config`: `Config.set_parameter_file` and `Config.get` keep one set of
  YAML parameters for the whole process. OpenCV-style `%YAML:1.0` files and
  `!!opencv-matrix` nodes are accepted.
- `slamkit.dataset`: `Dataset` reads a stereo sequence directory. It takes four
  projection matrices from `calib.txt` and builds cameras with halved
  intrinsics. `next_frame` returns the next halved image pair from `image_0/`
  and `image_1/` as a `Frame`, or `None` when no more images exist.
- `slamkit.backend`: `Backend` runs Huber-robust bundle adjustment of the
  active keyframes and landmarks on a background thread. The thread starts on
  construction and runs each time `update_map()` is called. It ends with
  `stop()` or when used as a context manager. `optimize` can also be called
  directly. It marks outlier observations and returns `(inliers, outliers)`.

## Installation

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Using the library

```python
import numpy as np
from slamkit.lie import SE3, SO3

rotation = SO3.exp(np.array([0.0, 0.0, np.pi / 2]))
pose = SE3(rotation, np.array([1.0, 0.0, 0.0]))

moved = pose.act(np.array([1.0, 0.0, 0.0]))
identity = pose @ pose.inverse()
twist = pose.log()                # 6-vector, translation part first
restored = SE3.exp(twist)
```

A camera converts between coordinate frames, and two views of a point
triangulate it:

```python
from slamkit.camera import Camera
from slamkit.geometry import triangulation

left = Camera(fx=500.0, fy=500.0, cx=320.0, cy=240.0)
pixel = left.world2pixel(np.array([0.5, 0.2, 4.0]), SE3())

poses = [SE3(), SE3(translation=[-0.5, 0.0, 0.0])]
points = [left.pixel2camera(pixel), np.array([0.0, 0.05, 1.0])]
world_point = triangulation(poses, points)   # None if poorly conditioned
```

## Command-line tools

| Command | What it does |
| --- | --- |
| `slamkit-curve-fitting` | Fits the exponential model to simulated data and prints the estimate. Options: `--method gauss-newton/levenberg-marquardt`, `--seed`, `--iterations`. |
| `slamkit-trajectory [GROUNDTRUTH] [ESTIMATED]` | Prints the RMSE between two trajectories. The defaults are `./example/groundtruth.txt` and `./example/estimated.txt`. |
| `slamkit-undistort [IMAGE] [--output PATH]` | Undistorts a grey-scale image, by default `./distorted.png`, and writes `./undistorted.png`. |
| `slamkit-pointcloud` | Joins the RGB-D frames under `--data` (`pose.txt`, `color/N.png`, `depth/N.png`) into one cloud. It applies the statistical and voxel filters and writes a binary PCD file (`--output`, default `map.pcd`). Other options: `--count`, `--resolution`. `--octomap` also builds an occupancy map and reports how many voxels are occupied. |
| `slamkit-dense-mapping DATASET [--output PATH]` | Estimates the depth of the first image of a sequence. It prints the error against the reference depth after each image, then writes the depth map as an 8-bit PNG (default `depth.png`). |
| `slamkit-pose-graph GRAPH` | Optimises a `.g2o` pose graph and prints the error before and after. It writes the result to `--output` (default `result_lie.g2o`). The number of steps is set with `--iterations` (default 30). |

For example:

```
slamkit-pose-graph sphere.g2o
```

Run any command with `--help` to see the arguments it takes.

## What is not included

- No windows, plots or 3-D viewers. Results are printed or written to files.
- The occupancy map exists only in memory and is not saved to a file.
- There is no stereo front end: nothing detects or tracks features between
  images. As a result, there is no command that runs visual odometry over a
  whole dataset. `Dataset`, `Map`, `Camera`, `triangulation` and `Backend` are
  the parts that such a pipeline would be built from.
- There is no place recognition or loop detection, and no surface or mesh
  reconstruction.