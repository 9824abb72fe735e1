"""Visual SLAM building blocks: Lie groups, curve fitting, trajectories, point clouds,
dense depth mapping, pose graphs and the components of a stereo odometry system."""

__version__ = "0.1.0"

__all__ = [
    "backend",
    "camera",
    "config",
    "curve_fitting",
    "dataset",
    "dense_mapping",
    "geometry",
    "lie",
    "map",
    "pointcloud",
    "pose_graph",
    "projection",
    "trajectory",
    "undistort",
]