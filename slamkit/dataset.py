"""Reading a stereo sequence: calibration and downscaled image pairs."""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np

from slamkit.camera import Camera
from slamkit.lie import SE3
from slamkit.map import Frame

logger = logging.getLogger(__name__)

_CAMERA_COUNT = 4
_RECORD_SIZE = 13
_SCALE = 0.5


def _halve(image):
    """Nearest-neighbour downscale by one half."""
    rows = int(np.rint(image.shape[0] * _SCALE))
    cols = int(np.rint(image.shape[1] * _SCALE))
    return np.ascontiguousarray(image[: 2 * rows : 2, : 2 * cols : 2])


def _load_gray(path):
    from PIL import Image

    with Image.open(path) as img:
        return np.array(img.convert("L"))


class Dataset:
    """A stereo dataset directory with ``calib.txt`` and ``image_0``/``image_1`` folders.

    Images are halved in size when read, and camera intrinsics are halved to match.
    """

    def __init__(self, dataset_path):
        self.dataset_path = Path(dataset_path)
        self.current_image_index = 0
        self.cameras = []

    def init(self):
        """Read the four projection matrices from ``calib.txt`` and build the cameras.

        Each record is a name followed by a 3x4 projection matrix, row by row.
        """
        calib = self.dataset_path / "calib.txt"
        try:
            tokens = calib.read_text(encoding="utf-8").split()
        except FileNotFoundError as exc:
            logger.error("cannot find %s!", calib)
            raise FileNotFoundError(f"cannot find {calib}!") from exc

        cameras = []
        for i in range(_CAMERA_COUNT):
            record = tokens[_RECORD_SIZE * i : _RECORD_SIZE * (i + 1)]
            if len(record) < _RECORD_SIZE:
                raise ValueError(f"{calib}: camera {i} has an incomplete projection matrix")
            projection = np.array(record[1:], dtype=float).reshape(3, 4)
            k = projection[:, :3]
            t = np.linalg.solve(k, projection[:, 3])
            k = k * _SCALE
            camera = Camera(
                float(k[0, 0]),
                float(k[1, 1]),
                float(k[0, 2]),
                float(k[1, 2]),
                float(np.linalg.norm(t)),
                SE3(translation=t),
            )
            cameras.append(camera)
            logger.info("Camera %d extrinsics: %s", i, t)
        self.cameras = cameras
        self.current_image_index = 0

    def next_frame(self):
        """The next stereo frame, or None when its images cannot be read."""
        index = self.current_image_index
        try:
            left = _load_gray(self.dataset_path / "image_0" / f"{index:06d}.png")
            right = _load_gray(self.dataset_path / "image_1" / f"{index:06d}.png")
        except OSError:
            logger.warning("cannot find images at index %d", index)
            return None

        frame = Frame.create()
        frame.left_img = _halve(left)
        frame.right_img = _halve(right)
        self.current_image_index += 1
        return frame

    def get_camera(self, camera_id):
        """The camera with the given index."""
        if not 0 <= camera_id < len(self.cameras):
            raise IndexError(f"no camera with id {camera_id}")
        return self.cameras[camera_id]