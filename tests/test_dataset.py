import numpy as np
import pytest
from PIL import Image

from slamkit.dataset import Dataset

CALIB = (
    "P0: 718.856 0.0 607.1928 0.0 0.0 718.856 185.2157 0.0 0.0 0.0 1.0 0.0\n"
    "P1: 718.856 0.0 607.1928 -386.1448 0.0 718.856 185.2157 0.0 0.0 0.0 1.0 0.0\n"
    "P2: 718.856 0.0 607.1928 45.38225 0.0 718.856 185.2157 -0.1130887 0.0 0.0 1.0 0.003779761\n"
    "P3: 718.856 0.0 607.1928 -337.2877 0.0 718.856 185.2157 2.369057 0.0 0.0 1.0 0.004915215\n"
)


@pytest.fixture
def dataset_dir(tmp_path):
    (tmp_path / "calib.txt").write_text(CALIB, encoding="utf-8")
    for cam in (0, 1):
        folder = tmp_path / f"image_{cam}"
        folder.mkdir()
        for index in range(2):
            image = (np.arange(48, dtype=np.uint8).reshape(6, 8) + 10 * cam + index)
            Image.fromarray(image).save(folder / f"{index:06d}.png")
    return tmp_path


def test_init_builds_four_cameras(dataset_dir):
    dataset = Dataset(dataset_dir)
    dataset.init()
    assert len(dataset.cameras) == 4
    left = dataset.get_camera(0)
    assert left.fx == pytest.approx(718.856 * 0.5)
    assert left.cy == pytest.approx(185.2157 * 0.5)
    assert left.baseline == pytest.approx(0.0)


def test_extrinsic_translation_reproduces_projection_column(dataset_dir):
    dataset = Dataset(dataset_dir)
    dataset.init()
    k = np.array([[718.856, 0.0, 607.1928], [0.0, 718.856, 185.2157], [0.0, 0.0, 1.0]])
    right = dataset.get_camera(1)
    t = right.pose.translation
    assert np.allclose(k @ t, [-386.1448, 0.0, 0.0])
    assert right.baseline == pytest.approx(np.linalg.norm(t))
    assert np.allclose(right.pose.rotation_matrix, np.eye(3))


def test_missing_calibration_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        Dataset(tmp_path).init()


def test_incomplete_calibration_raises(tmp_path):
    (tmp_path / "calib.txt").write_text(CALIB.splitlines()[0] + "\n", encoding="utf-8")
    with pytest.raises(ValueError):
        Dataset(tmp_path).init()


def test_get_camera_out_of_range(dataset_dir):
    dataset = Dataset(dataset_dir)
    dataset.init()
    with pytest.raises(IndexError):
        dataset.get_camera(4)
    with pytest.raises(IndexError):
        dataset.get_camera(-1)


def test_next_frame_halves_images_and_advances(dataset_dir):
    dataset = Dataset(dataset_dir)
    dataset.init()
    first = dataset.next_frame()
    second = dataset.next_frame()
    source = np.arange(48, dtype=np.uint8).reshape(6, 8)
    assert first.left_img.shape == (3, 4)
    assert np.array_equal(first.left_img, source[::2, ::2])
    assert np.array_equal(first.right_img, (source + 10)[::2, ::2])
    assert np.array_equal(second.left_img, (source + 1)[::2, ::2])
    assert second.id > first.id
    assert dataset.current_image_index == 2


def test_next_frame_returns_none_past_the_end(dataset_dir):
    dataset = Dataset(dataset_dir)
    dataset.next_frame()
    dataset.next_frame()
    assert dataset.next_frame() is None
    assert dataset.current_image_index == 2