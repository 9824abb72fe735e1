import numpy as np
import pytest

from slamkit.config import Config


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "default.yaml"
    path.write_text(
        "%YAML:1.0\n"
        "---\n"
        "dataset_dir: /data/kitti/00\n"
        "num_features: 150\n"
        "num_features_init: 50\n"
        "camera_matrix: !!opencv-matrix\n"
        "   rows: 2\n"
        "   cols: 2\n"
        "   dt: d\n"
        "   data: [1., 2., 3., 4.]\n",
        encoding="utf-8",
    )
    return path


def test_reads_values_from_opencv_style_file(config_file):
    Config.set_parameter_file(str(config_file))
    assert Config.get("dataset_dir") == "/data/kitti/00"
    assert Config.get("num_features") == 150
    assert Config.get("num_features_init") == 50


def test_opencv_matrix_becomes_array(config_file):
    Config.set_parameter_file(config_file)
    matrix = Config.get("camera_matrix")
    assert matrix.shape == (2, 2)
    assert np.array_equal(matrix, np.array([[1.0, 2.0], [3.0, 4.0]]))


def test_missing_key_raises(config_file):
    Config.set_parameter_file(config_file)
    with pytest.raises(KeyError):
        Config.get("no_such_key")


def test_missing_file_raises_and_unloads(config_file, tmp_path):
    Config.set_parameter_file(config_file)
    with pytest.raises(FileNotFoundError):
        Config.set_parameter_file(tmp_path / "absent.yaml")
    with pytest.raises(RuntimeError):
        Config.get("dataset_dir")


def test_plain_yaml_without_directive(tmp_path):
    path = tmp_path / "plain.yaml"
    path.write_text("dataset_dir: ./seq\n", encoding="utf-8")
    Config.set_parameter_file(path)
    assert Config.get("dataset_dir") == "./seq"


def test_non_mapping_file_is_rejected(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ValueError):
        Config.set_parameter_file(path)
    with pytest.raises(RuntimeError):
        Config.get("anything")