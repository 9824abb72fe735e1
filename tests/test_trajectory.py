import numpy as np
import pytest

from slamkit.trajectory import main, read_trajectory, rmse, transform_point


def _write(path, rows):
    path.write_text("\n".join(" ".join(str(v) for v in row) for row in rows) + "\n")
    return path


ROWS = [
    (0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 1.0),
    (1.0, 0.5, -0.2, 0.1, 0.1, 0.0, 0.0, 0.99),
    (2.0, 1.0, 0.3, -0.4, 0.0, 0.2, 0.1, 0.97),
]


def test_read_trajectory_parses_poses(tmp_path):
    poses = read_trajectory(_write(tmp_path / "t.txt", ROWS))
    assert len(poses) == 3
    assert np.allclose(poses[1].translation, [0.5, -0.2, 0.1])
    assert np.allclose(poses[0].rotation_matrix, np.eye(3))


def test_read_trajectory_rejects_short_line(tmp_path):
    path = tmp_path / "bad.txt"
    path.write_text("0 1 2 3\n")
    with pytest.raises(ValueError):
        read_trajectory(path)


def test_read_trajectory_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_trajectory(tmp_path / "missing.txt")


def test_rmse_of_identical_trajectories_is_zero(tmp_path):
    poses = read_trajectory(_write(tmp_path / "t.txt", ROWS))
    assert rmse(poses, poses) == pytest.approx(0.0, abs=1e-9)


def test_rmse_unit_translation_offset(tmp_path):
    gt = [(i, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 1.0) for i in range(4)]
    est = [(i, 1.0, 0.0, 0.0, 0.0, 0.0, 0.0, 1.0) for i in range(4)]
    a = read_trajectory(_write(tmp_path / "gt.txt", gt))
    b = read_trajectory(_write(tmp_path / "est.txt", est))
    assert rmse(a, b) == pytest.approx(1.0)


def test_rmse_validates_inputs(tmp_path):
    poses = read_trajectory(_write(tmp_path / "t.txt", ROWS))
    with pytest.raises(ValueError):
        rmse(poses, poses[:2])
    with pytest.raises(ValueError):
        rmse([], [])


def test_transform_point_worked_example():
    p2 = transform_point(
        (0.35, 0.2, 0.3, 0.1), (0.3, 0.1, 0.1),
        (-0.5, 0.4, -0.1, 0.2), (-0.1, 0.5, 0.3),
        (0.5, 0.0, 0.2),
    )
    assert np.allclose(p2, [-0.0309731, 0.73499, 0.296108], atol=1e-5)


def test_transform_point_same_frame_is_identity():
    p = np.array([0.4, -1.0, 2.0])
    q = (0.35, 0.2, 0.3, 0.1)
    t = (0.3, 0.1, 0.1)
    assert np.allclose(transform_point(q, t, q, t, p), p)


def test_main_prints_rmse(tmp_path, capsys):
    path = _write(tmp_path / "t.txt", ROWS)
    assert main([str(path), str(path)]) == 0
    out = capsys.readouterr().out
    assert out.startswith("RMSE = ")
    assert float(out.split("=")[1]) == pytest.approx(0.0, abs=1e-9)


def test_main_missing_file_fails(tmp_path, capsys):
    assert main([str(tmp_path / "a.txt"), str(tmp_path / "b.txt")]) == 1
    assert "not found" in capsys.readouterr().err