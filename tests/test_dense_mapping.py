import numpy as np
import pytest
from scipy.ndimage import gaussian_filter

from slamkit import dense_mapping as dm
from slamkit.lie import SE3

SHIFT = 8
TX = 0.1


@pytest.fixture(scope="module")
def texture():
    rng = np.random.default_rng(7)
    noise = gaussian_filter(rng.normal(size=(dm.HEIGHT, dm.WIDTH)), 2.0)
    noise = (noise - noise.min()) / (noise.max() - noise.min())
    return (noise * 255).astype(np.uint8)


@pytest.fixture(scope="module")
def shifted(texture):
    return np.roll(texture, SHIFT, axis=1)


@pytest.fixture()
def t_c_r():
    return SE3(translation=(TX, 0.0, 0.0))


def test_principal_point_maps_to_optical_axis():
    assert np.allclose(dm.px2cam((dm.CX, dm.CY)), [0.0, 0.0, 1.0])


@pytest.mark.parametrize("px", [(0.0, 0.0), (100.5, 300.25), (639.0, 479.0)])
def test_pixel_camera_round_trip(px):
    assert np.allclose(dm.cam2px(dm.px2cam(px)), px)
    assert np.allclose(dm.cam2px(dm.px2cam(px) * 4.2), px)


@pytest.mark.parametrize(
    "pt, expected",
    [
        ((20, 20), True),
        ((19.9, 100), False),
        ((100, 19), False),
        ((619.5, 460), True),
        ((620, 100), False),
        ((100, 460.5), False),
    ],
)
def test_inside(pt, expected):
    assert dm.inside(pt) is expected


def test_bilinear_at_integer_pixel(texture):
    assert dm.bilinear(texture, (50.0, 60.0)) == pytest.approx(texture[60, 50] / 255.0)


def test_bilinear_on_gradient_is_linear():
    image = np.tile(np.arange(200, dtype=np.uint8), (10, 1))
    assert dm.bilinear(image, (10.25, 5.0)) == pytest.approx(10.25 / 255.0)
    values = dm.bilinear(image, np.array([[3.5, 2.0], [7.75, 4.5]]))
    assert np.allclose(values, [3.5 / 255.0, 7.75 / 255.0])


def test_ncc_identical_windows(texture):
    assert dm.ncc(texture, texture, (100, 100), (100, 100)) == pytest.approx(1.0, abs=1e-6)


def test_ncc_inverted_windows(texture):
    inverted = 255 - texture
    assert dm.ncc(texture, inverted, (200, 150), (200, 150)) == pytest.approx(-1.0, abs=1e-6)


def test_ncc_constant_window_is_zero(texture):
    flat = np.full_like(texture, 90)
    assert dm.ncc(texture, flat, (200, 150), (200, 150)) == pytest.approx(0.0, abs=1e-9)


def test_ncc_is_bounded(texture, shifted):
    score = dm.ncc(texture, shifted, (300, 200), (310.3, 200.6))
    assert -1.0 <= score <= 1.0


def test_epipolar_search_finds_shifted_match(texture, shifted, t_c_r):
    result = dm.epipolar_search(texture, shifted, t_c_r, np.array([320.0, 240.0]), 3.0, np.sqrt(3.0))
    assert result is not None
    pt_curr, direction = result
    assert abs(pt_curr[0] - (320 + SHIFT)) < 1.0
    assert abs(pt_curr[1] - 240.0) < 1.0
    assert np.linalg.norm(direction) == pytest.approx(1.0)
    assert abs(direction[0]) == pytest.approx(1.0, abs=1e-3)


def test_epipolar_search_rejects_unrelated_image(texture, t_c_r):
    rng = np.random.default_rng(11)
    other = rng.integers(0, 256, size=texture.shape, dtype=np.uint8)
    assert dm.epipolar_search(texture, other, t_c_r, np.array([320.0, 240.0]), 3.0, np.sqrt(3.0)) is None


def test_update_depth_filter_fuses_towards_estimate(t_c_r):
    depth = np.full((dm.HEIGHT, dm.WIDTH), 3.0)
    depth_cov2 = np.full((dm.HEIGHT, dm.WIDTH), 3.0)
    mu, sigma2 = dm.update_depth_filter(
        (320.0, 240.0), (320.0 + SHIFT, 240.0), t_c_r, (-1.0, 0.0), depth, depth_cov2
    )
    true_depth = dm.FX * TX / SHIFT
    assert 3.0 < mu < true_depth
    assert 0.0 < sigma2 < 3.0
    assert depth[240, 320] == mu
    assert depth_cov2[240, 320] == sigma2
    assert depth[240, 321] == 3.0


def test_update_touches_only_unconverged_pixels(texture, shifted, t_c_r):
    depth = np.full((dm.HEIGHT, dm.WIDTH), 3.0)
    depth_cov2 = np.full((dm.HEIGHT, dm.WIDTH), 20.0)
    depth_cov2[240, 320] = 3.0
    updated = dm.update(texture, shifted, t_c_r, depth, depth_cov2)
    assert updated == 1
    assert depth[240, 320] > 3.0
    assert depth_cov2[240, 320] < 3.0
    mask = np.ones_like(depth, dtype=bool)
    mask[240, 320] = False
    assert np.all(depth[mask] == 3.0)


def test_update_with_all_pixels_converged(texture, shifted, t_c_r):
    depth = np.full((dm.HEIGHT, dm.WIDTH), 3.0)
    depth_cov2 = np.full((dm.HEIGHT, dm.WIDTH), 0.05)
    assert dm.update(texture, shifted, t_c_r, depth, depth_cov2) == 0
    assert np.all(depth == 3.0)


def test_evaluate_depth_identical():
    depth = np.full((100, 120), 2.0)
    assert dm.evaluate_depth(depth, depth.copy()) == (0.0, 0.0)


def test_evaluate_depth_constant_offset():
    estimate = np.full((100, 120), 2.0)
    mean, squared = dm.evaluate_depth(estimate + 0.5, estimate)
    assert mean == pytest.approx(0.5)
    assert squared == pytest.approx(0.25)


def test_evaluate_depth_ignores_border():
    estimate = np.full((100, 120), 2.0)
    truth = estimate.copy()
    truth[:dm.BORDER, :] = 9.0
    truth[:, -dm.BORDER:] = 9.0
    assert dm.evaluate_depth(truth, estimate) == (0.0, 0.0)


def test_evaluate_depth_shape_mismatch():
    with pytest.raises(ValueError):
        dm.evaluate_depth(np.zeros((50, 50)), np.zeros((50, 60)))


def test_read_dataset(tmp_path):
    (tmp_path / dm.SEQUENCE_FILE).write_text(
        "scene_000.png 0 0 0 0 0 0 1\nscene_001.png 0.1 0 0 0 0 0 1\n\n", encoding="utf-8"
    )
    (tmp_path / "depthmaps").mkdir()
    (tmp_path / dm.REFERENCE_DEPTH_FILE).write_text("100 250\n", encoding="utf-8")
    files, poses, ref_depth = dm.read_dataset(tmp_path)
    assert files == [str(tmp_path / "images" / "scene_000.png"), str(tmp_path / "images" / "scene_001.png")]
    assert np.allclose(poses[1].translation, [0.1, 0.0, 0.0])
    assert np.allclose(poses[0].matrix(), np.eye(4))
    assert ref_depth.shape == (dm.HEIGHT, dm.WIDTH)
    assert ref_depth[0, 0] == pytest.approx(1.0)
    assert ref_depth[0, 1] == pytest.approx(2.5)
    assert ref_depth[0, 2] == 0.0


def test_read_dataset_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        dm.read_dataset(tmp_path / "absent")


def test_main_fails_on_missing_dataset(tmp_path):
    assert dm.main([str(tmp_path / "absent")]) == 1